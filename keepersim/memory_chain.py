"""In-memory chain used when TESTING=1 and by the test suite.

Behaves like an auto-mining dev node: every submitted transaction mines one
block. Contracts are plain Python objects whose methods are named after the
upkeep ABI functions; a method may be async to simulate a slow node.
"""

from __future__ import annotations

import inspect
import itertools
from typing import Any, Optional, Sequence

from web3 import Web3

from .chain import (
    UPKEEP_FUNCTIONS,
    Block,
    EventFilter,
    LogCallback,
    LogEvent,
    PendingTx,
    Receipt,
    Subscription,
)
from .errors import CALL_EXCEPTION, INVALID_ARGUMENT, RPC_ERROR, ChainCallError

GENESIS_TIMESTAMP = 1_700_000_000
BLOCK_TIME = 12


class InMemoryChainClient:
    def __init__(self, start_block: int = 1):
        self.block_number = start_block
        self._contracts: dict[str, Any] = {}
        self._subscriptions: dict[int, Subscription] = {}
        self._ids = itertools.count(1)
        self._nonce = itertools.count(1)
        self._receipts: dict[bytes, Receipt] = {}
        # (contract, function, args) for every view call and transaction
        self.calls: list[tuple[str, str, tuple]] = []
        self.transactions: list[tuple[str, str, tuple, Optional[int]]] = []

    def deploy(self, address: str, contract: Any) -> str:
        address = Web3.to_checksum_address(address)
        self._contracts[address] = contract
        return address

    def mine(self, count: int = 1) -> int:
        self.block_number += count
        return self.block_number

    def block_hash(self, height: int) -> bytes:
        return bytes(Web3.keccak(text=f"block-{height}"))

    def make_log(
        self,
        address: str,
        topics: Sequence[bytes],
        data: bytes = b"",
        transaction_hash: Optional[bytes] = None,
        log_index: int = 0,
        block_number: Optional[int] = None,
    ) -> LogEvent:
        number = self.block_number if block_number is None else block_number
        return LogEvent(
            address=Web3.to_checksum_address(address),
            topics=tuple(topics),
            data=data,
            block_number=number,
            block_hash=self.block_hash(number),
            transaction_hash=transaction_hash or bytes(Web3.keccak(text=f"tx-{next(self._nonce)}")),
            log_index=log_index,
        )

    def deliver(self, log: LogEvent) -> int:
        """Hand a log to every matching subscriber; returns how many matched."""
        matched = 0
        for sub in list(self._subscriptions.values()):
            if sub.event_filter.matches(log):
                matched += 1
                sub.callback(log)
        return matched

    def emit(self, address: str, topics: Sequence[bytes], data: bytes = b"", **kw) -> LogEvent:
        log = self.make_log(address, topics, data, **kw)
        self.deliver(log)
        return log

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)

    async def current_block_height(self) -> int:
        return self.block_number

    async def get_block(self, height: int) -> Block:
        if height > self.block_number:
            raise ChainCallError(RPC_ERROR, f"block {height} not found")
        return Block(number=height, hash=self.block_hash(height), timestamp=GENESIS_TIMESTAMP + height * BLOCK_TIME)

    def subscribe_logs(self, event_filter: EventFilter, callback: LogCallback) -> Subscription:
        sub = Subscription(id=next(self._ids), event_filter=event_filter, callback=callback)
        self._subscriptions[sub.id] = sub
        return sub

    def unsubscribe(self, subscription: Subscription) -> None:
        self._subscriptions.pop(subscription.id, None)

    def _resolve(self, contract: str, function: str):
        target = self._contracts.get(Web3.to_checksum_address(contract))
        if target is None:
            raise ChainCallError(CALL_EXCEPTION, f"no contract code at {contract}")
        fn = getattr(target, function, None) if function in UPKEEP_FUNCTIONS else None
        if fn is None:
            raise ChainCallError(INVALID_ARGUMENT, f"contract.{function} is not a function")
        return fn

    async def _invoke(self, fn, args: Sequence[Any]) -> Any:
        try:
            result = fn(*args)
            if inspect.isawaitable(result):
                result = await result
        except ChainCallError:
            raise
        except Exception as e:
            raise ChainCallError(CALL_EXCEPTION, f"execution reverted: {e}", data=str(e)) from e
        return result

    async def call_view(self, contract: str, function: str, args: Sequence[Any]) -> tuple:
        self.calls.append((contract, function, tuple(args)))
        fn = self._resolve(contract, function)
        result = await self._invoke(fn, args)
        return tuple(result) if isinstance(result, (list, tuple)) else (result,)

    async def submit_transaction(
        self, contract: str, function: str, args: Sequence[Any], gas_limit: Optional[int] = None
    ) -> PendingTx:
        self.transactions.append((contract, function, tuple(args), gas_limit))
        fn = self._resolve(contract, function)
        await self._invoke(fn, args)
        number = self.mine()
        tx_hash = bytes(Web3.keccak(text=f"tx-{next(self._nonce)}"))
        self._receipts[tx_hash] = Receipt(transaction_hash=tx_hash, block_number=number)
        return PendingTx(transaction_hash=tx_hash)

    async def await_confirmation(self, pending: PendingTx) -> Receipt:
        receipt = self._receipts.get(pending.transaction_hash)
        if receipt is None:
            raise ChainCallError(RPC_ERROR, "unknown transaction")
        return receipt
