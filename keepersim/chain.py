"""Chain client used by the keeper engine.

The engine only needs a handful of node capabilities; they are described by
the ``ChainClient`` protocol so jobs can run against a real node (web3.py) or
the in-memory chain used for tests and TESTING=1.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Protocol, Sequence

import aiohttp
from eth_account import Account
from hexbytes import HexBytes
from web3 import AsyncWeb3
from web3.exceptions import (
    BadFunctionCallOutput,
    ContractLogicError,
    MismatchedABI,
    Web3Exception,
    Web3ValidationError,
)

from .errors import (
    CALL_EXCEPTION,
    INVALID_ARGUMENT,
    RPC_ERROR,
    TRANSACTION_FAILED,
    UNKNOWN_FUNCTION,
    ChainCallError,
)

logger = logging.getLogger(__name__)

CHECK_UPKEEP_SIGNATURE = "checkUpkeep(bytes)"
CHECK_LOG_SIGNATURE = "checkLog((uint256,uint256,bytes32,uint256,bytes32,address,bytes32[],bytes),bytes)"
PERFORM_UPKEEP_SIGNATURE = "performUpkeep(bytes)"

_LOG_COMPONENTS = [
    {"name": "index", "type": "uint256"},
    {"name": "timestamp", "type": "uint256"},
    {"name": "txHash", "type": "bytes32"},
    {"name": "blockNumber", "type": "uint256"},
    {"name": "blockHash", "type": "bytes32"},
    {"name": "source", "type": "address"},
    {"name": "topics", "type": "bytes32[]"},
    {"name": "data", "type": "bytes"},
]

_CHECK_OUTPUTS = [
    {"name": "upkeepNeeded", "type": "bool"},
    {"name": "performData", "type": "bytes"},
]

# Legacy AutomationCompatibleInterface plus ILogAutomation.checkLog.
UPKEEP_ABI: list[dict[str, Any]] = [
    {
        "type": "function",
        "name": "checkUpkeep",
        "stateMutability": "view",
        "inputs": [{"name": "checkData", "type": "bytes"}],
        "outputs": _CHECK_OUTPUTS,
    },
    {
        "type": "function",
        "name": "checkLog",
        "stateMutability": "view",
        "inputs": [
            {"name": "log", "type": "tuple", "components": _LOG_COMPONENTS},
            {"name": "checkData", "type": "bytes"},
        ],
        "outputs": _CHECK_OUTPUTS,
    },
    {
        "type": "function",
        "name": "performUpkeep",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "performData", "type": "bytes"}],
        "outputs": [],
    },
]

UPKEEP_FUNCTIONS = frozenset(entry["name"] for entry in UPKEEP_ABI)

SELECTORS = {
    "checkUpkeep": bytes(AsyncWeb3.keccak(text=CHECK_UPKEEP_SIGNATURE)[:4]),
    "checkLog": bytes(AsyncWeb3.keccak(text=CHECK_LOG_SIGNATURE)[:4]),
    "performUpkeep": bytes(AsyncWeb3.keccak(text=PERFORM_UPKEEP_SIGNATURE)[:4]),
}

_PUSH4 = b"\x63"

# web3 only wraps JSON-RPC errors; transport failures come from aiohttp and the socket layer.
_TRANSPORT_ERRORS = (Web3Exception, aiohttp.ClientError, OSError, asyncio.TimeoutError)


def to_hex(value: bytes) -> str:
    return "0x" + bytes(value).hex()


def _has_revert_data(data: Any) -> bool:
    if not isinstance(data, (str, bytes)):
        return False
    try:
        return len(HexBytes(data)) > 0
    except ValueError:
        return False


@dataclass(frozen=True)
class EventFilter:
    address: str
    # topic0 is always set; None in later slots matches anything.
    topics: tuple[Optional[bytes], ...]

    def matches(self, log: "LogEvent") -> bool:
        if log.address.lower() != self.address.lower():
            return False
        for i, wanted in enumerate(self.topics):
            if wanted is None:
                continue
            if i >= len(log.topics) or bytes(log.topics[i]) != wanted:
                return False
        return True

    def to_rpc(self) -> dict[str, Any]:
        topics: list[Optional[str]] = [to_hex(t) if t is not None else None for t in self.topics]
        while topics and topics[-1] is None:
            topics.pop()
        return {"address": self.address, "topics": topics}


@dataclass(frozen=True)
class LogEvent:
    address: str
    topics: tuple[bytes, ...]
    data: bytes
    block_number: int
    block_hash: bytes
    transaction_hash: bytes
    log_index: int

    @property
    def event_id(self) -> tuple[str, int]:
        return (to_hex(self.transaction_hash), self.log_index)


@dataclass(frozen=True)
class Block:
    number: int
    hash: bytes
    timestamp: int


@dataclass(frozen=True)
class PendingTx:
    transaction_hash: bytes


@dataclass(frozen=True)
class Receipt:
    transaction_hash: bytes
    block_number: int
    status: int = 1


LogCallback = Callable[[LogEvent], None]


@dataclass
class Subscription:
    id: int
    event_filter: EventFilter
    callback: LogCallback
    task: Optional[asyncio.Task] = field(default=None, repr=False)


class ChainClient(Protocol):
    async def current_block_height(self) -> int: ...

    async def get_block(self, height: int) -> Block: ...

    def subscribe_logs(self, event_filter: EventFilter, callback: LogCallback) -> Subscription: ...

    def unsubscribe(self, subscription: Subscription) -> None: ...

    async def call_view(self, contract: str, function: str, args: Sequence[Any]) -> tuple: ...

    async def submit_transaction(
        self, contract: str, function: str, args: Sequence[Any], gas_limit: Optional[int] = None
    ) -> PendingTx: ...

    async def await_confirmation(self, pending: PendingTx) -> Receipt: ...


def log_event_from_rpc(raw: Any) -> LogEvent:
    return LogEvent(
        address=AsyncWeb3.to_checksum_address(raw["address"]),
        topics=tuple(bytes(HexBytes(t)) for t in raw["topics"]),
        data=bytes(HexBytes(raw["data"])),
        block_number=int(raw["blockNumber"]),
        block_hash=bytes(HexBytes(raw["blockHash"])),
        transaction_hash=bytes(HexBytes(raw["transactionHash"])),
        log_index=int(raw["logIndex"]),
    )


class Web3ChainClient:
    """ChainClient backed by a JSON-RPC node through web3.py's AsyncWeb3.

    Logs are discovered by polling ``eth_getLogs`` since local nodes are
    usually reached over plain HTTP. Transactions are signed locally with the
    simulator's key; nonce assignment and submission are serialized so jobs
    can submit concurrently.
    """

    def __init__(
        self,
        rpc_url: str,
        private_key: str,
        *,
        log_poll_seconds: float = 1.0,
        receipt_timeout: Optional[float] = None,
    ):
        self._w3 = AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(rpc_url))
        self._account = Account.from_key(private_key)
        self._log_poll_seconds = log_poll_seconds
        self._receipt_timeout = receipt_timeout
        self._send_lock = asyncio.Lock()
        self._chain_id: Optional[int] = None
        self._ids = itertools.count(1)
        self._subscriptions: dict[int, Subscription] = {}
        logger.info("web3 chain client ready rpc=%s wallet=%s", rpc_url, self._account.address)

    @property
    def address(self) -> str:
        return self._account.address

    def _contract(self, address: str):
        return self._w3.eth.contract(address=AsyncWeb3.to_checksum_address(address), abi=UPKEEP_ABI)

    async def current_block_height(self) -> int:
        try:
            return int(await self._w3.eth.block_number)
        except _TRANSPORT_ERRORS as e:
            raise ChainCallError(RPC_ERROR, str(e)) from e

    async def get_block(self, height: int) -> Block:
        try:
            raw = await self._w3.eth.get_block(height)
        except _TRANSPORT_ERRORS as e:
            raise ChainCallError(RPC_ERROR, str(e)) from e
        return Block(number=int(raw["number"]), hash=bytes(raw["hash"]), timestamp=int(raw["timestamp"]))

    async def call_view(self, contract: str, function: str, args: Sequence[Any]) -> tuple:
        try:
            fn = self._contract(contract).functions[function](*args)
            result = await fn.call()
        except (MismatchedABI, Web3ValidationError) as e:
            raise ChainCallError(INVALID_ARGUMENT, str(e)) from e
        except BadFunctionCallOutput as e:
            # Empty output: no such function and a fallback that returns nothing.
            raise ChainCallError(UNKNOWN_FUNCTION, str(e)) from e
        except ContractLogicError as e:
            raise await self._classify_revert(contract, function, e) from e
        except _TRANSPORT_ERRORS as e:
            raise ChainCallError(RPC_ERROR, str(e)) from e
        return tuple(result) if isinstance(result, (list, tuple)) else (result,)

    async def _classify_revert(self, contract: str, function: str, e: ContractLogicError) -> ChainCallError:
        if _has_revert_data(e.data):
            return ChainCallError(CALL_EXCEPTION, str(e), data=e.data)
        # A bare revert is what a dispatcher without the selector produces.
        # Confirm by looking for the PUSH4 <selector> in the runtime code.
        selector = SELECTORS.get(function)
        if selector is None:
            return ChainCallError(CALL_EXCEPTION, str(e))
        try:
            code = bytes(await self._w3.eth.get_code(AsyncWeb3.to_checksum_address(contract)))
        except _TRANSPORT_ERRORS:
            return ChainCallError(CALL_EXCEPTION, str(e))
        if _PUSH4 + selector not in code:
            return ChainCallError(UNKNOWN_FUNCTION, f"function selector was not recognized: {function}")
        return ChainCallError(CALL_EXCEPTION, str(e))

    async def submit_transaction(
        self, contract: str, function: str, args: Sequence[Any], gas_limit: Optional[int] = None
    ) -> PendingTx:
        async with self._send_lock:
            try:
                if self._chain_id is None:
                    self._chain_id = int(await self._w3.eth.chain_id)
                nonce = await self._w3.eth.get_transaction_count(self._account.address, "pending")
                params: dict[str, Any] = {"from": self._account.address, "nonce": nonce, "chainId": self._chain_id}
                if gas_limit:
                    params["gas"] = gas_limit
                tx = await self._contract(contract).functions[function](*args).build_transaction(params)
                signed = self._account.sign_transaction(tx)
                tx_hash = await self._w3.eth.send_raw_transaction(signed.raw_transaction)
            except ContractLogicError as e:
                raise ChainCallError(CALL_EXCEPTION, str(e), data=e.data) from e
            except _TRANSPORT_ERRORS as e:
                raise ChainCallError(RPC_ERROR, str(e)) from e
        return PendingTx(transaction_hash=bytes(tx_hash))

    async def await_confirmation(self, pending: PendingTx) -> Receipt:
        try:
            raw = await self._w3.eth.wait_for_transaction_receipt(pending.transaction_hash, timeout=self._receipt_timeout)
        except _TRANSPORT_ERRORS as e:
            raise ChainCallError(RPC_ERROR, str(e)) from e
        receipt = Receipt(
            transaction_hash=bytes(raw["transactionHash"]),
            block_number=int(raw["blockNumber"]),
            status=int(raw.get("status", 1)),
        )
        if receipt.status != 1:
            raise ChainCallError(TRANSACTION_FAILED, f"transaction {to_hex(receipt.transaction_hash)} reverted")
        return receipt

    def subscribe_logs(self, event_filter: EventFilter, callback: LogCallback) -> Subscription:
        sub = Subscription(id=next(self._ids), event_filter=event_filter, callback=callback)
        sub.task = asyncio.create_task(self._poll_logs(sub), name=f"logs-{sub.id}")
        self._subscriptions[sub.id] = sub
        return sub

    def unsubscribe(self, subscription: Subscription) -> None:
        self._subscriptions.pop(subscription.id, None)
        if subscription.task is not None:
            subscription.task.cancel()
            subscription.task = None

    async def _poll_logs(self, sub: Subscription) -> None:
        # Like a provider listener: only logs mined after subscribing.
        next_block: Optional[int] = None
        params = sub.event_filter.to_rpc()
        while True:
            try:
                head = int(await self._w3.eth.block_number)
                if next_block is None:
                    next_block = head + 1
                elif head >= next_block:
                    logs = await self._w3.eth.get_logs({**params, "fromBlock": next_block, "toBlock": head})
                    next_block = head + 1
                    for raw in logs:
                        if raw.get("removed"):
                            continue
                        sub.callback(log_event_from_rpc(raw))
            except Exception as e:
                logger.warning("log poll failed subscription=%s: %s", sub.id, e)
            await asyncio.sleep(self._log_poll_seconds)
