"""Upkeep jobs.

Two kinds of job watch the chain on behalf of one upkeep contract:

- ``IntervalJob`` polls block height on a fixed cadence and calls
  ``checkUpkeep``/``performUpkeep`` when a new block has appeared.
- ``LogJob`` subscribes to an event filter and runs check/perform for every
  matching log, probing ``checkLog`` first and falling back to the legacy
  ``checkUpkeep`` when the target does not implement it.

Both expose ``start()``/``stop()`` and are driven by the registry. Failures in
a tick or event are logged and counted, never raised out of the watch loop.
"""

from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum
from typing import Any, Coroutine, Optional, Protocol

from eth_abi import encode as abi_encode
from hexbytes import HexBytes
from web3 import Web3

from . import config
from . import metrics
from .chain import Block, ChainClient, EventFilter, LogEvent, Receipt, to_hex
from .errors import (
    CALL_EXCEPTION,
    INVALID_ARGUMENT,
    UNKNOWN_FUNCTION,
    ChainCallError,
    ExecutionError,
    ProbeFallbackSignal,
    ValidationError,
)
from .guard import DedupCache, ExecutionGuard
from .schemas import JobHandle, JobSpec

logger = logging.getLogger(__name__)

MAX_TOPIC_FILTERS = 3

_FALLBACK_CODES = (UNKNOWN_FUNCTION, INVALID_ARGUMENT)
_MISSING_FUNCTION_HINTS = (
    "is not a function",
    "function selector was not recognized",
    "no fallback function",
)


class JobState(str, Enum):
    CREATED = "created"
    WATCHING = "watching"
    EXECUTING = "executing"
    STOPPED = "stopped"


class Job(Protocol):
    trigger: str
    spec: JobSpec

    @property
    def state(self) -> JobState: ...

    async def start(self) -> None: ...

    def stop(self) -> None: ...

    async def wait_idle(self) -> None: ...

    def handle(self) -> JobHandle: ...


def hex_to_bytes(value: Optional[str], field: str = "value") -> bytes:
    if value is None or value == "":
        return b""
    try:
        return bytes(HexBytes(value))
    except (TypeError, ValueError) as e:
        raise ValidationError(f"'{field}' is not valid hex: {value!r}", field=field) from e


def event_topic(signature: str) -> bytes:
    return bytes(Web3.keccak(text=signature))


def pad_topic(value: str) -> bytes:
    raw = hex_to_bytes(value, field="logTopicFilters")
    if not raw or len(raw) > 32:
        raise ValidationError(f"topic filter must be 1-32 bytes of hex: {value!r}", field="logTopicFilters")
    return raw.rjust(32, b"\x00")


def build_event_filter(spec: JobSpec) -> EventFilter:
    if not spec.log_emitter_address or not spec.log_event_signature:
        raise ValidationError("For log triggers, 'logEmitterAddress' and 'logEventSignature' are required.")
    if len(spec.log_topic_filters) > MAX_TOPIC_FILTERS:
        raise ValidationError(
            f"At most {MAX_TOPIC_FILTERS} topic filters are supported, got {len(spec.log_topic_filters)}.",
            field="logTopicFilters",
        )
    topics: list[Optional[bytes]] = [event_topic(spec.log_event_signature)]
    for value in spec.log_topic_filters:
        topics.append(pad_topic(value) if value else None)
    while len(topics) < MAX_TOPIC_FILTERS + 1:
        topics.append(None)
    return EventFilter(address=spec.log_emitter_address, topics=tuple(topics))


def build_log_record(log: LogEvent, block: Block) -> dict[str, Any]:
    """The ILogAutomation ``Log`` struct for a delivered log."""
    return {
        "index": log.log_index,
        "timestamp": block.timestamp,
        "txHash": log.transaction_hash,
        "blockNumber": log.block_number,
        "blockHash": log.block_hash,
        "source": log.address,
        "topics": list(log.topics),
        "data": log.data,
    }


def encode_legacy_check_data(log: LogEvent) -> bytes:
    return abi_encode(["bytes32[]", "bytes"], [list(log.topics), log.data])


def is_missing_function(err: Exception) -> bool:
    code = getattr(err, "code", None)
    if code in _FALLBACK_CODES:
        return True
    # A revert that carries a payload came from the function itself.
    if code == CALL_EXCEPTION and getattr(err, "data", None):
        return False
    message = str(err).lower()
    return any(hint in message for hint in _MISSING_FUNCTION_HINTS)


def _unpack_check(result: tuple) -> tuple[bool, bytes]:
    if len(result) < 2:
        raise ExecutionError(f"check returned {len(result)} value(s), expected (bool, bytes)")
    return bool(result[0]), bytes(result[1] or b"")


async def perform_upkeep(
    chain: ChainClient, contract: str, perform_data: bytes, gas_limit: Optional[int] = None
) -> Receipt:
    start = time.monotonic()
    try:
        pending = await chain.submit_transaction(contract, "performUpkeep", [perform_data], gas_limit)
        receipt = await chain.await_confirmation(pending)
    except ChainCallError as e:
        raise ExecutionError(f"performUpkeep failed: {e}", details={"code": e.code}) from e
    metrics.perform_latency_seconds.observe(time.monotonic() - start)
    return receipt


class _TaskSet:
    """Tasks spawned by a job; kept so they are not garbage collected mid-flight."""

    def __init__(self):
        self._tasks: set[asyncio.Task] = set()

    def __len__(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Coroutine, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def wait(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


class IntervalJob:
    trigger = "interval"

    def __init__(self, spec: JobSpec, chain: ChainClient, poll_seconds: Optional[float] = None):
        self.spec = spec
        self._chain = chain
        self._poll_seconds = config.POLL_SECONDS if poll_seconds is None else poll_seconds
        self._check_data = hex_to_bytes(spec.check_data, field="checkData")
        self._guard = ExecutionGuard()
        self._timer: Optional[asyncio.Task] = None
        self._ticks = _TaskSet()
        self._started = False
        self._stopped = False
        self.last_processed_block = 0

    @property
    def state(self) -> JobState:
        if self._stopped:
            return JobState.STOPPED
        if self._guard.busy:
            return JobState.EXECUTING
        return JobState.WATCHING if self._started else JobState.CREATED

    @property
    def executing(self) -> bool:
        return self._guard.busy

    def _log_extra(self, **kw) -> dict[str, Any]:
        return {"upkeep": self.spec.upkeep_contract, "job": self.spec.name, "trigger": self.trigger, **kw}

    async def start(self) -> None:
        logger.info(
            "[%s] starting, polling for new blocks every %ss", self.spec.name, self._poll_seconds, extra=self._log_extra()
        )
        self.last_processed_block = await self._chain.current_block_height()
        logger.info("[%s] initial block number: %s", self.spec.name, self.last_processed_block, extra=self._log_extra())
        self._started = True
        self._timer = asyncio.create_task(self._run_timer(), name=f"interval-{self.spec.upkeep_contract}")

    async def _run_timer(self) -> None:
        while not self._stopped:
            await asyncio.sleep(self._poll_seconds)
            # Each tick runs on its own; a slow cycle makes later ticks drop, not queue.
            self._ticks.spawn(self.tick(), name=f"tick-{self.spec.upkeep_contract}")

    async def tick(self) -> None:
        if self._stopped:
            return
        if not self._guard.try_acquire():
            metrics.ticks_skipped_total.inc()
            return

        current_block: Optional[int] = None
        try:
            current_block = await self._chain.current_block_height()
            if current_block <= self.last_processed_block:
                # No new block; normal on a chain that does not auto-mine.
                return
            self.last_processed_block = current_block

            try:
                result = await self._chain.call_view(self.spec.upkeep_contract, "checkUpkeep", [self._check_data])
            except ChainCallError as e:
                raise ExecutionError(f"checkUpkeep failed: {e}", details={"code": e.code}) from e
            metrics.checks_total.labels(convention="checkUpkeep").inc()
            needed, perform_data = _unpack_check(result)

            if needed:
                logger.info("[%s] upkeep needed, performing", self.spec.name, extra=self._log_extra(block=current_block))
                receipt = await perform_upkeep(self._chain, self.spec.upkeep_contract, perform_data, self.spec.gas_limit)
                metrics.performs_total.labels(trigger=self.trigger).inc()
                logger.info(
                    "[%s] upkeep performed, tx %s",
                    self.spec.name,
                    to_hex(receipt.transaction_hash),
                    extra=self._log_extra(block=current_block, tx=to_hex(receipt.transaction_hash)),
                )
        except ExecutionError as e:
            metrics.execution_errors_total.labels(trigger=self.trigger).inc()
            logger.error("[%s] error during check/perform: %s", self.spec.name, e, extra=self._log_extra(block=current_block))
        except Exception:
            metrics.execution_errors_total.labels(trigger=self.trigger).inc()
            logger.exception("[%s] unexpected error during tick", self.spec.name, extra=self._log_extra(block=current_block))
        finally:
            self._guard.release()

    def stop(self) -> None:
        self._stopped = True
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        logger.info("[%s] stopped", self.spec.name, extra=self._log_extra())

    async def wait_idle(self) -> None:
        await self._ticks.wait()

    def handle(self) -> JobHandle:
        return JobHandle(
            upkeep_contract=self.spec.upkeep_contract,
            name=self.spec.name,
            trigger_type=self.trigger,
            state=self.state.value,
        )


class LogJob:
    trigger = "log"

    def __init__(self, spec: JobSpec, chain: ChainClient):
        self.spec = spec
        self._chain = chain
        self.event_filter = build_event_filter(spec)
        self.processed = DedupCache()
        self._subscription = None
        self._events = _TaskSet()
        self._started = False
        self._stopped = False

    @property
    def state(self) -> JobState:
        if self._stopped:
            return JobState.STOPPED
        if len(self._events):
            return JobState.EXECUTING
        return JobState.WATCHING if self._started else JobState.CREATED

    def _log_extra(self, **kw) -> dict[str, Any]:
        return {"upkeep": self.spec.upkeep_contract, "job": self.spec.name, "trigger": self.trigger, **kw}

    async def start(self) -> None:
        logger.info(
            '[%s] starting, listening for event "%s" from %s',
            self.spec.name,
            self.spec.log_event_signature,
            self.spec.log_emitter_address,
            extra=self._log_extra(),
        )
        self._subscription = self._chain.subscribe_logs(self.event_filter, self.on_log)
        self._started = True

    def on_log(self, log: LogEvent) -> None:
        """Subscription callback; every log is handled in its own task."""
        if self._stopped:
            return
        tx, index = log.event_id
        self._events.spawn(self.handle_log(log), name=f"log-{tx}-{index}")

    async def handle_log(self, log: LogEvent) -> None:
        event_id = log.event_id
        if not self.processed.claim(event_id):
            metrics.duplicate_events_total.inc()
            return

        event = f"{event_id[0]}:{event_id[1]}"
        extra = self._log_extra(block=log.block_number, event=event)
        committed = False
        try:
            logger.info("[%s] detected log, checking for upkeep", self.spec.name, extra=extra)
            needed, perform_data = await self._probe_check(log)
            if not needed:
                logger.info("[%s] log detected, but check function returned false", self.spec.name, extra=extra)
                return

            receipt = await perform_upkeep(self._chain, self.spec.upkeep_contract, perform_data, self.spec.gas_limit)
            self.processed.commit(event_id)
            committed = True
            metrics.performs_total.labels(trigger=self.trigger).inc()
            logger.info("[%s] upkeep performed, tx %s", self.spec.name, to_hex(receipt.transaction_hash), extra=extra)
        except ExecutionError as e:
            metrics.execution_errors_total.labels(trigger=self.trigger).inc()
            logger.error("[%s] error handling log: %s", self.spec.name, e, extra=extra)
        except Exception:
            metrics.execution_errors_total.labels(trigger=self.trigger).inc()
            logger.exception("[%s] unexpected error handling log", self.spec.name, extra=extra)
        finally:
            if not committed:
                self.processed.release(event_id)

    async def _probe_check(self, log: LogEvent) -> tuple[bool, bytes]:
        try:
            return await self._check_log(log)
        except ProbeFallbackSignal as fallback:
            metrics.probe_fallbacks_total.inc()
            logger.info(
                "[%s] 'checkLog' not found (%s), falling back to 'checkUpkeep'",
                self.spec.name,
                fallback,
                extra=self._log_extra(block=log.block_number),
            )
            return await self._check_upkeep(log)

    async def _check_log(self, log: LogEvent) -> tuple[bool, bytes]:
        try:
            block = await self._chain.get_block(log.block_number)
        except ChainCallError as e:
            raise ExecutionError(f"could not fetch block {log.block_number}: {e}", details={"code": e.code}) from e

        record = build_log_record(log, block)
        try:
            result = await self._chain.call_view(self.spec.upkeep_contract, "checkLog", [record, b""])
        except ChainCallError as e:
            if is_missing_function(e):
                raise ProbeFallbackSignal(str(e)) from e
            raise ExecutionError(f"checkLog failed: {e}", details={"code": e.code}) from e
        metrics.checks_total.labels(convention="checkLog").inc()
        return _unpack_check(result)

    async def _check_upkeep(self, log: LogEvent) -> tuple[bool, bytes]:
        check_data = encode_legacy_check_data(log)
        try:
            result = await self._chain.call_view(self.spec.upkeep_contract, "checkUpkeep", [check_data])
        except ChainCallError as e:
            raise ExecutionError(f"checkUpkeep failed: {e}", details={"code": e.code}) from e
        metrics.checks_total.labels(convention="checkUpkeep").inc()
        return _unpack_check(result)

    def stop(self) -> None:
        self._stopped = True
        if self._subscription is not None:
            self._chain.unsubscribe(self._subscription)
            self._subscription = None
        logger.info("[%s] stopped", self.spec.name, extra=self._log_extra())

    async def wait_idle(self) -> None:
        await self._events.wait()

    def handle(self) -> JobHandle:
        return JobHandle(
            upkeep_contract=self.spec.upkeep_contract,
            name=self.spec.name,
            trigger_type=self.trigger,
            state=self.state.value,
        )
