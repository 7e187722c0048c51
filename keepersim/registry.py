"""Registry of active upkeep jobs, one per target contract address."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from web3 import Web3

from . import config
from . import metrics
from .chain import ChainClient, Web3ChainClient
from .errors import DuplicateJobError, NotFoundError, ValidationError
from .jobs import IntervalJob, Job, LogJob, hex_to_bytes
from .memory_chain import InMemoryChainClient
from .schemas import JobHandle, JobSpec

logger = logging.getLogger(__name__)


def normalize_address(value: Optional[str], field: str) -> str:
    if not value or not Web3.is_address(value):
        raise ValidationError(f"'{field}' is not a valid address: {value!r}", field=field)
    return Web3.to_checksum_address(value)


class JobRegistry:
    def __init__(self, chain: ChainClient):
        self._chain = chain
        self._jobs: dict[str, Job] = {}
        self._lock = asyncio.Lock()

    @property
    def chain(self) -> ChainClient:
        return self._chain

    def _build(self, spec: JobSpec) -> Job:
        address = normalize_address(spec.upkeep_contract, "upkeepContract")
        hex_to_bytes(spec.check_data, field="checkData")

        if spec.trigger_type == "interval":
            return IntervalJob(spec.model_copy(update={"upkeep_contract": address}), self._chain)

        if not spec.log_emitter_address or not spec.log_event_signature:
            raise ValidationError("For log triggers, 'logEmitterAddress' and 'logEventSignature' are required.")
        emitter = normalize_address(spec.log_emitter_address, "logEmitterAddress")
        return LogJob(spec.model_copy(update={"upkeep_contract": address, "log_emitter_address": emitter}), self._chain)

    async def register(self, spec: JobSpec) -> JobHandle:
        job = self._build(spec)
        address = job.spec.upkeep_contract
        async with self._lock:
            if address in self._jobs:
                raise DuplicateJobError(address)
            logger.info("registering upkeep: %s", spec.name, extra={"upkeep": address, "trigger": job.trigger})
            self._jobs[address] = job
            try:
                await job.start()
            except Exception:
                self._jobs.pop(address, None)
                job.stop()
                logger.exception("failed to start upkeep %s", spec.name, extra={"upkeep": address})
                raise
        metrics.upkeeps_registered_total.inc()
        metrics.active_upkeeps.set(len(self._jobs))
        logger.info("registered and started job for %s", spec.name, extra={"upkeep": address})
        return job.handle()

    async def unregister(self, address: str) -> None:
        key = Web3.to_checksum_address(address) if Web3.is_address(address) else address
        async with self._lock:
            job = self._jobs.pop(key, None)
            if job is None:
                raise NotFoundError(address)
            job.stop()
        metrics.upkeeps_unregistered_total.inc()
        metrics.active_upkeeps.set(len(self._jobs))
        logger.info("stopped and unregistered upkeep for %s", key, extra={"upkeep": key})

    def get(self, address: str) -> Job:
        key = Web3.to_checksum_address(address) if Web3.is_address(address) else address
        job = self._jobs.get(key)
        if job is None:
            raise NotFoundError(address)
        return job

    def list(self) -> list[JobHandle]:
        return [job.handle() for job in self._jobs.values()]

    def count(self) -> int:
        return len(self._jobs)

    active_count = count

    async def shutdown(self) -> None:
        async with self._lock:
            jobs = list(self._jobs.values())
            self._jobs.clear()
            for job in jobs:
                job.stop()
        metrics.active_upkeeps.set(0)
        for job in jobs:
            await job.wait_idle()


# Singleton registry for the control plane
_registry: Optional[JobRegistry] = None


def build_chain_client() -> ChainClient:
    if config.TESTING:
        return InMemoryChainClient()
    if not config.PRIVATE_KEY:
        raise RuntimeError("PRIVATE_KEY is required to run against a node")
    return Web3ChainClient(
        config.RPC_URL,
        config.PRIVATE_KEY,
        log_poll_seconds=config.LOG_POLL_SECONDS,
        receipt_timeout=config.RECEIPT_TIMEOUT_SECONDS,
    )


async def get_registry() -> JobRegistry:
    global _registry
    if _registry is None:
        _registry = JobRegistry(build_chain_client())
    return _registry


async def reset_registry() -> None:
    global _registry
    if _registry is not None:
        await _registry.shutdown()
    _registry = None
