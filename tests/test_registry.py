import pytest

from keepersim.errors import ChainCallError, DuplicateJobError, NotFoundError, RPC_ERROR, ValidationError
from keepersim.jobs import IntervalJob, JobState, LogJob
from keepersim.registry import JobRegistry
from keepersim.schemas import JobSpec
from tests.fakes import EMITTER, EVENT_SIGNATURE, UPKEEP, CounterUpkeep, LogUpkeep


def interval_spec(**kw):
    data = {"upkeep_contract": UPKEEP, "name": "counter", "trigger_type": "interval"}
    data.update(kw)
    return JobSpec(**data)


def log_spec(**kw):
    data = {
        "upkeep_contract": UPKEEP,
        "name": "log-upkeep",
        "trigger_type": "log",
        "log_emitter_address": EMITTER,
        "log_event_signature": EVENT_SIGNATURE,
    }
    data.update(kw)
    return JobSpec(**data)


@pytest.mark.asyncio
async def test_register_starts_job_and_returns_handle(registry):
    handle = await registry.register(interval_spec())
    assert handle.upkeep_contract == UPKEEP
    assert handle.trigger_type == "interval"
    assert handle.state == JobState.WATCHING.value
    assert registry.count() == 1
    assert isinstance(registry.get(UPKEEP), IntervalJob)


@pytest.mark.asyncio
async def test_duplicate_address_is_rejected(registry):
    await registry.register(interval_spec())
    with pytest.raises(DuplicateJobError):
        await registry.register(log_spec(upkeep_contract=UPKEEP.lower()))
    assert registry.count() == 1
    assert isinstance(registry.get(UPKEEP), IntervalJob)


@pytest.mark.asyncio
async def test_unregister_unknown_address(registry):
    await registry.register(interval_spec())
    with pytest.raises(NotFoundError):
        await registry.unregister(EMITTER)
    assert registry.active_count() == 1


@pytest.mark.asyncio
async def test_unregister_stops_job(registry, chain):
    await registry.register(log_spec())
    job = registry.get(UPKEEP)
    assert chain.subscription_count == 1

    await registry.unregister(UPKEEP.lower())
    assert registry.count() == 0
    assert job.state == JobState.STOPPED
    assert chain.subscription_count == 0


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "overrides",
    [
        {"log_emitter_address": None},
        {"log_event_signature": None},
        {"log_emitter_address": "0x1234"},
        {"log_topic_filters": ["0x01", None, "0x02", "0x03"]},
        {"log_topic_filters": ["not-hex"]},
        {"upkeep_contract": "nope"},
        {"check_data": "0xzz"},
    ],
)
async def test_invalid_log_specs_are_rejected(registry, chain, overrides):
    with pytest.raises(ValidationError):
        await registry.register(log_spec(**overrides))
    assert registry.count() == 0
    assert chain.subscription_count == 0


@pytest.mark.asyncio
async def test_reregister_gets_fresh_job(registry, chain):
    upkeep = LogUpkeep()
    chain.deploy(UPKEEP, upkeep)
    await registry.register(log_spec())
    first = registry.get(UPKEEP)
    log = chain.make_log(EMITTER, [first.event_filter.topics[0]])
    await first.handle_log(log)
    assert len(first.processed) == 1

    await registry.unregister(UPKEEP)
    await registry.register(log_spec())
    second = registry.get(UPKEEP)
    assert second is not first
    assert isinstance(second, LogJob)
    assert len(second.processed) == 0

    await second.handle_log(log)
    assert len(upkeep.performed) == 2


@pytest.mark.asyncio
async def test_reregister_interval_job_reads_block_again(registry, chain):
    chain.deploy(UPKEEP, CounterUpkeep())
    await registry.register(interval_spec())
    assert registry.get(UPKEEP).last_processed_block == 100
    await registry.unregister(UPKEEP)

    chain.mine(5)
    await registry.register(interval_spec())
    assert registry.get(UPKEEP).last_processed_block == 105


def test_custom_trigger_is_an_alias_for_interval():
    spec = JobSpec.model_validate({"upkeepContract": UPKEEP, "name": "c", "triggerType": "custom"})
    assert spec.trigger_type == "interval"


class BrokenChain:
    async def current_block_height(self):
        raise ChainCallError(RPC_ERROR, "connection refused")


@pytest.mark.asyncio
async def test_failed_start_leaves_registry_empty():
    registry = JobRegistry(BrokenChain())
    with pytest.raises(ChainCallError):
        await registry.register(interval_spec())
    assert registry.count() == 0
