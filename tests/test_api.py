import pytest
from prometheus_client import REGISTRY

from keepersim.errors import RPC_ERROR, ChainCallError
from keepersim.jobs import event_topic
from keepersim.registry import get_registry
from tests.fakes import EMITTER, EVENT_SIGNATURE, UPKEEP, LogUpkeep

HEADERS = {"X-API-Key": "dev-key"}

LOG_UPKEEP = {
    "name": "log-upkeep",
    "upkeepContract": UPKEEP,
    "triggerType": "log",
    "gasLimit": 500000,
    "logEmitterAddress": EMITTER,
    "logEventSignature": EVENT_SIGNATURE,
}


@pytest.mark.asyncio
async def test_register_status_and_unregister(client):
    res = await client.post("/register", json=LOG_UPKEEP, headers=HEADERS)
    assert res.status_code == 201
    body = res.json()
    assert body["upkeep"]["upkeepContract"] == UPKEEP
    assert body["upkeep"]["state"] == "watching"

    status = await client.get("/status")
    assert status.json() == {"status": "ok", "registeredUpkeeps": 1}

    listed = await client.get("/upkeeps")
    assert [u["name"] for u in listed.json()["upkeeps"]] == ["log-upkeep"]

    res = await client.post("/unregister", json={"upkeepContract": UPKEEP}, headers=HEADERS)
    assert res.status_code == 200
    status = await client.get("/status")
    assert status.json()["registeredUpkeeps"] == 0


@pytest.mark.asyncio
async def test_duplicate_registration_conflicts(client):
    first = await client.post("/register", json=LOG_UPKEEP, headers=HEADERS)
    assert first.status_code == 201
    second = await client.post("/register", json={**LOG_UPKEEP, "triggerType": "custom"}, headers=HEADERS)
    assert second.status_code == 409
    assert second.json()["detail"]["error"] == "DUPLICATE_JOB"

    status = await client.get("/status")
    assert status.json()["registeredUpkeeps"] == 1


@pytest.mark.asyncio
async def test_unregister_unknown_is_not_found(client):
    res = await client.post("/unregister", json={"upkeepContract": EMITTER}, headers=HEADERS)
    assert res.status_code == 404
    assert res.json()["detail"]["error"] == "NOT_FOUND"
    status = await client.get("/status")
    assert status.json()["registeredUpkeeps"] == 0


@pytest.mark.asyncio
async def test_log_trigger_without_emitter_is_rejected(client):
    spec = {k: v for k, v in LOG_UPKEEP.items() if k != "logEmitterAddress"}
    res = await client.post("/register", json=spec, headers=HEADERS)
    assert res.status_code == 422
    assert res.json()["detail"]["error"] == "VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_mutations_require_api_key(client):
    res = await client.post("/register", json=LOG_UPKEEP)
    assert res.status_code == 401
    res = await client.post("/register", json=LOG_UPKEEP, headers={"X-API-Key": "wrong"})
    assert res.status_code == 403


@pytest.mark.asyncio
async def test_registered_log_job_performs_and_metrics_move(client, app_chain):
    upkeep = LogUpkeep(perform_data=b"\x42")
    app_chain.deploy(UPKEEP, upkeep)
    res = await client.post("/register", json=LOG_UPKEEP, headers=HEADERS)
    assert res.status_code == 201

    job = (await get_registry()).get(UPKEEP)
    app_chain.emit(EMITTER, [event_topic(EVENT_SIGNATURE)])
    await job.wait_idle()
    assert upkeep.performed == [b"\x42"]

    metrics = await client.get("/metrics")
    assert metrics.status_code == 200
    assert "upkeeps_registered_total" in metrics.text
    assert 'performs_total{trigger="log"}' in metrics.text


@pytest.mark.asyncio
async def test_health_endpoints(client):
    assert (await client.get("/healthz")).json() == {"status": "ok"}
    assert (await client.get("/readyz")).json() == {"ready": True}


class _DownChain:
    """A node that refuses every request."""

    def __init__(self, exc: Exception):
        self._exc = exc

    async def current_block_height(self) -> int:
        raise self._exc


def _errors() -> float:
    return REGISTRY.get_sample_value("error_count_total") or 0.0


@pytest.mark.asyncio
async def test_register_maps_chain_failure_to_bad_gateway(client):
    registry = await get_registry()
    registry._chain = _DownChain(ChainCallError(RPC_ERROR, "connection refused"))
    before = _errors()

    spec = {**LOG_UPKEEP, "triggerType": "interval"}
    res = await client.post("/register", json=spec, headers=HEADERS)
    assert res.status_code == 502
    assert res.json()["detail"]["error"] == "CHAIN_ERROR"
    assert _errors() == before + 1
    assert (await client.get("/status")).json()["registeredUpkeeps"] == 0


@pytest.mark.asyncio
async def test_register_maps_unexpected_failure_to_internal_error(client):
    registry = await get_registry()
    registry._chain = _DownChain(RuntimeError("boom"))
    before = _errors()

    spec = {**LOG_UPKEEP, "triggerType": "interval"}
    res = await client.post("/register", json=spec, headers=HEADERS)
    assert res.status_code == 500
    assert res.json()["detail"] == {"error": "INTERNAL_ERROR", "message": "boom"}
    assert _errors() == before + 1
    assert (await client.get("/status")).json()["registeredUpkeeps"] == 0
