import os
import pytest
from httpx import ASGITransport, AsyncClient

os.environ["TESTING"] = "1"
# Timers are driven by hand in the tests; keep the background cadence out of the way.
os.environ.setdefault("POLL_SECONDS", "3600")

from keepersim.main import app as fastapi_app
from keepersim.memory_chain import InMemoryChainClient
from keepersim.registry import JobRegistry, get_registry, reset_registry


@pytest.fixture(scope="session")
def anyio_backend():
    return "asyncio"


@pytest.fixture
def chain():
    return InMemoryChainClient(start_block=100)


@pytest.fixture
async def registry(chain):
    reg = JobRegistry(chain)
    yield reg
    await reg.shutdown()


@pytest.fixture
async def client():
    transport = ASGITransport(app=fastapi_app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac
    await reset_registry()


@pytest.fixture
async def app_chain(client):
    registry = await get_registry()
    return registry.chain
