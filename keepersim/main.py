import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from .api import upkeeps as upkeeps_api
from .metrics import metrics_response, request_latency_seconds
from .registry import get_registry, reset_registry


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    # Stop every job so no timer or subscription outlives the server.
    await reset_registry()


app = FastAPI(title="Local Keeper Simulator", lifespan=lifespan)

app.include_router(upkeeps_api.router)


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    start = time.time()
    try:
        response = await call_next(request)
        return response
    finally:
        request_latency_seconds.observe(time.time() - start)


@app.get("/healthz")
async def healthz():
    return {"status": "ok"}


@app.get("/readyz")
async def readyz():
    registry = await get_registry()
    try:
        await registry.chain.current_block_height()
    except Exception as exc:
        return {"ready": False, "error": str(exc)}
    return {"ready": True}


@app.get("/metrics")
async def metrics():
    return metrics_response()
