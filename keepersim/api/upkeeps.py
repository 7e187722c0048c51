from fastapi import APIRouter, Depends, HTTPException

from ..schemas import JobSpec, RegisterResponse, StatusResponse, UnregisterRequest, UpkeepListResponse
from .. import metrics
from ..auth import require_operator
from ..errors import ChainCallError, DuplicateJobError, NotFoundError, ValidationError
from ..registry import get_registry

router = APIRouter()


def _error(status_code: int, code: str, exc: Exception) -> HTTPException:
    metrics.error_count.inc()
    return HTTPException(status_code=status_code, detail={"error": code, "message": str(exc)})


@router.get("/status", response_model=StatusResponse)
async def status():
    registry = await get_registry()
    return StatusResponse(status="ok", registered_upkeeps=registry.count())


@router.post("/register", response_model=RegisterResponse, status_code=201)
async def register_upkeep(spec: JobSpec, authorized: bool = Depends(require_operator)):
    registry = await get_registry()
    try:
        handle = await registry.register(spec)
    except ValidationError as exc:
        raise _error(422, "VALIDATION_ERROR", exc)
    except DuplicateJobError as exc:
        raise _error(409, "DUPLICATE_JOB", exc)
    except ChainCallError as exc:
        raise _error(502, "CHAIN_ERROR", exc)
    except Exception as exc:
        raise _error(500, "INTERNAL_ERROR", exc)
    return RegisterResponse(message="Upkeep registered successfully.", upkeep=handle)


@router.post("/unregister")
async def unregister_upkeep(body: UnregisterRequest, authorized: bool = Depends(require_operator)):
    registry = await get_registry()
    try:
        await registry.unregister(body.upkeep_contract)
    except NotFoundError as exc:
        raise _error(404, "NOT_FOUND", exc)
    return {"message": "Upkeep unregistered successfully."}


@router.get("/upkeeps", response_model=UpkeepListResponse)
async def list_upkeeps():
    registry = await get_registry()
    return UpkeepListResponse(upkeeps=registry.list())
