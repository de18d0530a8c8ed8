"""Health and model catalog endpoints."""

from fastapi import APIRouter, Depends

from core import AgentCore
from deps import get_core, require_ready
from models import HealthResponse, ModelInfo

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
def health(core: AgentCore = Depends(get_core)):
    task = core.current_task
    return {"status": "ok", "ready": core._ready, "task": task.to_dict() if task else None}


@router.get("/api/models", response_model=list[ModelInfo])
def api_models(core: AgentCore = Depends(get_core)):
    return core.get_available_models()


@router.get("/api/backend", dependencies=[Depends(require_ready)])
async def api_backend(core: AgentCore = Depends(get_core)):
    """Re-check provider reachability and return backend info."""
    await core.refresh_backends()
    return core.backend_info()
