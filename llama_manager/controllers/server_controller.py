"""
Server Controller Module

This module defines the engine mode endpoints (router start, stop) and the
status endpoint.
"""

from fastapi import APIRouter, Depends, HTTPException, status

from ..core.engine import EngineProcess
from ..core.errors import EngineStartupError, ServiceUnavailableError
from ..core.orchestrator import RestartOrchestrator
from ..core.state import OrchestratorState
from ..lifecycle.dependencies import get_engine, get_orchestrator, get_state
from ..schemas.requests import ErrorResponse, StatusResponse

router = APIRouter(prefix="/api", tags=["Server"])


@router.post(
    "/server/start",
    summary="Start the engine in router mode",
    responses={503: {"model": ErrorResponse}}
)
async def start_server(
    orchestrator: RestartOrchestrator = Depends(get_orchestrator)
):
    """
    Restart the engine in router (multi-model) mode with the current runtime
    settings. Any active preset is dropped.
    """
    if not orchestrator:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Orchestrator not available"
        )

    result = await orchestrator.start_router()
    if not result.success:
        raise ServiceUnavailableError(
            f"Server start failed: {result.error}",
            code="restart_failed"
        )
    return {"success": True, "mode": "router"}


@router.post("/server/stop", summary="Stop the engine")
async def stop_server(
    orchestrator: RestartOrchestrator = Depends(get_orchestrator)
):
    if not orchestrator:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Orchestrator not available"
        )

    try:
        await orchestrator.stop_engine()
    except EngineStartupError as e:
        raise ServiceUnavailableError(str(e), code="restart_in_progress")
    return {"success": True}


@router.get(
    "/status",
    response_model=StatusResponse,
    summary="Engine mode, runtime config and restart state"
)
async def get_status(
    state: OrchestratorState = Depends(get_state),
    engine: EngineProcess = Depends(get_engine)
):
    if not state or not engine:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Server not initialized"
        )

    pending = state.pending
    running = engine.is_alive()
    return StatusResponse(
        mode=state.mode.value,
        active_preset_id=state.active_preset_id,
        runtime=state.runtime.to_dict(),
        pending=pending.to_dict() if pending is not None else None,
        restarting=state.restarting,
        engine_running=running,
        engine_healthy=await engine.is_healthy() if running else False,
        engine_pid=engine.pid,
        engine_url=engine.url
    )
