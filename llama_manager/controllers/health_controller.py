"""
Health Controller Module

This module defines endpoints for health checks and liveness probes.
"""

from fastapi import APIRouter, Depends, status

from ..core.engine import EngineProcess
from ..core.state import OrchestratorState
from ..lifecycle.dependencies import get_engine, get_state
from ..schemas.requests import HealthResponse

router = APIRouter(tags=["Health"])


@router.get(
    "/health",
    response_model=HealthResponse,
    status_code=status.HTTP_200_OK,
    summary="Get application health status"
)
async def health_check(
    state: OrchestratorState = Depends(get_state),
    engine: EngineProcess = Depends(get_engine)
):
    """
    Get the overall health status of the application.

    The manager itself is up whenever this answers; status is "degraded"
    while the engine is stopped, restarting or not ready.
    """
    if not state or not engine:
        return HealthResponse(
            status="unhealthy",
            mode="router",
            engine_running=False,
            engine_healthy=False,
            restarting=False
        )

    running = engine.is_alive()
    healthy = running and await engine.is_healthy()
    return HealthResponse(
        status="ok" if healthy else "degraded",
        mode=state.mode.value,
        active_preset_id=state.active_preset_id,
        engine_running=running,
        engine_healthy=healthy,
        restarting=state.restarting
    )


@router.get(
    "/live",
    status_code=status.HTTP_200_OK,
    summary="Liveness probe"
)
async def liveness_probe():
    """
    Liveness probe.

    Returns:
        200 OK indicating the server is running.
    """
    return {"status": "alive"}
