"""
Settings Controller Module

Runtime settings (context size, GPU layers, reasoning effort, ...) are read
and changed here. Launch-related changes take effect on the next engine
restart; reasoning effort applies to the next request.
"""

from typing import Any, Dict

from fastapi import APIRouter, Body, Depends, HTTPException, status
from pydantic import ValidationError

from ..core.config_store import ConfigStore
from ..core.errors import InvalidRequestError
from ..core.logging_server import LogSink
from ..lifecycle.dependencies import get_log_sink, get_store
from ..schemas.requests import ErrorResponse

router = APIRouter(prefix="/api", tags=["Settings"])


def _format_validation_error(e: ValidationError) -> str:
    parts = []
    for error in e.errors():
        location = ".".join(str(item) for item in error.get("loc", ()))
        parts.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
    return "; ".join(parts)


@router.get("/settings", summary="Get runtime settings")
async def get_settings(store: ConfigStore = Depends(get_store)):
    if not store:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="State store not available"
        )
    return store.get_settings().to_store()


@router.post(
    "/settings",
    summary="Update runtime settings",
    responses={400: {"model": ErrorResponse}}
)
async def update_settings(
    changes: Dict[str, Any] = Body(...),
    store: ConfigStore = Depends(get_store),
    log_sink: LogSink = Depends(get_log_sink)
):
    """
    Merge changes into the runtime settings.

    Accepts camelCase or snake_case keys. Nothing is saved when any value
    is invalid.
    """
    if not store:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="State store not available"
        )

    try:
        settings = store.update_settings(changes)
    except ValidationError as e:
        raise InvalidRequestError(f"Invalid settings: {_format_validation_error(e)}")

    if log_sink is not None:
        log_sink.add_log("server", f"Settings updated: {', '.join(sorted(changes))}")
    return {"success": True, "settings": settings.to_store()}
