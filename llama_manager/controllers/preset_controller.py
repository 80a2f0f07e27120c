"""
Preset Controller Module

This module defines the preset management endpoints. Domain errors raised by
PresetService are translated here into OpenAI-style HTTP errors.
"""

from typing import Any, Dict

from fastapi import APIRouter, Body, Depends, HTTPException, status

from ..core.errors import (
    ConflictError,
    InvalidPresetError,
    InvalidRequestError,
    ModelFileNotFoundError,
    NotFoundError,
    PresetConflictError,
    PresetInUseError,
    PresetNotFoundError,
    ServerError,
    ServiceUnavailableError,
)
from ..lifecycle.dependencies import get_preset_service
from ..schemas.requests import ErrorResponse
from ..services.preset_service import PresetService

router = APIRouter(prefix="/api/presets", tags=["Presets"])


def _require(service: PresetService) -> PresetService:
    if not service:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Preset service not available"
        )
    return service


def _translate(e: Exception) -> HTTPException:
    if isinstance(e, PresetNotFoundError):
        return NotFoundError(str(e), resource="preset")
    if isinstance(e, ModelFileNotFoundError):
        return NotFoundError(str(e), resource="modelPath", code="model_file_not_found")
    if isinstance(e, PresetConflictError):
        return ConflictError(str(e))
    if isinstance(e, (PresetInUseError, InvalidPresetError)):
        return InvalidRequestError(str(e), param="preset")
    return ServerError(str(e))


@router.get("", summary="List presets")
async def list_presets(preset_service: PresetService = Depends(get_preset_service)):
    return [preset.to_store() for preset in _require(preset_service).list()]


@router.post(
    "",
    status_code=status.HTTP_201_CREATED,
    summary="Create a preset",
    responses={
        400: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse}
    }
)
async def create_preset(
    data: Dict[str, Any] = Body(...),
    preset_service: PresetService = Depends(get_preset_service)
):
    """
    Create a preset.

    Requires id, name and modelPath or hfRepo. A relative modelPath is taken
    under the model root.
    """
    try:
        preset = _require(preset_service).create(data)
    except (PresetConflictError, InvalidPresetError, ModelFileNotFoundError) as e:
        raise _translate(e)
    return {"success": True, "preset": preset.to_store()}


@router.put("/{preset_id}", summary="Update or rename a preset")
async def update_preset(
    preset_id: str,
    changes: Dict[str, Any] = Body(...),
    preset_service: PresetService = Depends(get_preset_service)
):
    try:
        preset = _require(preset_service).update(preset_id, changes)
    except (
        PresetNotFoundError,
        PresetConflictError,
        InvalidPresetError,
        ModelFileNotFoundError,
    ) as e:
        raise _translate(e)
    return {"success": True, "preset": preset.to_store()}


@router.delete("/{preset_id}", summary="Delete a preset")
async def delete_preset(
    preset_id: str,
    preset_service: PresetService = Depends(get_preset_service)
):
    try:
        _require(preset_service).delete(preset_id)
    except (PresetNotFoundError, PresetInUseError) as e:
        raise _translate(e)
    return {"success": True}


@router.post(
    "/{preset_id}/activate",
    summary="Run the engine for a preset",
    responses={404: {"model": ErrorResponse}, 503: {"model": ErrorResponse}}
)
async def activate_preset(
    preset_id: str,
    preset_service: PresetService = Depends(get_preset_service)
):
    """
    Restart the engine in single mode for the preset, even when the running
    engine is already compatible with it.
    """
    try:
        result = await _require(preset_service).activate(preset_id)
    except PresetNotFoundError as e:
        raise _translate(e)

    if not result.success:
        raise ServiceUnavailableError(
            f"Server restart failed: {result.error}",
            code="restart_failed"
        )
    return {"success": True, "activePresetId": preset_id}
