"""
Model Controller Module

This module defines endpoints for listing models, explicit load/unload and
model file aliases.
"""

from fastapi import APIRouter, Body, Depends, HTTPException, status

from ..core.config_store import ConfigStore
from ..core.errors import NotFoundError
from ..lifecycle.dependencies import get_model_service, get_store
from ..schemas.requests import (
    AliasRequest,
    ErrorResponse,
    ModelLoadRequest,
    ModelsListResponse,
    ModelUnloadRequest,
)
from ..services.model_service import ModelService

# Mounted under /v1
openai_router = APIRouter(tags=["Models"])

# Mounted at the root, paths start with /api
router = APIRouter(tags=["Models"])


def _require(service):
    if not service:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Model service not available"
        )
    return service


@openai_router.get(
    "/models",
    response_model=ModelsListResponse,
    summary="List available models"
)
async def list_models(
    model_service: ModelService = Depends(get_model_service)
):
    """
    List all presets as OpenAI models.

    Returns:
        ModelsListResponse: Presets with their current status.
    """
    return await _require(model_service).list_openai_models()


@openai_router.get(
    "/models/{model_id}",
    summary="Get a model",
    responses={404: {"model": ErrorResponse}}
)
async def get_model(
    model_id: str,
    model_service: ModelService = Depends(get_model_service)
):
    model = await _require(model_service).get_openai_model(model_id)
    if model is None:
        raise NotFoundError(f"Model '{model_id}' not found")
    return model


@router.get("/api/models", summary="Model catalog for the operator UI")
async def api_models(
    model_service: ModelService = Depends(get_model_service)
):
    return await _require(model_service).list_api_models()


@router.post(
    "/api/models/load",
    summary="Load a model",
    responses={
        200: {"description": "Model loaded successfully"},
        404: {"model": ErrorResponse},
        503: {"model": ErrorResponse}
    }
)
async def load_model(
    request: ModelLoadRequest = Body(...),
    model_service: ModelService = Depends(get_model_service)
):
    """
    Make the engine load a model by sending it a one-token completion.

    Restarts the engine first when the preset needs different launch
    parameters.
    """
    return await _require(model_service).load(request.model)


@router.post("/api/models/unload", summary="Unload a model")
async def unload_model(
    request: ModelUnloadRequest = Body(...),
    model_service: ModelService = Depends(get_model_service)
):
    return await _require(model_service).unload(request.model)


@router.get("/api/models/aliases", summary="List model aliases")
async def list_aliases(store: ConfigStore = Depends(get_store)):
    return _require(store).get_aliases()


@router.put("/api/models/aliases/{model_name:path}", summary="Set a model alias")
async def set_alias(
    model_name: str,
    request: AliasRequest = Body(...),
    store: ConfigStore = Depends(get_store)
):
    _require(store).set_alias(model_name, request.alias)
    return {"success": True, "model": model_name, "alias": request.alias}


@router.delete("/api/models/aliases/{model_name:path}", summary="Remove a model alias")
async def remove_alias(
    model_name: str,
    store: ConfigStore = Depends(get_store)
):
    if not _require(store).remove_alias(model_name):
        raise NotFoundError(f"No alias for '{model_name}'", resource="alias")
    return {"success": True, "model": model_name}
