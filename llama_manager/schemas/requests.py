"""
Request and Response Schemas Module

This module defines Pydantic models for management API request and response
validation. Inference requests are not modelled here: their bodies are
forwarded to the engine as received, apart from the rewrites the proxy
applies.

Schema Categories:
    - Model Management: load/unload and alias requests
    - Health/Status: Response schemas for monitoring endpoints
    - Error: OpenAI-style error envelope for OpenAPI docs

Usage:
    from llama_manager.schemas.requests import ModelLoadRequest

    @router.post("/api/models/load")
    async def load_model(request: ModelLoadRequest = Body(...)):
        ...
"""

from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field, field_validator


# =============================================================================
# Model Management Schemas
# =============================================================================

class ModelLoadRequest(BaseModel):
    """Request to make the engine load a model."""
    model: str = Field(
        ...,
        min_length=1,
        description="Preset id or model file name"
    )


class ModelUnloadRequest(BaseModel):
    """Request to make the engine unload a model."""
    model: str = Field(
        ...,
        min_length=1,
        description="Preset id, model file name or engine model id"
    )


class AliasRequest(BaseModel):
    alias: str = Field(
        ...,
        description="Display alias for a local model file"
    )

    @field_validator("alias")
    @classmethod
    def validate_alias(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Alias must not be empty")
        return v


class ModelInfo(BaseModel):
    """OpenAI-compatible model information, extended with preset status."""
    id: str
    object: str = "model"
    created: int
    owned_by: str
    name: Optional[str] = None
    description: Optional[str] = None
    status: str


class ModelsListResponse(BaseModel):
    object: str = "list"
    data: List[ModelInfo]


# =============================================================================
# Health and Status Schemas
# =============================================================================

class HealthResponse(BaseModel):
    """Health of the control plane and its engine."""
    status: str = Field(
        ...,
        description="ok when the engine answers its health check, else degraded"
    )
    mode: str = Field(..., description="router or single")
    active_preset_id: Optional[str] = None
    engine_running: bool
    engine_healthy: bool
    restarting: bool


class StatusResponse(BaseModel):
    """Engine mode, runtime configuration and restart state."""
    mode: str
    active_preset_id: Optional[str] = None
    runtime: Dict[str, Any]
    pending: Optional[Dict[str, Any]] = Field(
        None,
        description="Candidate state of a restart in progress"
    )
    restarting: bool
    engine_running: bool
    engine_healthy: bool
    engine_pid: Optional[int] = None
    engine_url: str


# =============================================================================
# Error Schemas
# =============================================================================

class ErrorDetail(BaseModel):
    """OpenAI-compatible error detail."""
    message: str
    type: str
    param: Optional[str] = None
    code: Optional[str] = None


class ErrorBody(BaseModel):
    error: ErrorDetail


class ErrorResponse(BaseModel):
    """Error response as produced by the HTTPException handler."""
    detail: ErrorBody
