"""
Schemas Package

This package provides Pydantic models for management API request and
response validation.
"""

from .requests import (
    # Model Management
    ModelLoadRequest,
    ModelUnloadRequest,
    AliasRequest,
    ModelInfo,
    ModelsListResponse,

    # Health and Status
    HealthResponse,
    StatusResponse,

    # Error
    ErrorDetail,
    ErrorBody,
    ErrorResponse,
)

__all__ = [
    # Model Management
    "ModelLoadRequest",
    "ModelUnloadRequest",
    "AliasRequest",
    "ModelInfo",
    "ModelsListResponse",

    # Health and Status
    "HealthResponse",
    "StatusResponse",

    # Error
    "ErrorDetail",
    "ErrorBody",
    "ErrorResponse",
]
