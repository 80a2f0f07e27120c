"""
Routes Configuration

This module aggregates all controller routers into a single API router.
"""

from fastapi import APIRouter
from .controllers import (
    health_router,
    inference_router,
    logs_router,
    metrics_router,
    openai_model_router,
    model_router,
    preset_router,
    server_router,
    settings_router
)

# Main API Router
api_router = APIRouter()

# System endpoints (no prefix)
api_router.include_router(health_router)   # /health, /live
api_router.include_router(metrics_router)  # /metrics

# Management API (/api/...)
api_router.include_router(model_router)     # /api/models, /api/models/aliases
api_router.include_router(preset_router)    # /api/presets
api_router.include_router(server_router)    # /api/server/*, /api/status
api_router.include_router(settings_router)  # /api/settings
api_router.include_router(logs_router)      # /api/logs, /api/llm-logs

# OpenAI-compatible endpoints (with /v1 prefix)
api_router.include_router(openai_model_router, prefix="/v1")  # /v1/models
api_router.include_router(inference_router, prefix="/v1")     # /v1/chat/completions, etc.

# Same inference endpoints for the web UI
api_router.include_router(inference_router, prefix="/api/v1", include_in_schema=False)
