from .health_controller import router as health_router
from .inference_controller import router as inference_router
from .logs_controller import router as logs_router
from .metrics_controller import router as metrics_router
from .model_controller import openai_router as openai_model_router
from .model_controller import router as model_router
from .preset_controller import router as preset_router
from .server_controller import router as server_router
from .settings_controller import router as settings_router

__all__ = [
    "health_router",
    "inference_router",
    "logs_router",
    "metrics_router",
    "openai_model_router",
    "model_router",
    "preset_router",
    "server_router",
    "settings_router",
]
