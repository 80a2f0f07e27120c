"""
Lifecycle Package

This package provides application lifecycle management including:
- Dependency injection (dependencies.py)
- Startup initialization (startup.py)
- Graceful shutdown (shutdown.py)
"""

from .dependencies import (
    AppContainer,
    get_container,
    set_container,
    get_config,
    get_store,
    get_log_sink,
    get_state,
    get_engine,
    get_orchestrator,
    get_preset_service,
    get_model_service,
    get_proxy_service,
    get_conversation_log,
    get_metrics_service,
    get_http_client,
    get_shutdown_event,
    is_shutting_down,
    get_active_requests,
    increment_active_requests,
    decrement_active_requests,
)

from .startup import startup_handler
from .shutdown import shutdown_handler

__all__ = [
    # Container
    "AppContainer",
    "get_container",
    "set_container",

    # Dependency getters
    "get_config",
    "get_store",
    "get_log_sink",
    "get_state",
    "get_engine",
    "get_orchestrator",
    "get_preset_service",
    "get_model_service",
    "get_proxy_service",
    "get_conversation_log",
    "get_metrics_service",
    "get_http_client",
    "get_shutdown_event",
    "is_shutting_down",
    "get_active_requests",
    "increment_active_requests",
    "decrement_active_requests",

    # Lifecycle handlers
    "startup_handler",
    "shutdown_handler",
]
