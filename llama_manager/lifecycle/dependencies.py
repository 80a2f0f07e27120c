"""
Application Dependencies Module

This module provides dependency injection for FastAPI endpoints.
Dependencies are initialized at startup and injected into route handlers.

Components:
    - AppContainer: Holds all initialized dependencies
    - Getter functions: FastAPI Depends() compatible functions

Usage:
    from llama_manager.lifecycle.dependencies import get_proxy_service

    @router.post("/chat/completions")
    async def chat(
        request: Request,
        proxy_service: ProxyService = Depends(get_proxy_service)
    ):
        ...
"""

import httpx
import asyncio
import logging
from typing import Optional
from dataclasses import dataclass, field

from ..core.config import AppConfig
from ..core.config_store import ConfigStore
from ..core.engine import EngineProcess
from ..core.logging_server import LogSink
from ..core.orchestrator import RestartOrchestrator
from ..core.resolver import ModelResolver
from ..core.state import OrchestratorState
from ..services.conversation_log import ConversationLog
from ..services.metrics_service import MetricsService
from ..services.model_service import ModelService
from ..services.preset_service import PresetService
from ..services.proxy_service import ProxyService


logger = logging.getLogger(__name__)


@dataclass
class AppContainer:
    """
    Container for application dependencies.

    Attributes:
        config: Application configuration
        store: Durable presets, aliases and runtime settings
        log_sink: Operator-facing log buffer
        state: Engine mode, runtime config and restart lock
        engine: llama-server process
        orchestrator: Restart orchestrator
        preset_service: Preset management
        model_service: Model listings and load/unload
        proxy_service: Inference proxy
        conversation_log: Recent inference requests
        metrics_service: Prometheus metrics
        http_client: Async HTTP client for the engine
        shutdown_event: Event signaling shutdown
    """
    config: Optional[AppConfig] = None
    store: Optional[ConfigStore] = None
    log_sink: Optional[LogSink] = None
    state: Optional[OrchestratorState] = None
    engine: Optional[EngineProcess] = None
    resolver: Optional[ModelResolver] = None
    orchestrator: Optional[RestartOrchestrator] = None
    preset_service: Optional[PresetService] = None
    model_service: Optional[ModelService] = None
    proxy_service: Optional[ProxyService] = None
    conversation_log: Optional[ConversationLog] = None
    metrics_service: Optional[MetricsService] = None
    http_client: Optional[httpx.AsyncClient] = None
    shutdown_event: asyncio.Event = field(default_factory=asyncio.Event)
    background_tasks: list = field(default_factory=list)
    active_requests: int = 0


# Global container instance
_container: Optional[AppContainer] = None


def get_container() -> AppContainer:
    """Get the global container instance."""
    global _container
    if _container is None:
        _container = AppContainer()
    return _container


def set_container(container: AppContainer) -> None:
    """Set the global container instance."""
    global _container
    _container = container


# =============================================================================
# FastAPI Dependency Functions
# =============================================================================

def get_config() -> Optional[AppConfig]:
    """Get application configuration."""
    return get_container().config


def get_store() -> Optional[ConfigStore]:
    return get_container().store


def get_log_sink() -> Optional[LogSink]:
    return get_container().log_sink


def get_state() -> Optional[OrchestratorState]:
    return get_container().state


def get_engine() -> Optional[EngineProcess]:
    return get_container().engine


def get_orchestrator() -> Optional[RestartOrchestrator]:
    """Get restart orchestrator instance."""
    return get_container().orchestrator


def get_preset_service() -> Optional[PresetService]:
    """Get preset service instance."""
    return get_container().preset_service


def get_model_service() -> Optional[ModelService]:
    """Get model service instance."""
    return get_container().model_service


def get_proxy_service() -> Optional[ProxyService]:
    """Get proxy service instance."""
    return get_container().proxy_service


def get_conversation_log() -> Optional[ConversationLog]:
    return get_container().conversation_log


def get_metrics_service() -> Optional[MetricsService]:
    """Get MetricsService instance."""
    return get_container().metrics_service


def get_http_client() -> Optional[httpx.AsyncClient]:
    """Get HTTP client instance."""
    return get_container().http_client


def get_shutdown_event() -> asyncio.Event:
    """Get shutdown event."""
    return get_container().shutdown_event


def is_shutting_down() -> bool:
    """Check if application is shutting down."""
    return get_container().shutdown_event.is_set()


def get_active_requests() -> int:
    """Get current active request count."""
    return get_container().active_requests


def increment_active_requests() -> int:
    """Increment active request count and return new value."""
    container = get_container()
    container.active_requests += 1
    return container.active_requests


def decrement_active_requests() -> int:
    """Decrement active request count and return new value."""
    container = get_container()
    container.active_requests = max(0, container.active_requests - 1)
    return container.active_requests
