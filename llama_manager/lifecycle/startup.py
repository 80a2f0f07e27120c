"""
Application Startup Module

This module handles FastAPI application startup initialization.
All components are initialized in a specific order to ensure dependencies
are available when needed.

Initialization Order:
    1. Logging
    2. Durable state store (presets, aliases, runtime settings)
    3. Log sink
    4. HTTP client
    5. Orchestrator state (router mode, runtime config from settings)
    6. Engine process
    7. Compatibility checker and model resolver
    8. Metrics service
    9. Restart orchestrator (also observes unexpected engine exits)
    10. Preset service
    11. Conversation log and proxy service
    12. Model service
    13. Migrate model files on disk to presets
    14. Auto-start router mode (background)

Usage:
    from llama_manager.lifecycle.startup import startup_handler

    @app.on_event("startup")
    async def on_startup():
        await startup_handler()
"""

import asyncio
import logging

import httpx

from .dependencies import get_container, AppContainer
from ..core.compatibility import CompatibilityChecker
from ..core.config import AppConfig, load_config
from ..core.config_store import ConfigStore
from ..core.engine import EngineProcess
from ..core.logging_server import LogSink, setup_logging
from ..core.orchestrator import RestartOrchestrator, initial_runtime
from ..core.resolver import ModelResolver
from ..core.state import EngineSnapshot, Mode, OrchestratorState
from ..services.conversation_log import ConversationLog
from ..services.metrics_service import MetricsService
from ..services.model_service import ModelService
from ..services.preset_service import PresetService
from ..services.proxy_service import ProxyService


logger = logging.getLogger(__name__)


async def startup_handler() -> None:
    """
    Initialize all application components at startup.

    This function is called by FastAPI's on_event("startup") handler.
    Components are initialized in order of their dependencies.
    """
    container = get_container()
    if container.config is None:
        container.config = load_config()
    config = container.config

    try:
        # Step 1: Logging
        setup_logging(
            log_level=getattr(logging, config.logging.level),
            use_structured=config.logging.structured,
            log_dir=config.logging.log_dir
        )

        # Step 2: Durable state store
        logger.info(f"Loading state from: {config.state_path}")
        container.store = ConfigStore(config.state_path)
        container.store.load()
        settings = container.store.get_settings()

        # Step 3: Log sink
        container.log_sink = LogSink()

        # Step 4: HTTP client
        logger.info("Initializing HTTP client")
        container.http_client = _create_http_client(config)

        # Step 5: Orchestrator state
        container.state = OrchestratorState(
            EngineSnapshot(runtime=initial_runtime(settings), mode=Mode.ROUTER)
        )

        # Step 6: Engine process
        logger.info(f"Initializing EngineProcess at {config.engine.base_url}")
        container.engine = EngineProcess(
            config.engine,
            container.log_sink,
            container.http_client
        )

        # Step 7: Compatibility checker and model resolver
        checker = CompatibilityChecker(container.state)
        container.resolver = ModelResolver(
            container.store,
            config.engine.models_dir,
            container.state,
            checker,
            container.log_sink
        )

        # Step 8: Metrics service
        logger.info("Initializing MetricsService")
        container.metrics_service = MetricsService()

        # Step 9: Restart orchestrator
        logger.info("Initializing RestartOrchestrator")
        container.orchestrator = RestartOrchestrator(
            container.state,
            container.engine,
            checker,
            container.store,
            config.engine,
            container.log_sink,
            metrics=container.metrics_service
        )
        container.engine.on_exit = container.orchestrator.handle_engine_exit

        # Step 10: Preset service
        container.preset_service = PresetService(
            container.store,
            container.state,
            container.orchestrator,
            config.engine.models_dir,
            container.log_sink
        )

        # Step 11: Conversation log and proxy service
        container.conversation_log = ConversationLog()
        logger.info("Initializing ProxyService")
        container.proxy_service = ProxyService(
            container.resolver,
            container.orchestrator,
            container.store,
            container.http_client,
            config.engine.base_url,
            config.proxy,
            container.log_sink,
            container.conversation_log,
            container.metrics_service
        )

        # Step 12: Model service
        container.model_service = ModelService(
            container.store,
            container.resolver,
            checker,
            container.state,
            container.proxy_service,
            config.engine.models_dir,
            container.log_sink
        )

        # Step 13: Migrate existing model files to presets
        created = container.preset_service.migrate_existing_models()
        logger.info(f"Preset migration complete ({created} created)")

        # Step 14: Auto-start router mode
        if settings.auto_start:
            logger.info("Auto-start enabled, starting router mode in background")
            task = asyncio.create_task(_auto_start(container))
            container.background_tasks.append(task)

        logger.info("Server startup complete!")

    except Exception as e:
        logger.exception(f"FATAL: Server initialization failed: {e}")

        # Cleanup on failure
        await _emergency_cleanup(container)
        raise


def _create_http_client(config: AppConfig) -> httpx.AsyncClient:
    """Create configured HTTP client for the engine."""
    limits = httpx.Limits(
        max_keepalive_connections=config.proxy.max_keepalive,
        max_connections=config.proxy.max_connections,
        keepalive_expiry=60.0
    )

    return httpx.AsyncClient(
        timeout=httpx.Timeout(
            connect=2.0,  # Engine runs on the local host
            read=config.proxy.request_timeout_sec,
            write=30.0,
            pool=5.0
        ),
        limits=limits,
        http2=False
    )


async def _auto_start(container: AppContainer) -> None:
    result = await container.orchestrator.start_router()
    if result.success:
        logger.info("Router mode started")
    else:
        logger.error(f"Auto-start failed: {result.error}")


async def _emergency_cleanup(container: AppContainer) -> None:
    """Emergency cleanup on startup failure."""
    logger.info("Performing emergency cleanup...")

    if container.engine and container.engine.is_alive():
        try:
            await container.engine.stop()
            logger.info("Stopped engine during emergency cleanup")
        except Exception as e:
            logger.warning(f"Error stopping engine: {e}")

    if container.http_client:
        try:
            await container.http_client.aclose()
        except Exception as e:
            logger.warning(f"Error closing HTTP client: {e}")
