"""
Main Application Module

This module defines the FastAPI application factory and configuration.
"""

import logging
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .core.config import AppConfig
from .routes import api_router
from .lifecycle.startup import startup_handler
from .lifecycle.shutdown import shutdown_handler
from .lifecycle.dependencies import set_container, AppContainer
from .middlewares.request_tracker import RequestTrackerMiddleware


logger = logging.getLogger(__name__)


def create_app(config: AppConfig) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        config: Application configuration

    Returns:
        Configured FastAPI app
    """
    app = FastAPI(
        title="Llama Manager API",
        version="1.0.0",
        description="Control plane and OpenAI-compatible proxy for llama-server",
        docs_url="/docs",
        redoc_url="/redoc"
    )

    # Initialize Dependency Container
    container = AppContainer()
    container.config = config
    set_container(container)

    # Add Middlewares
    # Execution order: last added -> first executed

    # 1. CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.api.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # 2. Request Tracker (Active request count for graceful shutdown)
    app.add_middleware(RequestTrackerMiddleware)

    # Include Routes
    app.include_router(api_router)

    # Lifecycle Events
    @app.on_event("startup")
    async def on_startup():
        await startup_handler()

    @app.on_event("shutdown")
    async def on_shutdown():
        await shutdown_handler()

    logger.info("FastAPI application created")
    return app
