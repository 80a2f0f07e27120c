"""
Request Tracker Middleware

This middleware tracks active requests and rejects new requests during shutdown.

Features:
    - Counts active requests, so shutdown can drain them
    - Rejects requests during shutdown with an OpenAI-style 503

Usage:
    from llama_manager.middlewares.request_tracker import RequestTrackerMiddleware

    app.add_middleware(RequestTrackerMiddleware)
"""

import asyncio
import logging
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse
from fastapi import status

from ..lifecycle.dependencies import (
    is_shutting_down,
    increment_active_requests,
    decrement_active_requests
)


logger = logging.getLogger(__name__)


class RequestTrackerMiddleware(BaseHTTPMiddleware):
    """
    Middleware to track active requests and handle shutdown gracefully.

    During shutdown:
    - Rejects new incoming requests with 503
    - Existing requests are allowed to complete

    Attributes:
        _lock: Async lock for counter updates
    """

    def __init__(self, app):
        super().__init__(app)
        self._lock = asyncio.Lock()

    async def dispatch(self, request: Request, call_next):
        """Process request with tracking."""
        if is_shutting_down():
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={
                    "detail": {
                        "error": {
                            "message": "Server is shutting down",
                            "type": "service_unavailable_error",
                            "param": None,
                            "code": "shutting_down"
                        }
                    }
                }
            )

        async with self._lock:
            increment_active_requests()

        try:
            response = await call_next(request)
            return response
        finally:
            async with self._lock:
                decrement_active_requests()
