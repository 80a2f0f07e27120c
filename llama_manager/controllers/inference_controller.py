"""
Inference Controller Module

This module defines the OpenAI and Anthropic compatible inference endpoints.
The router is mounted under /v1 and, for the bundled web UI, under /api/v1.
"""

import json
from typing import Any

from fastapi import APIRouter, Depends, Request, Response, status

from ..core.errors import InvalidRequestError
from ..lifecycle.dependencies import get_proxy_service
from ..services.proxy_service import ProxyService

router = APIRouter(tags=["Inference"])


async def _read_json(request: Request) -> Any:
    try:
        return await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise InvalidRequestError("Request body must be valid JSON")


def _unavailable() -> Response:
    return Response(
        content="Proxy service unavailable",
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE
    )


@router.post(
    "/chat/completions",
    # Proxy service returns Response object directly (streaming or JSON)
    response_model=None,
    summary="Create chat completion"
)
async def chat_completions(
    request: Request,
    proxy_service: ProxyService = Depends(get_proxy_service)
):
    """
    Generate a chat completion response.

    The requested model is resolved to a preset, the engine is restarted if
    the preset needs different launch parameters, and the request is
    forwarded with the preset's sampling defaults.
    """
    if not proxy_service:
        return _unavailable()
    return await proxy_service.handle("chat/completions", await _read_json(request))


@router.post("/completions", response_model=None, summary="Create completion")
async def completions(
    request: Request,
    proxy_service: ProxyService = Depends(get_proxy_service)
):
    if not proxy_service:
        return _unavailable()
    return await proxy_service.handle("completions", await _read_json(request))


@router.post("/embeddings", response_model=None, summary="Create embeddings")
async def create_embeddings(
    request: Request,
    proxy_service: ProxyService = Depends(get_proxy_service)
):
    """
    Generate embeddings for input text.
    """
    if not proxy_service:
        return _unavailable()
    return await proxy_service.handle("embeddings", await _read_json(request))


@router.post("/responses", response_model=None, summary="Create response (Responses API)")
async def responses(
    request: Request,
    proxy_service: ProxyService = Depends(get_proxy_service)
):
    if not proxy_service:
        return _unavailable()
    return await proxy_service.handle("responses", await _read_json(request))


@router.post("/messages", response_model=None, summary="Create message (Anthropic)")
async def messages(
    request: Request,
    proxy_service: ProxyService = Depends(get_proxy_service)
):
    if not proxy_service:
        return _unavailable()
    return await proxy_service.handle("messages", await _read_json(request))


@router.post("/messages/count_tokens", response_model=None, summary="Count message tokens")
async def count_tokens(
    request: Request,
    proxy_service: ProxyService = Depends(get_proxy_service)
):
    """Forwarded unchanged."""
    if not proxy_service:
        return _unavailable()
    return await proxy_service.passthrough("/v1/messages/count_tokens", await _read_json(request))


@router.post("/rerank", response_model=None, summary="Rerank documents")
async def rerank(
    request: Request,
    proxy_service: ProxyService = Depends(get_proxy_service)
):
    if not proxy_service:
        return _unavailable()
    return await proxy_service.passthrough("/v1/rerank", await _read_json(request))


@router.post("/reranking", response_model=None, summary="Rerank documents")
async def reranking(
    request: Request,
    proxy_service: ProxyService = Depends(get_proxy_service)
):
    if not proxy_service:
        return _unavailable()
    return await proxy_service.passthrough("/v1/reranking", await _read_json(request))
