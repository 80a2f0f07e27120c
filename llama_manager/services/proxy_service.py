"""
Proxy Service Module

This module forwards OpenAI/Anthropic-compatible inference requests to
llama-server and recovers from the engine's known failure modes.

Request Flow:
    1. Resolve the requested model (preset, model file, or 404)
    2. Rewrite the outbound model id and merge preset sampling defaults
    3. Restart the engine first if the preset is incompatible with it (503
       if the restart fails)
    4. Inject the configured reasoning effort
    5. Forward, retrying connection-level failures with exponential backoff
    6. Recover at most once per kind:
       - load failure: unload every other loaded model, retry
       - template error: sanitize assistant tool-call messages, retry
    7. Relay the response (streamed chunk by chunk, or annotated JSON) and
       write exactly one conversation log record

Error Mapping:
    - Missing model field -> 400
    - Unknown model, preset without a downloaded model -> 404
    - Restart failed -> 503 (code restart_failed)
    - Engine unreachable after retries -> 502
    - Any other engine error -> passed through with its status and body

Usage:
    service = ProxyService(resolver, orchestrator, store, http_client, ...)
    response = await service.handle("chat/completions", body)
"""

import json
import time
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import httpx
from fastapi import HTTPException
from fastapi.responses import JSONResponse, Response, StreamingResponse

from ..core.config import ProxyConfig
from ..core.config_store import ConfigStore
from ..core.errors import (
    BadGatewayError,
    InvalidRequestError,
    NotFoundError,
    ServerError,
    ServiceUnavailableError,
)
from ..core.logging_server import LogSink
from ..core.orchestrator import RestartOrchestrator
from ..core.resolver import ModelResolver, ResolvedPreset, engine_model_status
from .conversation_log import (
    ConversationLog,
    ConversationRecord,
    OUTCOME_CLIENT_CLOSED,
    OUTCOME_COMPLETED,
    OUTCOME_ERROR,
)
from .metrics_service import MetricsService
from .request_rewriter import apply_preset_to_request, inject_reasoning_effort, sanitize_messages
from .upstream import CONNECTION_ERRORS, OutcomeKind, classify_error, classify_response
from .usage import (
    SHAPE_ANTHROPIC,
    SHAPE_CHAT,
    SHAPE_COMPLETIONS,
    SHAPE_EMBEDDINGS,
    SHAPE_RESPONSES,
    StreamUsageTracker,
    UsageStats,
    extract_usage,
    tokens_per_second,
)


logger = logging.getLogger(__name__)


ENGINE_LIST_TIMEOUT = 10.0
PRELOAD_PROMPT = [{"role": "user", "content": "hi"}]


@dataclass(frozen=True)
class EndpointSpec:
    """
    How one inference endpoint is proxied.

    Attributes:
        label: Name used in logs and records ("chat/completions")
        path: Engine path
        shape: Response shape for usage accounting
        inject_reasoning: Apply reasoning effort injection
        streaming: Endpoint supports "stream": true
        annotate: Add _llama_manager timing metadata to JSON responses
    """

    label: str
    path: str
    shape: str
    inject_reasoning: bool = False
    streaming: bool = True
    annotate: bool = True


ENDPOINTS: Dict[str, EndpointSpec] = {
    "chat/completions": EndpointSpec(
        "chat/completions", "/v1/chat/completions", SHAPE_CHAT, inject_reasoning=True
    ),
    "completions": EndpointSpec("completions", "/v1/completions", SHAPE_COMPLETIONS),
    "embeddings": EndpointSpec(
        "embeddings", "/v1/embeddings", SHAPE_EMBEDDINGS, streaming=False, annotate=False
    ),
    "responses": EndpointSpec(
        "responses", "/v1/responses", SHAPE_RESPONSES, inject_reasoning=True
    ),
    "messages": EndpointSpec("messages", "/v1/messages", SHAPE_ANTHROPIC, inject_reasoning=True),
}


class _RequestContext:
    """Per-request bookkeeping; guarantees a single conversation record."""

    def __init__(self, spec: EndpointSpec, body: Dict[str, Any]):
        self.spec = spec
        self.body = body
        self.requested = body.get("model") if isinstance(body.get("model"), str) else None
        self.stream = spec.streaming and body.get("stream") is True
        self.started = time.monotonic()
        self.recorded = False

    @property
    def duration_ms(self) -> int:
        return int((time.monotonic() - self.started) * 1000)


class ProxyService:
    """
    Service for proxying inference requests to llama-server.

    Attributes:
        resolver: Model resolver
        orchestrator: Restart orchestrator
        store: Source of reasoning effort settings
        http_client: HTTPX async client
        engine_url: Base URL of the engine
        settings: Proxy retry configuration
    """

    def __init__(
        self,
        resolver: ModelResolver,
        orchestrator: RestartOrchestrator,
        store: ConfigStore,
        http_client: httpx.AsyncClient,
        engine_url: str,
        settings: ProxyConfig,
        log_sink: LogSink,
        conversation_log: ConversationLog,
        metrics: MetricsService
    ):
        self.resolver = resolver
        self.orchestrator = orchestrator
        self.store = store
        self.http_client = http_client
        self.engine_url = engine_url.rstrip("/")
        self.settings = settings
        self.log_sink = log_sink
        self.conversation_log = conversation_log
        self.metrics = metrics

    async def handle(self, label: str, body: Any) -> Response:
        """
        Proxy one inference request.

        Args:
            label: Endpoint key in ENDPOINTS
            body: Parsed JSON request body

        Returns:
            JSONResponse, StreamingResponse, or the engine's error response

        Raises:
            OpenAIError subclasses for 400/404/502/503
        """
        spec = ENDPOINTS[label]
        if not isinstance(body, dict):
            raise InvalidRequestError("Request body must be a JSON object")

        ctx = _RequestContext(spec, body)
        try:
            return await self._handle(ctx)
        except HTTPException as e:
            self._record(ctx, e.status_code, OUTCOME_ERROR, error=self._error_text(e))
            raise
        except Exception as e:
            logger.exception(f"[{label}] Unexpected proxy error")
            self._record(ctx, 500, OUTCOME_ERROR, error=str(e))
            raise ServerError("Internal server error occurred")

    async def _handle(self, ctx: _RequestContext) -> Response:
        spec = ctx.spec
        if not ctx.requested:
            raise InvalidRequestError("Field 'model' is required in request body", param="model")

        logger.info(f"[{spec.label}] Request for model: {ctx.requested} (stream={ctx.stream})")

        resolved = self.resolver.resolve(ctx.requested)
        if resolved is None:
            self.log_sink.add_log("proxy", f"[{spec.label}] Model not found: {ctx.requested}")
            raise NotFoundError(f"Model '{ctx.requested}' not found")

        engine_model = self.resolver.resolve_path(resolved)
        preset = resolved.preset if isinstance(resolved, ResolvedPreset) else None
        if engine_model is None:
            raise NotFoundError(
                f"Preset '{preset.id}' references a model that is not downloaded yet",
                code="model_not_downloaded"
            )

        outbound = dict(ctx.body)
        outbound["model"] = engine_model
        if preset is not None:
            outbound = apply_preset_to_request(outbound, preset)

            result = await self.orchestrator.ensure_compatible(preset)
            if not result.success:
                logger.error(f"[{spec.label}] Server restart failed: {result.error}")
                raise ServiceUnavailableError(
                    f"Server restart failed: {result.error}",
                    code="restart_failed"
                )
            logger.info(f"[{spec.label}] Preset '{preset.id}' resolved to '{engine_model}'")

        if spec.inject_reasoning:
            settings = self.store.get_settings()
            outbound = inject_reasoning_effort(
                outbound,
                ctx.requested,
                settings.default_reasoning_effort,
                settings.model_reasoning_effort
            )

        response = await self._forward_with_recovery(ctx, outbound, keep_model=engine_model)
        if not isinstance(response, httpx.Response):
            return response

        if ctx.stream:
            return self._relay_stream(ctx, response)
        return await self._relay_json(ctx, response)

    async def _send(self, path: str, body: Dict[str, Any], label: str) -> httpx.Response:
        """
        POST to the engine, retrying connection-level failures only.

        The response is opened in streaming mode; callers read or relay it.
        """
        url = f"{self.engine_url}{path}"
        retries = self.settings.connect_retries
        for attempt in range(retries + 1):
            try:
                request = self.http_client.build_request("POST", url, json=body)
                return await self.http_client.send(request, stream=True)
            except CONNECTION_ERRORS as e:
                if attempt >= retries:
                    logger.error(f"[{label}] Connection failed after {attempt + 1} attempts: {e}")
                    raise
                delay = self.settings.retry_base_delay_sec * (2 ** attempt)
                logger.warning(
                    f"[{label}] Connection failed (attempt {attempt + 1}/{retries + 1}), "
                    f"retrying in {delay:.1f}s: {e}"
                )
                self.metrics.record_connection_retry(label)
                await asyncio.sleep(delay)
        raise RuntimeError("unreachable")

    async def _forward_with_recovery(
        self,
        ctx: _RequestContext,
        body: Dict[str, Any],
        keep_model: str
    ):
        """
        Forward and apply the one-shot recoveries.

        Returns:
            The open successful httpx.Response, or a Response carrying the
            engine's error verbatim
        """
        spec = ctx.spec
        evicted = False
        sanitized = False
        current = body

        while True:
            try:
                response = await self._send(spec.path, current, spec.label)
            except httpx.HTTPError as e:
                outcome = classify_error(e)
                self.log_sink.add_log("proxy", f"[{spec.label}] Failed to reach llama server: {outcome.detail}")
                raise BadGatewayError(f"Failed to reach llama server: {outcome.detail}")

            if response.is_success:
                return response

            try:
                content = await response.aread()
            except httpx.HTTPError as e:
                raise BadGatewayError(f"Failed to read llama server response: {classify_error(e).detail}")
            finally:
                await response.aclose()
            text = content.decode("utf-8", errors="replace")
            outcome = classify_response(response.status_code, text)

            if outcome.kind is OutcomeKind.LOAD_FAILURE and not evicted:
                evicted = True
                logger.info(f"[{spec.label}] Model load failure for {ctx.requested}, attempting to free memory")
                self.metrics.record_recovery("eviction")
                if await self._unload_other_models(keep_model):
                    continue
                logger.info(f"[{spec.label}] No other models loaded, returning original error")

            elif (
                outcome.kind is OutcomeKind.TEMPLATE_INCOMPATIBLE
                and not sanitized
                and isinstance(current.get("messages"), list)
            ):
                sanitized = True
                logger.info(f"[{spec.label}] Template error, retrying with sanitized messages")
                self.log_sink.add_log("proxy", f"[{spec.label}] Template error, retrying with sanitized messages")
                self.metrics.record_recovery("sanitize")
                current = {**current, "messages": sanitize_messages(current["messages"])}
                continue

            logger.error(f"[{spec.label}] Error {outcome.status_code} for model {ctx.requested}: {text}")
            self.log_sink.add_log(
                "proxy",
                f"[{spec.label}] Request failed for model {ctx.requested}: {text}"
            )
            self._record(ctx, outcome.status_code, OUTCOME_ERROR, error=text)
            return Response(
                content=content,
                status_code=outcome.status_code,
                media_type=response.headers.get("content-type", "application/json")
            )

    async def _relay_json(self, ctx: _RequestContext, response: httpx.Response) -> Response:
        try:
            content = await response.aread()
        except httpx.HTTPError as e:
            detail = str(e) or e.__class__.__name__
            logger.error(f"[{ctx.spec.label}] Failed reading response body: {detail}")
            raise BadGatewayError(f"Failed to read llama server response: {detail}")
        finally:
            await response.aclose()

        try:
            data = json.loads(content)
        except ValueError:
            self._record(ctx, response.status_code, OUTCOME_COMPLETED)
            return Response(
                content=content,
                status_code=response.status_code,
                media_type=response.headers.get("content-type")
            )

        duration_ms = ctx.duration_ms
        stats = extract_usage(ctx.spec.shape, data)
        tps = tokens_per_second(stats.completion_tokens, duration_ms)
        if ctx.spec.annotate and isinstance(data, dict):
            data["_llama_manager"] = {"duration": duration_ms, "tokensPerSecond": tps}

        self._record(ctx, response.status_code, OUTCOME_COMPLETED, stats=stats)
        return JSONResponse(content=data, status_code=response.status_code)

    def _relay_stream(self, ctx: _RequestContext, response: httpx.Response) -> StreamingResponse:
        tracker = StreamUsageTracker(ctx.spec.shape, model=ctx.requested)

        async def stream_generator():
            outcome = OUTCOME_CLIENT_CLOSED
            error = None
            try:
                async for chunk in response.aiter_bytes():
                    tracker.feed(chunk)
                    yield chunk
                outcome = OUTCOME_COMPLETED
            except httpx.HTTPError as e:
                outcome = OUTCOME_ERROR
                error = str(e) or e.__class__.__name__
                logger.error(f"[{ctx.spec.label}] Stream error: {error}")
            finally:
                # Recorded before closing: a cancelled client re-raises at every await
                try:
                    self._record(ctx, response.status_code, outcome, stats=tracker.finish(), error=error)
                finally:
                    await response.aclose()

        return StreamingResponse(
            stream_generator(),
            status_code=response.status_code,
            media_type=response.headers.get("content-type", "text/event-stream"),
            headers={"Cache-Control": "no-cache"}
        )

    def _record(
        self,
        ctx: _RequestContext,
        status: int,
        outcome: str,
        stats: Optional[UsageStats] = None,
        error: Optional[str] = None
    ) -> None:
        if ctx.recorded:
            return
        ctx.recorded = True

        stats = stats or UsageStats()
        duration_ms = ctx.duration_ms
        model = stats.model or ctx.requested or "unknown"
        tps = tokens_per_second(stats.completion_tokens, duration_ms) if outcome != OUTCOME_ERROR else 0.0
        messages, prompt = self._conversation_input(ctx)

        self.conversation_log.record(
            ConversationRecord(
                endpoint=ctx.spec.label,
                model=model,
                stream=ctx.stream,
                status=status,
                duration_ms=duration_ms,
                prompt_tokens=stats.prompt_tokens,
                completion_tokens=stats.completion_tokens,
                tokens_per_second=tps,
                messages=messages,
                prompt=prompt,
                response=stats.text,
                error=error,
                request_body=ctx.body if outcome == OUTCOME_ERROR else None,
                outcome=outcome,
            )
        )
        self.metrics.record_request(
            endpoint=ctx.spec.label,
            model=model,
            status=status,
            duration_sec=duration_ms / 1000.0,
            prompt_tokens=stats.prompt_tokens,
            completion_tokens=stats.completion_tokens,
            tokens_per_second=tps
        )

    @staticmethod
    def _conversation_input(ctx: _RequestContext) -> Tuple[Any, Any]:
        body = ctx.body
        if ctx.spec.shape == SHAPE_COMPLETIONS:
            return None, body.get("prompt")
        if ctx.spec.shape == SHAPE_RESPONSES:
            data = body.get("input")
            if data is None:
                return None, None
            if isinstance(data, list):
                return data, None
            return [{"role": "user", "content": data}], None
        if ctx.spec.shape == SHAPE_EMBEDDINGS:
            return None, body.get("input")
        return body.get("messages"), None

    @staticmethod
    def _error_text(exc: HTTPException) -> str:
        detail = exc.detail
        if isinstance(detail, dict):
            error = detail.get("error")
            if isinstance(error, dict) and error.get("message"):
                return str(error["message"])
        return str(detail)

    async def list_engine_models(self) -> List[dict]:
        """
        Live model list from the engine's GET /models.

        Returns an empty list when the engine is down or answers with an
        error.
        """
        try:
            response = await self.http_client.get(
                f"{self.engine_url}/models",
                timeout=ENGINE_LIST_TIMEOUT
            )
        except httpx.HTTPError as e:
            logger.debug(f"Cannot list engine models: {e}")
            return []

        if response.status_code != 200:
            return []
        try:
            data = response.json()
        except ValueError:
            return []
        models = data.get("data") if isinstance(data, dict) else None
        return [m for m in (models or []) if isinstance(m, dict)]

    async def unload_model(self, model_id: str) -> httpx.Response:
        """POST /models/unload for one model; raises httpx.HTTPError on transport errors."""
        return await self.http_client.post(
            f"{self.engine_url}/models/unload",
            json={"model": model_id},
            timeout=ENGINE_LIST_TIMEOUT
        )

    async def _unload_other_models(self, keep_model: str) -> bool:
        """
        Unload every loaded model except keep_model.

        Returns:
            True when at least one unload was issued
        """
        models = await self.list_engine_models()
        loaded = [
            m for m in models
            if engine_model_status(m) == "loaded" and m.get("id") != keep_model
        ]
        if not loaded:
            return False

        logger.info(f"[model-switch] Unloading {len(loaded)} model(s) to make room for {keep_model}")
        for model in loaded:
            model_id = model.get("id")
            self.log_sink.add_log("models", f"Auto-unloading {model_id} to make room for {keep_model}")
            try:
                response = await self.unload_model(model_id)
                if response.status_code >= 400:
                    logger.error(f"[model-switch] Failed to unload {model_id}: {response.text}")
            except httpx.HTTPError as e:
                logger.error(f"[model-switch] Failed to unload {model_id}: {e}")
        return True

    async def passthrough(self, path: str, body: Any) -> Response:
        """
        Forward a request unchanged (token counting, reranking).

        No model resolution and no recovery beyond connection retries.
        """
        label = path.lstrip("/")
        try:
            response = await self._send(path, body, label)
        except httpx.HTTPError as e:
            raise BadGatewayError(f"Failed to reach llama server: {e}")

        content = await response.aread()
        await response.aclose()
        return Response(
            content=content,
            status_code=response.status_code,
            media_type=response.headers.get("content-type", "application/json")
        )

    async def preload(self, model_id: str) -> Dict[str, Any]:
        """
        Make the engine load a model by sending a one-token completion.

        Raises:
            NotFoundError: Unknown model or not downloaded
            ServiceUnavailableError: Required restart failed
            BadGatewayError: Engine unreachable
            HTTPException: Engine refused to load the model
        """
        resolved = self.resolver.resolve(model_id)
        if resolved is None:
            self.log_sink.add_log("models", f"Model not found: {model_id}")
            raise NotFoundError(f"Model not found: {model_id}. Check preset ID or file path.")

        engine_model = self.resolver.resolve_path(resolved)
        preset = resolved.preset if isinstance(resolved, ResolvedPreset) else None
        if engine_model is None:
            raise NotFoundError(
                f"Preset \"{model_id}\" references a model that is not downloaded yet.",
                code="model_not_downloaded"
            )

        if preset is not None:
            result = await self.orchestrator.ensure_compatible(preset)
            if not result.success:
                raise ServiceUnavailableError(
                    f"Server restart failed: {result.error}",
                    code="restart_failed"
                )

        display_name = preset.name if preset is not None else engine_model
        self.log_sink.add_log("models", f"Loading {display_name} ({engine_model})")

        body = {"model": engine_model, "messages": PRELOAD_PROMPT, "max_tokens": 1}
        try:
            response = await self._send("/v1/chat/completions", body, "models/load")
        except httpx.HTTPError as e:
            raise BadGatewayError(f"Failed to reach llama server: {e}")

        content = await response.aread()
        await response.aclose()
        if not response.is_success:
            error = content.decode("utf-8", errors="replace")
            self.log_sink.add_log("models", f"Failed to load model: {error}")
            raise HTTPException(
                status_code=response.status_code,
                detail=f"Failed to load model: {error}"
            )

        self.log_sink.add_log("models", f"Model loaded: {display_name}")
        return {
            "success": True,
            "model": engine_model,
            "preset": preset.id if preset is not None else None,
            "displayName": display_name,
        }
