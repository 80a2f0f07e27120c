import asyncio
import json

import anyio
import httpx
import pytest

from llama_manager.core.errors import (
    BadGatewayError,
    InvalidRequestError,
    NotFoundError,
    ServiceUnavailableError,
)
from llama_manager.core.state import EngineSnapshot
from llama_manager.services.conversation_log import ConversationLog
from llama_manager.services.proxy_service import ProxyService

from conftest import ENGINE_URL, make_preset


LOAD_FAILURE = {"error": {"code": 500, "message": "failed to load model 'org/big-GGUF:Q4_K_M'"}}
TEMPLATE_ERROR = {"error": {"code": 500, "message": "Cannot pass both content and thinking"}}


class EngineStub:
    """Scripted llama-server: queues of responses per (method, path)."""

    def __init__(self):
        self.routes = {}
        self.requests = []

    def on(self, method, path, *responses):
        self.routes.setdefault((method, path), []).extend(responses)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else None
        self.requests.append((request.method, request.url.path, body))
        queue = self.routes.get((request.method, request.url.path))
        if not queue:
            return httpx.Response(404, json={"error": {"message": "no route"}})
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, Exception):
            raise item
        if callable(item):
            return item(request)
        # fresh copy so a repeated response can be read again
        return httpx.Response(item.status_code, headers=item.headers, content=item.content)

    def calls(self, method, path):
        return [body for m, p, body in self.requests if m == method and p == path]


class StalledStream(httpx.AsyncByteStream):
    """Sends one chunk then hangs; closing it yields to the event loop."""

    def __init__(self, first):
        self.first = first

    async def __aiter__(self):
        yield self.first
        await asyncio.Event().wait()

    async def aclose(self):
        await asyncio.sleep(0)


class BrokenStream(httpx.AsyncByteStream):
    async def __aiter__(self):
        raise httpx.ReadError("connection reset")
        yield b""


@pytest.fixture
def upstream():
    return EngineStub()


@pytest.fixture
async def http_client(upstream):
    client = httpx.AsyncClient(transport=httpx.MockTransport(upstream))
    yield client
    await client.aclose()


@pytest.fixture
def conversation_log():
    return ConversationLog()


@pytest.fixture
def delays(monkeypatch):
    recorded = []

    async def fake_sleep(delay):
        recorded.append(delay)

    monkeypatch.setattr("llama_manager.services.proxy_service.asyncio.sleep", fake_sleep)
    return recorded


@pytest.fixture
def proxy(resolver, orchestrator, store, http_client, proxy_config, sink, conversation_log, metrics):
    return ProxyService(
        resolver,
        orchestrator,
        store,
        http_client,
        ENGINE_URL,
        proxy_config,
        sink,
        conversation_log,
        metrics,
    )


def _completion(content="hello", completion_tokens=5):
    return httpx.Response(
        200,
        json={
            "model": "org/big-GGUF:Q4_K_M",
            "choices": [{"message": {"role": "assistant", "content": content}}],
            "usage": {"prompt_tokens": 3, "completion_tokens": completion_tokens},
        },
    )


def _chat_body(model="big", **extra):
    body = {"model": model, "messages": [{"role": "user", "content": "hi"}]}
    body.update(extra)
    return body


async def test_forwards_with_engine_model_id_and_annotation(proxy, store, upstream, conversation_log):
    store.put_preset(make_preset("big", temp=0.3))
    upstream.on("POST", "/v1/chat/completions", _completion())

    response = await proxy.handle("chat/completions", _chat_body())

    assert response.status_code == 200
    data = json.loads(response.body)
    assert "duration" in data["_llama_manager"]
    assert "tokensPerSecond" in data["_llama_manager"]

    sent = upstream.calls("POST", "/v1/chat/completions")[0]
    assert sent["model"] == "org/big-GGUF:Q4_K_M"
    assert sent["temperature"] == 0.3

    records = conversation_log.list()
    assert len(records) == 1
    assert records[0].response == "hello"
    assert records[0].completion_tokens == 5
    assert records[0].request_body is None


async def test_embeddings_are_not_annotated(proxy, store, upstream):
    store.put_preset(make_preset("big"))
    upstream.on("POST", "/v1/embeddings", httpx.Response(200, json={"data": [{"embedding": [0.1]}]}))

    response = await proxy.handle("embeddings", {"model": "big", "input": "text"})

    assert "_llama_manager" not in json.loads(response.body)


async def test_missing_model_is_400(proxy):
    with pytest.raises(InvalidRequestError) as exc_info:
        await proxy.handle("chat/completions", {"messages": []})
    assert exc_info.value.status_code == 400


async def test_unknown_model_is_404(proxy, upstream, conversation_log):
    with pytest.raises(NotFoundError):
        await proxy.handle("chat/completions", _chat_body(model="nope"))
    assert upstream.requests == []
    assert len(conversation_log) == 1


async def test_preset_without_source_is_404(proxy, store):
    preset = make_preset("ghost").model_copy(update={"hf_repo": None, "model_path": None})
    store.put_preset(preset)

    with pytest.raises(NotFoundError) as exc_info:
        await proxy.handle("chat/completions", _chat_body(model="ghost"))
    assert exc_info.value.code == "model_not_downloaded"


async def test_incompatible_preset_restarts_before_forwarding(proxy, store, state, engine, upstream):
    state.replace(EngineSnapshot(runtime=state.runtime.with_changes(context=4096)))
    store.put_preset(make_preset("big", context=8192))
    upstream.on("POST", "/v1/chat/completions", _completion())

    response = await proxy.handle("chat/completions", _chat_body())

    assert response.status_code == 200
    assert len(engine.starts) == 1
    assert state.runtime.context == 8192


async def test_failed_restart_is_503(proxy, store, state, engine, upstream):
    state.replace(EngineSnapshot(runtime=state.runtime.with_changes(context=4096)))
    store.put_preset(make_preset("big", context=8192))
    engine.healthy = False

    with pytest.raises(ServiceUnavailableError) as exc_info:
        await proxy.handle("chat/completions", _chat_body())

    assert exc_info.value.code == "restart_failed"
    assert exc_info.value.message.startswith("Server restart failed:")
    assert upstream.calls("POST", "/v1/chat/completions") == []


async def test_load_failure_evicts_other_models_once(proxy, store, upstream, metrics):
    store.put_preset(make_preset("big"))
    upstream.on(
        "POST",
        "/v1/chat/completions",
        httpx.Response(500, json=LOAD_FAILURE),
        _completion(),
    )
    upstream.on(
        "GET",
        "/models",
        httpx.Response(
            200,
            json={
                "data": [
                    {"id": "other", "status": {"value": "loaded"}},
                    {"id": "idle", "status": {"value": "unloaded"}},
                    {"id": "org/big-GGUF:Q4_K_M", "status": {"value": "loading"}},
                ]
            },
        ),
    )
    upstream.on("POST", "/models/unload", httpx.Response(200, json={"success": True}))

    response = await proxy.handle("chat/completions", _chat_body())

    assert response.status_code == 200
    assert upstream.calls("POST", "/models/unload") == [{"model": "other"}]
    assert len(upstream.calls("POST", "/v1/chat/completions")) == 2
    assert metrics.registry.get_sample_value(
        "llama_manager_proxy_recoveries_total", {"kind": "eviction"}
    ) == 1


async def test_load_failure_with_nothing_to_evict_passes_error_through(proxy, store, upstream):
    store.put_preset(make_preset("big"))
    upstream.on("POST", "/v1/chat/completions", httpx.Response(500, json=LOAD_FAILURE))
    upstream.on("GET", "/models", httpx.Response(200, json={"data": []}))

    response = await proxy.handle("chat/completions", _chat_body())

    assert response.status_code == 500
    assert json.loads(response.body) == LOAD_FAILURE
    assert len(upstream.calls("POST", "/v1/chat/completions")) == 1


async def test_template_error_retries_with_sanitized_messages(proxy, store, upstream):
    store.put_preset(make_preset("big"))
    upstream.on(
        "POST",
        "/v1/chat/completions",
        httpx.Response(500, json=TEMPLATE_ERROR),
        _completion(),
    )
    messages = [
        {"role": "user", "content": "hi"},
        {"role": "assistant", "content": "x", "thinking": "y", "tool_calls": [{"id": "1"}]},
    ]

    response = await proxy.handle("chat/completions", _chat_body(messages=messages))

    assert response.status_code == 200
    first, second = upstream.calls("POST", "/v1/chat/completions")
    assert first["messages"][1]["content"] == "x"
    assert "content" not in second["messages"][1]
    assert second["messages"][1]["thinking"] == "y\nx"


async def test_template_error_is_retried_only_once(proxy, store, upstream, conversation_log):
    store.put_preset(make_preset("big"))
    upstream.on("POST", "/v1/chat/completions", httpx.Response(500, json=TEMPLATE_ERROR))

    response = await proxy.handle("chat/completions", _chat_body())

    assert response.status_code == 500
    assert len(upstream.calls("POST", "/v1/chat/completions")) == 2
    record = conversation_log.list()[0]
    assert record.outcome == "error"
    assert record.request_body["model"] == "big"


async def test_upstream_error_is_passed_through(proxy, store, upstream):
    store.put_preset(make_preset("big"))
    upstream.on(
        "POST",
        "/v1/chat/completions",
        httpx.Response(400, json={"error": {"message": "context length exceeded"}}),
    )

    response = await proxy.handle("chat/completions", _chat_body())

    assert response.status_code == 400
    assert json.loads(response.body) == {"error": {"message": "context length exceeded"}}


async def test_connection_errors_back_off_exponentially(proxy, store, upstream, delays):
    store.put_preset(make_preset("big"))
    upstream.on(
        "POST",
        "/v1/chat/completions",
        httpx.ConnectError("refused"),
        httpx.ConnectError("refused"),
        _completion(),
    )

    response = await proxy.handle("chat/completions", _chat_body())

    assert response.status_code == 200
    assert delays == [1.0, 2.0]


async def test_exhausted_retries_are_502(proxy, store, upstream, delays):
    store.put_preset(make_preset("big"))
    upstream.on("POST", "/v1/chat/completions", httpx.ConnectError("refused"))

    with pytest.raises(BadGatewayError) as exc_info:
        await proxy.handle("chat/completions", _chat_body())

    assert exc_info.value.status_code == 502
    assert delays == [1.0, 2.0, 4.0]
    assert len(upstream.calls("POST", "/v1/chat/completions")) == 4


async def test_reasoning_effort_injected_for_requested_model(proxy, store, upstream):
    store.put_preset(make_preset("gpt-oss-20b"))
    store.update_settings({"modelReasoningEffort": {"gpt-oss*": "low"}})
    upstream.on("POST", "/v1/chat/completions", _completion())

    await proxy.handle("chat/completions", _chat_body(model="gpt-oss-20b"))

    sent = upstream.calls("POST", "/v1/chat/completions")[0]
    assert sent["chat_template_kwargs"]["reasoning_effort"] == "low"


async def test_streaming_writes_one_record_with_token_count(proxy, store, upstream, conversation_log):
    store.put_preset(make_preset("big"))
    events = [
        {"model": "org/big-GGUF:Q4_K_M", "choices": [{"delta": {"content": "Hel"}}]},
        {"choices": [{"delta": {"content": "lo"}}]},
        {"choices": [{"delta": {}}], "usage": {"prompt_tokens": 4, "completion_tokens": 2}},
    ]
    payload = "".join(f"data: {json.dumps(e)}\n\n" for e in events) + "data: [DONE]\n\n"
    upstream.on(
        "POST",
        "/v1/chat/completions",
        httpx.Response(200, content=payload.encode(), headers={"content-type": "text/event-stream"}),
    )

    response = await proxy.handle("chat/completions", _chat_body(stream=True))
    chunks = [chunk async for chunk in response.body_iterator]

    assert b"".join(chunks) == payload.encode()
    records = conversation_log.list()
    assert len(records) == 1
    assert records[0].stream is True
    assert records[0].outcome == "completed"
    assert records[0].response == "Hello"
    assert records[0].prompt_tokens == 4
    assert records[0].completion_tokens == 2
    assert records[0].model == "org/big-GGUF:Q4_K_M"


async def test_client_disconnect_mid_stream_still_writes_record(proxy, store, upstream, conversation_log):
    store.put_preset(make_preset("big"))
    first = b'data: {"choices": [{"delta": {"content": "Hi"}}]}\n\n'
    upstream.on(
        "POST",
        "/v1/chat/completions",
        lambda request: httpx.Response(
            200, headers={"content-type": "text/event-stream"}, stream=StalledStream(first)
        ),
    )

    response = await proxy.handle("chat/completions", _chat_body(stream=True))
    received = []
    with anyio.move_on_after(0.1):
        async for chunk in response.body_iterator:
            received.append(chunk)

    assert received == [first]
    records = conversation_log.list()
    assert len(records) == 1
    assert records[0].outcome == "client_closed"
    assert records[0].response == "Hi"


async def test_body_read_error_is_502(proxy, store, upstream, conversation_log):
    store.put_preset(make_preset("big"))
    upstream.on(
        "POST",
        "/v1/chat/completions",
        lambda request: httpx.Response(200, stream=BrokenStream()),
    )

    with pytest.raises(BadGatewayError):
        await proxy.handle("chat/completions", _chat_body())

    records = conversation_log.list()
    assert len(records) == 1
    assert records[0].outcome == "error"
    assert records[0].status == 502


async def test_preload_sends_one_token_completion(proxy, store, upstream):
    store.put_preset(make_preset("big"))
    upstream.on("POST", "/v1/chat/completions", _completion())

    result = await proxy.preload("big")

    assert result == {
        "success": True,
        "model": "org/big-GGUF:Q4_K_M",
        "preset": "big",
        "displayName": "Big",
    }
    assert upstream.calls("POST", "/v1/chat/completions")[0]["max_tokens"] == 1


async def test_engine_model_list_is_empty_when_engine_down(proxy, upstream):
    upstream.on("GET", "/models", httpx.ConnectError("down"))
    assert await proxy.list_engine_models() == []
