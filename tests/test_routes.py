import httpx
import pytest

from llama_manager.core.config import AppConfig
from llama_manager.lifecycle.dependencies import get_container
from llama_manager.main import create_app
from llama_manager.services.conversation_log import ConversationLog
from llama_manager.services.model_service import ModelService
from llama_manager.services.preset_service import PresetService
from llama_manager.services.proxy_service import ProxyService

from conftest import ENGINE_URL


def _engine_stub(request: httpx.Request) -> httpx.Response:
    if request.url.path == "/models":
        return httpx.Response(200, json={"data": []})
    if request.url.path == "/v1/chat/completions":
        return httpx.Response(
            200,
            json={
                "choices": [{"message": {"role": "assistant", "content": "pong"}}],
                "usage": {"prompt_tokens": 1, "completion_tokens": 1},
            },
        )
    return httpx.Response(500, json={"error": {"message": "boom"}})


@pytest.fixture
async def client(
    store, sink, state, engine, checker, resolver, orchestrator, metrics, models_dir, proxy_config
):
    app = create_app(AppConfig())
    container = get_container()

    http_client = httpx.AsyncClient(transport=httpx.MockTransport(_engine_stub))
    conversation_log = ConversationLog()
    proxy = ProxyService(
        resolver, orchestrator, store, http_client, ENGINE_URL,
        proxy_config, sink, conversation_log, metrics,
    )

    container.store = store
    container.log_sink = sink
    container.state = state
    container.engine = engine
    container.resolver = resolver
    container.orchestrator = orchestrator
    container.metrics_service = metrics
    container.conversation_log = conversation_log
    container.http_client = http_client
    container.proxy_service = proxy
    container.preset_service = PresetService(store, state, orchestrator, str(models_dir), sink)
    container.model_service = ModelService(
        store, resolver, checker, state, proxy, str(models_dir), sink
    )

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://manager.test") as c:
        yield c
    await http_client.aclose()


async def _create(client, preset_id="qwen", **extra):
    body = {"id": preset_id, "name": preset_id.title(), "hfRepo": f"org/{preset_id}-GGUF:Q4_K_M"}
    body.update(extra)
    return await client.post("/api/presets", json=body)


async def test_liveness(client):
    response = await client.get("/live")
    assert response.json() == {"status": "alive"}


async def test_health_reports_engine_state(client):
    data = (await client.get("/health")).json()
    assert data["status"] == "degraded"
    assert data["mode"] == "router"
    assert data["engine_running"] is False

    await _create(client)
    await client.post("/api/presets/qwen/activate")

    data = (await client.get("/health")).json()
    assert data["status"] == "ok"
    assert data["mode"] == "single"
    assert data["active_preset_id"] == "qwen"


async def test_preset_lifecycle(client):
    response = await _create(client, context=4096)
    assert response.status_code == 201
    assert response.json()["preset"]["context"] == 4096

    duplicate = await _create(client)
    assert duplicate.status_code == 409
    assert duplicate.json()["detail"]["error"]["type"] == "conflict_error"

    updated = await client.put("/api/presets/qwen", json={"config": {"temp": 0.1}})
    assert updated.json()["preset"]["config"]["temp"] == 0.1

    listing = (await client.get("/api/presets")).json()
    assert [p["id"] for p in listing] == ["qwen"]

    activated = await client.post("/api/presets/qwen/activate")
    assert activated.json() == {"success": True, "activePresetId": "qwen"}

    in_use = await client.delete("/api/presets/qwen")
    assert in_use.status_code == 400

    await client.post("/api/server/start")
    deleted = await client.delete("/api/presets/qwen")
    assert deleted.json() == {"success": True}


async def test_missing_preset_is_404(client):
    response = await client.put("/api/presets/nope", json={"name": "x"})
    assert response.status_code == 404
    assert response.json()["detail"]["error"]["param"] == "preset"


async def test_missing_model_file_is_404(client):
    response = await client.post(
        "/api/presets", json={"id": "x", "name": "X", "modelPath": "missing.gguf"}
    )
    assert response.status_code == 404
    assert response.json()["detail"]["error"]["code"] == "model_file_not_found"


async def test_openai_model_list(client):
    await _create(client)

    data = (await client.get("/v1/models")).json()

    assert data["object"] == "list"
    assert data["data"][0]["id"] == "qwen"
    assert data["data"][0]["owned_by"] == "llama-manager"
    assert data["data"][0]["status"] == "available"

    assert (await client.get("/v1/models/qwen")).status_code == 200
    assert (await client.get("/v1/models/nope")).status_code == 404


async def test_api_model_catalog(client):
    await _create(client)
    data = (await client.get("/api/models")).json()

    assert data["mode"] == "router"
    assert data["presets"][0]["resolvedPath"] == "org/qwen-GGUF:Q4_K_M"
    assert data["presets"][0]["compatibility"]["compatible"] is True
    assert data["engineModels"] == []


@pytest.mark.parametrize("prefix", ["/v1", "/api/v1"])
async def test_chat_completion_through_proxy(client, prefix):
    await _create(client)

    response = await client.post(
        f"{prefix}/chat/completions",
        json={"model": "qwen", "messages": [{"role": "user", "content": "ping"}]},
    )

    assert response.status_code == 200
    assert response.json()["choices"][0]["message"]["content"] == "pong"
    logs = (await client.get("/api/llm-logs")).json()["logs"]
    assert len(logs) == 1
    assert logs[0]["response"] == "pong"


async def test_unknown_model_uses_openai_envelope(client):
    response = await client.post("/v1/chat/completions", json={"model": "nope", "messages": []})

    assert response.status_code == 404
    error = response.json()["detail"]["error"]
    assert error["type"] == "not_found_error"
    assert "nope" in error["message"]


async def test_invalid_json_is_400(client):
    response = await client.post(
        "/v1/chat/completions",
        content=b"{nope",
        headers={"content-type": "application/json"},
    )
    assert response.status_code == 400


async def test_replay_failed_request(client):
    first = await client.post("/v1/chat/completions", json={"model": "later", "messages": []})
    assert first.status_code == 404
    record = (await client.get("/api/llm-logs")).json()["logs"][0]
    assert record["request_body"]["model"] == "later"

    await _create(client, preset_id="later")
    replay = await client.post(f"/api/llm-logs/{record['id']}/replay")
    assert replay.status_code == 200

    assert (await client.post("/api/llm-logs/missing/replay")).status_code == 404
    assert (await client.delete("/api/llm-logs")).json() == {"success": True}
    assert (await client.get("/api/llm-logs")).json()["logs"] == []


async def test_aliases(client):
    response = await client.put("/api/models/aliases/family/a.gguf", json={"alias": " Model A "})
    assert response.json()["alias"] == "Model A"
    assert (await client.get("/api/models/aliases")).json() == {"family/a.gguf": "Model A"}

    assert (await client.delete("/api/models/aliases/family/a.gguf")).status_code == 200
    assert (await client.delete("/api/models/aliases/family/a.gguf")).status_code == 404


async def test_settings(client):
    response = await client.post("/api/settings", json={"contextSize": 16384})
    assert response.json()["settings"]["contextSize"] == 16384
    assert (await client.get("/api/settings")).json()["contextSize"] == 16384

    invalid = await client.post("/api/settings", json={"contextSize": 1})
    assert invalid.status_code == 400
    assert invalid.json()["detail"]["error"]["message"].startswith("Invalid settings:")


async def test_status(client):
    data = (await client.get("/api/status")).json()
    assert data["mode"] == "router"
    assert data["restarting"] is False
    assert data["engine_url"] == ENGINE_URL
    assert "context" in data["runtime"]


async def test_logs_filter_by_source(client):
    await _create(client)
    data = (await client.get("/api/logs", params={"source": "presets"})).json()
    assert [entry["message"] for entry in data["logs"]] == ["Created preset: qwen"]


async def test_metrics_endpoint(client):
    await _create(client)
    await client.post("/v1/chat/completions", json={"model": "qwen", "messages": []})

    response = await client.get("/metrics")

    assert response.status_code == 200
    assert "llama_manager_requests_total" in response.text


async def test_requests_rejected_while_shutting_down(client):
    get_container().shutdown_event.set()

    response = await client.get("/live")

    assert response.status_code == 503
    assert response.json()["detail"]["error"]["code"] == "shutting_down"
