import asyncio
import sys

import httpx
import pytest

from llama_manager.core.engine import EngineProcess, LaunchParams
from llama_manager.core.errors import EngineStartupError
from llama_manager.core.state import Mode


pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="needs a POSIX shell")


async def _wait_until(predicate, timeout=5.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.02)


def _engine(engine_config, sink, handler=None, on_exit=None):
    handler = handler or (lambda request: httpx.Response(200, json={"status": "ok"}))
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return EngineProcess(engine_config, sink, client, on_exit=on_exit)


def _launch(script, **env):
    return LaunchParams(Mode.ROUTER, ["bash", "-c", script], env=env, label="test")


def _messages(sink):
    return [entry["message"] for entry in sink.get_logs(source="llama")]


async def test_output_reaches_sink_and_stop_terminates(engine_config, sink):
    engine = _engine(engine_config, sink)

    await engine.start(_launch('echo hello; echo "ctx=$CONTEXT"; exec sleep 30', CONTEXT=4096))
    assert engine.is_alive()
    assert engine.pid is not None

    await _wait_until(lambda: "ctx=4096" in _messages(sink))
    assert "hello" in _messages(sink)

    await engine.stop()

    assert not engine.is_alive()
    assert engine.pid is None
    await engine.http_client.aclose()


async def test_unexpected_exit_calls_observer(engine_config, sink):
    codes = []

    async def on_exit(code):
        codes.append(code)

    engine = _engine(engine_config, sink, on_exit=on_exit)
    await engine.start(_launch("echo bye; exit 3"))

    await _wait_until(lambda: codes)

    assert codes == [3]
    assert not engine.is_alive()
    assert "llama-server exited with code 3" in _messages(sink)
    await engine.http_client.aclose()


async def test_stop_does_not_report_exit(engine_config, sink):
    codes = []

    async def on_exit(code):
        codes.append(code)

    engine = _engine(engine_config, sink, on_exit=on_exit)
    await engine.start(_launch("exec sleep 30"))
    await engine.stop()
    await asyncio.sleep(0.05)

    assert codes == []
    await engine.http_client.aclose()


async def test_stop_when_not_running(engine_config, sink):
    engine = _engine(engine_config, sink)
    await engine.stop()
    assert not engine.is_alive()
    await engine.http_client.aclose()


async def test_missing_executable_raises(engine_config, sink):
    engine = _engine(engine_config, sink)
    params = LaunchParams(Mode.ROUTER, ["/nonexistent/llama-launcher"])

    with pytest.raises(EngineStartupError):
        await engine.start(params)

    assert not engine.is_alive()
    await engine.http_client.aclose()


@pytest.mark.parametrize(
    "response, expected",
    [
        (httpx.Response(200, json={"status": "ok"}), True),
        (httpx.Response(200, json={"status": "no slot available"}), True),
        (httpx.Response(200, json={"status": "loading model"}), False),
        (httpx.Response(503, json={"error": {"message": "Loading model"}}), False),
        (httpx.Response(200, text="ok"), True),
    ],
)
async def test_health_probe(engine_config, sink, response, expected):
    engine = _engine(engine_config, sink, handler=lambda request: response)
    assert await engine.is_healthy() is expected
    await engine.http_client.aclose()


async def test_health_probe_connection_refused(engine_config, sink):
    def refuse(request):
        raise httpx.ConnectError("refused", request=request)

    engine = _engine(engine_config, sink, handler=refuse)
    assert await engine.is_healthy() is False
    await engine.http_client.aclose()
