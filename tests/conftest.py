import asyncio
from typing import List, Optional

import pytest

from llama_manager.core.compatibility import CompatibilityChecker
from llama_manager.core.config import EngineConfig, ProxyConfig
from llama_manager.core.config_store import ConfigStore
from llama_manager.core.logging_server import LogSink
from llama_manager.core.orchestrator import RestartOrchestrator, initial_runtime
from llama_manager.core.presets import Preset, PresetConfig
from llama_manager.core.resolver import ModelResolver
from llama_manager.core.state import EngineSnapshot, OrchestratorState
from llama_manager.services.metrics_service import MetricsService


ENGINE_URL = "http://engine.test"


class FakeEngine:
    """In-memory stand-in for EngineProcess."""

    def __init__(self):
        self.url = ENGINE_URL
        self.healthy = True
        self.alive = False
        self.start_delay = 0.0
        self.fail_start: Optional[Exception] = None
        self.starts: List = []
        self.events: List[str] = []
        self.stops = 0
        self.pid = None

    async def start(self, params) -> None:
        self.events.append("start")
        if self.start_delay:
            await asyncio.sleep(self.start_delay)
        if self.fail_start is not None:
            raise self.fail_start
        self.starts.append(params)
        self.alive = True
        self.pid = 4242

    async def stop(self) -> None:
        self.events.append("stop")
        self.stops += 1
        self.alive = False
        self.pid = None

    async def is_healthy(self) -> bool:
        return self.alive and self.healthy

    def is_alive(self) -> bool:
        return self.alive


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("MODELS_DIR", "LLAMA_PORT", "API_PORT", "STATE_PATH", "CONFIG_PATH"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def models_dir(tmp_path):
    path = tmp_path / "models"
    path.mkdir()
    return path


@pytest.fixture
def engine_config(models_dir):
    return EngineConfig(
        models_dir=str(models_dir),
        kill_orphans=False,
        health_timeout_sec=0.2,
        health_poll_interval_sec=0.01,
        restart_lock_timeout_sec=1.0,
        restart_settle_delay_sec=0,
    )


@pytest.fixture
def proxy_config():
    return ProxyConfig(connect_retries=3, retry_base_delay_sec=1.0)


@pytest.fixture
def store(tmp_path):
    store = ConfigStore(str(tmp_path / "state.json"))
    store.load()
    return store


@pytest.fixture
def sink():
    return LogSink()


@pytest.fixture
def state(store):
    return OrchestratorState(EngineSnapshot(runtime=initial_runtime(store.get_settings())))


@pytest.fixture
def checker(state):
    return CompatibilityChecker(state)


@pytest.fixture
def engine():
    return FakeEngine()


@pytest.fixture
def metrics():
    return MetricsService()


@pytest.fixture
def orchestrator(state, engine, checker, store, engine_config, sink, metrics):
    return RestartOrchestrator(state, engine, checker, store, engine_config, sink, metrics=metrics)


@pytest.fixture
def resolver(store, models_dir, state, checker, sink):
    return ModelResolver(store, str(models_dir), state, checker, sink)


def make_preset(preset_id: str, context: int = 0, **config) -> Preset:
    return Preset(
        id=preset_id,
        name=preset_id.title(),
        hf_repo=f"org/{preset_id}-GGUF:Q4_K_M",
        context=context,
        config=PresetConfig(**config),
    )
