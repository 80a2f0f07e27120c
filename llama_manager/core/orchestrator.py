"""
Restart Orchestrator - Engine Mode and Restart State Machine

This module performs every change of the engine's launch configuration:

    Idle -> Restarting -> Healthy | Failed

Only one restart sequence runs at a time (OrchestratorState.restart_lock).
A caller that finds the lock held waits for it, bounded by
restart_lock_timeout_sec; if the concurrent restart already produced a
compatible engine, the waiting caller returns success without restarting
again.

Restart Sequence:
    1. Acquire the restart lock (bounded wait)
    2. Stop the engine (SIGTERM -> SIGKILL, orphan cleanup)
    3. Compute launch parameters (preset overrides merged with settings)
    4. Record the candidate state as pending
    5. Start the engine and poll /health until ready or timeout
    6. Healthy: commit the candidate. Failed: stop the half-started
       process and discard the candidate
    7. Release the lock, whatever happened

Failures are returned as RestartResult(success=False, error=...) rather than
raised, so the proxy can turn them into 503 responses.

Usage:
    orchestrator = RestartOrchestrator(state, engine, checker, store, config.engine, log_sink)
    result = await orchestrator.restart_for_preset(preset)
    if not result.success:
        raise ServiceUnavailableError(f"Server restart failed: {result.error}")
"""

import json
import time
import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Tuple

from .compatibility import CompatibilityChecker
from .config import EngineConfig, RuntimeSettings
from .config_store import ConfigStore
from .engine import EngineProcess, LaunchParams
from .errors import EngineStartupError
from .logging_server import LogSink
from .presets import DEFAULT_MIN_P, DEFAULT_TEMP, DEFAULT_TOP_K, DEFAULT_TOP_P, TEMPLATE_SWITCH, Preset
from .state import EngineRuntimeConfig, EngineSnapshot, Mode, OrchestratorState


logger = logging.getLogger(__name__)


ERROR_LOCK_TIMEOUT = "Timeout waiting for concurrent restart"
ERROR_HEALTH_TIMEOUT = "Server health check timeout"


@dataclass
class RestartResult:
    """
    Outcome of a restart request.

    Attributes:
        success: Engine is running with a configuration that serves the request
        error: Failure reason when success is False
        restarted: A stop/start sequence was actually performed
    """

    success: bool
    error: Optional[str] = None
    restarted: bool = False


def initial_runtime(settings: RuntimeSettings) -> EngineRuntimeConfig:
    """Runtime config assumed before the first launch (router defaults)."""
    return EngineRuntimeConfig(
        context=settings.context_size,
        gpu_layers=settings.gpu_layers,
        flash_attn=settings.flash_attn,
        models_max=settings.models_max,
        reasoning_format=None,
        extra_switches=TEMPLATE_SWITCH,
    )


def build_extra_switches(
    base: Optional[str],
    flash_attn: bool,
    reasoning_format: Optional[str]
) -> str:
    """
    Merge the preset's extra switches with the launch flags it implies.

    The template switch is always present; flash attention and reasoning
    format switches are appended only when not already given.
    """
    switches = (base or TEMPLATE_SWITCH).strip()
    tokens = switches.split()
    if TEMPLATE_SWITCH not in tokens:
        switches = f"{TEMPLATE_SWITCH} {switches}".strip()
        tokens = switches.split()
    if flash_attn and "--flash-attn" not in tokens and "-fa" not in tokens:
        switches += " --flash-attn"
    if reasoning_format and "--reasoning-format" not in tokens:
        switches += f" --reasoning-format {reasoning_format}"
    return switches


def _kwargs_env(value) -> str:
    if not value:
        return ""
    if isinstance(value, str):
        return value
    return json.dumps(value)


def _env_value(value, default) -> str:
    return str(default if value is None else value)


def build_preset_launch(
    preset: Preset,
    settings: RuntimeSettings,
    engine: EngineConfig
) -> Tuple[LaunchParams, EngineRuntimeConfig]:
    """
    Compute launch parameters and the resulting runtime config for a preset.

    Launch fields the preset leaves unset fall back to the runtime settings.
    """
    config = preset.config
    context = preset.context or settings.context_size
    gpu_layers = config.gpu_layers if config.gpu_layers is not None else settings.gpu_layers
    flash_attn = config.flash_attn if config.flash_attn is not None else settings.flash_attn
    reasoning_format = config.reasoning_format or None
    extra_switches = build_extra_switches(config.extra_switches, flash_attn, reasoning_format)

    env = {
        "PORT": str(engine.port),
        "MODELS_DIR": engine.models_dir,
        "HF_REPO": preset.hf_repo or "",
        "MODEL_PATH": "" if preset.hf_repo else (preset.model_path or ""),
        "CONTEXT": str(context),
        "GPU_LAYERS": str(gpu_layers),
        "TEMP": _env_value(config.temp, DEFAULT_TEMP),
        "TOP_P": _env_value(config.top_p, DEFAULT_TOP_P),
        "TOP_K": _env_value(config.top_k, DEFAULT_TOP_K),
        "MIN_P": _env_value(config.min_p, DEFAULT_MIN_P),
        "CHAT_TEMPLATE_KWARGS": _kwargs_env(config.chat_template_kwargs),
        "EXTRA_SWITCHES": extra_switches,
    }

    runtime = EngineRuntimeConfig(
        context=context,
        gpu_layers=gpu_layers,
        flash_attn=flash_attn,
        models_max=1,
        reasoning_format=reasoning_format,
        extra_switches=extra_switches,
    )
    params = LaunchParams(
        mode=Mode.SINGLE,
        command=list(engine.preset_command),
        env=env,
        label=f"preset {preset.id}",
    )
    return params, runtime


def build_router_launch(
    settings: RuntimeSettings,
    engine: EngineConfig
) -> Tuple[LaunchParams, EngineRuntimeConfig]:
    """Compute launch parameters and runtime config for router mode."""
    runtime = initial_runtime(settings)
    env = {
        "MODELS_DIR": engine.models_dir,
        "MODELS_MAX": str(settings.models_max),
        "CONTEXT": str(settings.context_size),
        "PORT": str(engine.port),
        "NO_WARMUP": "1" if settings.no_warmup else "",
        "FLASH_ATTN": "1" if settings.flash_attn else "",
        "GPU_LAYERS": str(settings.gpu_layers),
    }
    params = LaunchParams(
        mode=Mode.ROUTER,
        command=list(engine.router_command),
        env=env,
        label="router",
    )
    return params, runtime


class RestartOrchestrator:
    """
    Single writer of the engine state.

    Attributes:
        state: Shared orchestrator state (committed/pending + lock)
        engine: Engine process
        checker: Compatibility checker
        store: Source of runtime settings
        settings: Engine configuration (timeouts, commands)
        metrics: Optional MetricsService for restart counters
    """

    def __init__(
        self,
        state: OrchestratorState,
        engine: EngineProcess,
        checker: CompatibilityChecker,
        store: ConfigStore,
        settings: EngineConfig,
        log_sink: LogSink,
        metrics=None
    ):
        self.state = state
        self.engine = engine
        self.checker = checker
        self.store = store
        self.settings = settings
        self.log_sink = log_sink
        self.metrics = metrics

    async def _acquire(self) -> Tuple[bool, bool]:
        """
        Acquire the restart lock.

        Returns:
            (acquired, waited): waited is True when another restart held
            the lock on entry
        """
        lock = self.state.restart_lock
        if not lock.locked():
            # Uncontended acquire completes without yielding
            await lock.acquire()
            return True, False

        waited = True
        logger.info("Restart already in progress, waiting...")
        try:
            await asyncio.wait_for(
                lock.acquire(),
                timeout=self.settings.restart_lock_timeout_sec
            )
        except asyncio.TimeoutError:
            logger.error(
                f"Gave up waiting for concurrent restart after "
                f"{self.settings.restart_lock_timeout_sec}s"
            )
            self.log_sink.add_log("server", f"Restart aborted: {ERROR_LOCK_TIMEOUT}")
            self._record("lock_timeout")
            return False, waited
        return True, waited

    def _record(self, outcome: str) -> None:
        if self.metrics is not None:
            self.metrics.record_restart(outcome)

    async def restart_for_preset(self, preset: Preset, force: bool = False) -> RestartResult:
        """
        Restart the engine in single mode for a preset.

        Args:
            preset: Preset to launch
            force: Restart even when a concurrent restart left the engine
                   compatible

        Returns:
            RestartResult
        """
        acquired, waited = await self._acquire()
        if not acquired:
            return RestartResult(success=False, error=ERROR_LOCK_TIMEOUT)

        try:
            if waited and not force:
                report = self.checker.is_compatible(preset)
                if report.compatible:
                    logger.info(
                        f"Concurrent restart left engine compatible with preset "
                        f"'{preset.id}', skipping restart"
                    )
                    self._record("skipped")
                    return RestartResult(success=True)

            params, runtime = build_preset_launch(preset, self.store.get_settings(), self.settings)
            candidate = EngineSnapshot(runtime=runtime, mode=Mode.SINGLE, active_preset_id=preset.id)

            logger.info(
                f"Restarting server for preset '{preset.id}' "
                f"(context={runtime.context}, switches='{runtime.extra_switches}')"
            )
            self.log_sink.add_log(
                "server",
                f"Restarting llama-server for preset \"{preset.id}\" with context={runtime.context}"
            )
            return await self._restart(params, candidate)
        finally:
            self.state.restart_lock.release()

    async def activate_preset(self, preset: Preset) -> RestartResult:
        """Explicit activation: always restarts, even when compatible."""
        return await self.restart_for_preset(preset, force=True)

    async def ensure_compatible(self, preset: Optional[Preset]) -> RestartResult:
        """
        Restart for the preset only when the running engine cannot serve it.

        A restart already in flight is waited out first so the check runs
        against the configuration it leaves behind.
        """
        if self.state.restarting:
            acquired, _ = await self._acquire()
            if not acquired:
                return RestartResult(success=False, error=ERROR_LOCK_TIMEOUT)
            self.state.restart_lock.release()

        report = self.checker.is_compatible(preset)
        if report.compatible:
            return RestartResult(success=True)

        reasons = ", ".join(report.reasons)
        logger.info(f"Preset '{preset.id}' incompatible: {reasons}")
        self.log_sink.add_log("proxy", f"Restarting server for preset \"{preset.id}\": {reasons}")
        return await self.restart_for_preset(preset)

    async def start_router(self) -> RestartResult:
        """Restart the engine in router (multi-model) mode."""
        acquired, _ = await self._acquire()
        if not acquired:
            return RestartResult(success=False, error=ERROR_LOCK_TIMEOUT)

        try:
            params, runtime = build_router_launch(self.store.get_settings(), self.settings)
            candidate = EngineSnapshot(runtime=runtime, mode=Mode.ROUTER, active_preset_id=None)
            logger.info(
                f"Starting router mode (context={runtime.context}, "
                f"models_max={runtime.models_max}, gpu_layers={runtime.gpu_layers})"
            )
            self.log_sink.add_log("server", "Starting llama-server in router mode")
            return await self._restart(params, candidate)
        finally:
            self.state.restart_lock.release()

    async def stop_engine(self) -> None:
        """Stop the engine and return to router mode with no active preset."""
        acquired, _ = await self._acquire()
        if not acquired:
            raise EngineStartupError(ERROR_LOCK_TIMEOUT)
        try:
            await self.engine.stop()
            self.state.replace(
                EngineSnapshot(runtime=self.state.runtime, mode=Mode.ROUTER, active_preset_id=None)
            )
            self.log_sink.add_log("server", "llama-server stopped")
        finally:
            self.state.restart_lock.release()

    async def _restart(self, params: LaunchParams, candidate: EngineSnapshot) -> RestartResult:
        """Stop, start and health-check. Caller holds the restart lock."""
        started = time.monotonic()
        try:
            await self.engine.stop()
            if self.settings.restart_settle_delay_sec > 0:
                await asyncio.sleep(self.settings.restart_settle_delay_sec)

            self.state.begin(candidate)
            await self.engine.start(params)

            healthy = await self._wait_for_healthy()
            if not healthy:
                logger.error(f"Engine failed health check ({params.label})")
                self.log_sink.add_log("server", "Server restart failed: health check timeout")
                await self.engine.stop()
                self.state.rollback()
                self._record("failed")
                return RestartResult(success=False, error=ERROR_HEALTH_TIMEOUT, restarted=True)

            self.state.commit()
            elapsed = time.monotonic() - started
            logger.info(f"Engine healthy in {elapsed:.1f}s ({params.label})")
            self.log_sink.add_log("server", f"Server restarted successfully ({params.label})")
            self._record("success")
            return RestartResult(success=True, restarted=True)

        except Exception as e:
            logger.error(f"Restart error ({params.label}): {e}", exc_info=True)
            self.log_sink.add_log("server", f"Server restart error: {e}")
            self.state.rollback()
            if self.engine.is_alive():
                try:
                    await self.engine.stop()
                except Exception as stop_error:
                    logger.error(f"Failed to stop engine after restart error: {stop_error}")
            self._record("error")
            return RestartResult(success=False, error=str(e), restarted=True)

    async def _wait_for_healthy(self) -> bool:
        """
        Poll the health endpoint until ready, the process exits or the
        timeout elapses.
        """
        deadline = time.monotonic() + self.settings.health_timeout_sec
        while time.monotonic() < deadline:
            if await self.engine.is_healthy():
                return True
            if not self.engine.is_alive():
                logger.error("Engine process exited during startup")
                return False
            await asyncio.sleep(self.settings.health_poll_interval_sec)
        return False

    async def handle_engine_exit(self, code: int) -> None:
        """
        Observer for unexpected engine exits.

        A single-mode engine that crashes outside a restart leaves no
        preset running, so the state falls back to router mode.
        """
        if self.state.restarting:
            return
        if code != 0 and self.state.mode is Mode.SINGLE:
            logger.warning(
                f"Engine for preset '{self.state.active_preset_id}' exited with "
                f"code {code}, falling back to router mode"
            )
            self.state.replace(
                EngineSnapshot(runtime=self.state.runtime, mode=Mode.ROUTER, active_preset_id=None)
            )
