"""
Engine Process - llama-server Process Supervision

This module owns the single llama-server child process. The engine is never
launched directly: an external command (a shell script by default) is run
with its parameters in environment variables, and that command execs
llama-server.

EngineProcess Responsibilities:
    - Start the launch command with the merged environment
    - Stream stdout/stderr line by line into the shared log sink
    - Graceful shutdown with escalating termination (SIGTERM -> SIGKILL -> os.kill)
    - Best-effort cleanup of orphaned engine processes by name and by port
    - Readiness probe via GET /health
    - Report unexpected exits to an observer

Interface used by the orchestrator:
    await engine.start(params)
    await engine.stop()
    await engine.is_healthy()
    engine.is_alive()

Usage:
    engine = EngineProcess(config.engine, log_sink, http_client)
    await engine.start(LaunchParams(Mode.ROUTER, ["bash", "start-router.sh"], {"PORT": "8080"}))
    healthy = await engine.is_healthy()
    await engine.stop()
"""

import os
import signal
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional

import httpx
import psutil

from .config import EngineConfig
from .errors import EngineStartupError
from .logging_server import LogSink
from .state import Mode


logger = logging.getLogger(__name__)


HEALTH_CHECK_TIMEOUT = 2.0
OUTPUT_LINE_LIMIT = 1024 * 1024
HEALTHY_STATUSES = ("ok", "no slot available")

ExitCallback = Callable[[int], Awaitable[None]]


@dataclass
class LaunchParams:
    """
    Everything needed to launch the engine.

    Attributes:
        mode: Operating mode this launch puts the engine in
        command: argv of the launch command
        env: Variables added to the inherited environment
        label: Short description for logs ("router", preset id)
    """

    mode: Mode
    command: List[str]
    env: Dict[str, str] = field(default_factory=dict)
    label: str = ""


class EngineProcess:
    """
    Wrapper for the llama-server subprocess.

    Attributes:
        settings: Engine configuration
        url: Base URL of the engine HTTP endpoint
        process: The subprocess instance (None when stopped)
        params: Parameters of the current or last launch
    """

    def __init__(
        self,
        settings: EngineConfig,
        log_sink: LogSink,
        http_client: httpx.AsyncClient,
        on_exit: Optional[ExitCallback] = None
    ):
        self.settings = settings
        self.log_sink = log_sink
        self.http_client = http_client
        self.on_exit = on_exit
        self.url = settings.base_url
        self.process: Optional[asyncio.subprocess.Process] = None
        self.params: Optional[LaunchParams] = None
        self._output_task: Optional[asyncio.Task] = None
        self._exit_task: Optional[asyncio.Task] = None
        self._stopping = False

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process is not None else None

    def is_alive(self) -> bool:
        """Check if the process is still running."""
        return self.process is not None and self.process.returncode is None

    async def start(self, params: LaunchParams) -> None:
        """
        Start the launch command.

        Returns as soon as the process is spawned; readiness is checked
        separately with is_healthy().

        Raises:
            EngineStartupError: If the command cannot be executed
        """
        if self.is_alive():
            logger.warning(f"[engine] Process {self.pid} still running, stopping it first")
            await self.stop()

        env = os.environ.copy()
        env.update({k: str(v) for k, v in params.env.items()})

        label = params.label or params.mode.value
        logger.info(f"[engine] Starting ({label}): {' '.join(params.command)}")
        self.log_sink.add_log("llama", f"Starting llama-server ({label})")

        try:
            process = await asyncio.create_subprocess_exec(
                *params.command,
                env=env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                limit=OUTPUT_LINE_LIMIT
            )
        except OSError as e:
            logger.error(f"[engine] Failed to spawn {params.command[0]}: {e}")
            raise EngineStartupError(str(e))

        self.process = process
        self.params = params
        self._stopping = False
        self._output_task = asyncio.create_task(self._pump_output(process))
        self._exit_task = asyncio.create_task(self._watch_exit(process))
        logger.info(f"[engine] Started with PID {process.pid}")

    async def _pump_output(self, process: asyncio.subprocess.Process) -> None:
        stream = process.stdout
        if stream is None:
            return
        while True:
            try:
                line = await stream.readline()
            except ValueError:
                # Line longer than the buffer limit; the reader drops it
                continue
            if not line:
                break
            self.log_sink.add_log("llama", line.decode("utf-8", errors="replace"))

    async def _watch_exit(self, process: asyncio.subprocess.Process) -> None:
        code = await process.wait()
        if self._output_task is not None:
            await asyncio.gather(self._output_task, return_exceptions=True)

        if self._stopping:
            return

        logger.warning(f"[engine] Process {process.pid} exited with code {code}")
        self.log_sink.add_log("llama", f"llama-server exited with code {code}")
        if self.on_exit is not None and process is self.process:
            try:
                await self.on_exit(code)
            except Exception as e:
                logger.error(f"[engine] Exit handler failed: {e}", exc_info=True)

    async def stop(self) -> None:
        """
        Stop the engine gracefully with escalating termination.

        Strategy:
        1. SIGTERM (graceful) - wait up to graceful_stop_timeout_sec
        2. SIGKILL (force) - if SIGTERM times out
        3. os.kill() as last resort
        4. Kill orphaned engine processes by name and port (if enabled)

        Safe to call when the process is already gone.
        """
        self._stopping = True
        process = self.process

        if process is not None and process.returncode is None:
            pid = process.pid
            logger.info(f"[engine] Stopping process (PID {pid})")
            try:
                process.terminate()
                try:
                    await asyncio.wait_for(
                        process.wait(),
                        timeout=self.settings.graceful_stop_timeout_sec
                    )
                    logger.info("[engine] Stopped gracefully")
                except asyncio.TimeoutError:
                    await self._force_kill(process)
            except ProcessLookupError:
                logger.info("[engine] Process already dead")

        for task in (self._exit_task, self._output_task):
            if task is not None and not task.done():
                task.cancel()
        await asyncio.gather(
            *(t for t in (self._exit_task, self._output_task) if t is not None),
            return_exceptions=True
        )

        self.process = None
        self._exit_task = None
        self._output_task = None

        if self.settings.kill_orphans:
            killed = await asyncio.to_thread(self._kill_orphans)
            if killed:
                logger.info(f"[engine] Killed {killed} orphaned process(es)")

    async def _force_kill(self, process: asyncio.subprocess.Process) -> None:
        logger.warning("[engine] SIGTERM timeout. Escalating to SIGKILL")
        try:
            process.kill()
            await asyncio.wait_for(
                process.wait(),
                timeout=self.settings.force_kill_timeout_sec
            )
            logger.info("[engine] Force killed successfully")
        except asyncio.TimeoutError:
            await self._os_kill(process.pid)
        except ProcessLookupError:
            logger.info("[engine] Process already dead before SIGKILL")

    async def _os_kill(self, pid: int) -> None:
        logger.warning(f"[engine] asyncio SIGKILL timeout. Using os.kill on PID {pid}")
        try:
            os.kill(pid, signal.SIGKILL)
            await asyncio.sleep(1.0)
            try:
                os.kill(pid, 0)
                logger.error(
                    f"[engine] Process {pid} still alive after os.kill. "
                    "May be zombie or kernel issue."
                )
            except OSError:
                logger.info("[engine] Killed via os.kill")
        except ProcessLookupError:
            logger.info("[engine] Process already dead before os.kill")

    def _kill_orphans(self) -> int:
        """
        Kill engine processes left behind by a previous launch.

        Router mode spawns workers of its own, so stray processes are found
        by executable name and by whoever still listens on the engine port.
        """
        own_pid = os.getpid()
        targets: Dict[int, psutil.Process] = {}

        for proc in psutil.process_iter(["pid", "name", "cmdline"]):
            try:
                name = proc.info.get("name") or ""
                cmdline = proc.info.get("cmdline") or []
                exe = os.path.basename(cmdline[0]) if cmdline else ""
                if proc.pid != own_pid and self.settings.process_name in (name, exe):
                    targets[proc.pid] = proc
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue

        try:
            for conn in psutil.net_connections(kind="inet"):
                if (
                    conn.pid
                    and conn.pid != own_pid
                    and conn.laddr
                    and conn.laddr.port == self.settings.port
                    and conn.status == psutil.CONN_LISTEN
                ):
                    try:
                        targets.setdefault(conn.pid, psutil.Process(conn.pid))
                    except psutil.NoSuchProcess:
                        continue
        except psutil.AccessDenied:
            logger.debug("[engine] Not allowed to list sockets, skipping port cleanup")

        killed = 0
        for pid, proc in targets.items():
            try:
                proc.kill()
                killed += 1
            except psutil.NoSuchProcess:
                continue
            except psutil.AccessDenied:
                logger.warning(f"[engine] Not allowed to kill orphan PID {pid}")

        if targets:
            psutil.wait_procs(list(targets.values()), timeout=self.settings.force_kill_timeout_sec)
        return killed

    async def is_healthy(self) -> bool:
        """
        Probe GET /health.

        llama-server answers 200 with {"status": "ok"} when ready; a busy
        server may report "no slot available", which still counts as up.
        """
        try:
            response = await self.http_client.get(
                f"{self.url}/health",
                timeout=HEALTH_CHECK_TIMEOUT
            )
        except httpx.HTTPError:
            return False

        if response.status_code != 200:
            return False

        try:
            data = response.json()
        except ValueError:
            return True

        status = data.get("status") if isinstance(data, dict) else None
        return status is None or status in HEALTHY_STATUSES
