"""
Engine Orchestrator State

The only process-wide mutable state of the control plane:

    - the runtime configuration the running engine was launched with
    - the operating mode (router / single) and the active preset
    - the restart lock

All of it lives in one OrchestratorState instance owned by the application
container and handed to the components that need it. The state is modelled
as a committed snapshot plus an optional pending candidate: a restart
begins by recording the candidate, and the candidate only replaces the
committed snapshot once the engine has passed its health check. Readers
always see the committed snapshot, so a failed restart needs no explicit
undo beyond discarding the candidate.
"""

import asyncio
from dataclasses import dataclass, replace, asdict
from enum import Enum
from typing import Optional


class Mode(str, Enum):
    """Engine operating mode."""

    ROUTER = "router"
    SINGLE = "single"


@dataclass(frozen=True)
class EngineRuntimeConfig:
    """
    The parameters the running engine was launched with.

    Attributes:
        context: Context size
        gpu_layers: Layers offloaded to GPU
        flash_attn: Flash attention enabled
        models_max: Maximum resident models (1 in single mode)
        reasoning_format: Reasoning format flag value, None when unset
        extra_switches: Additional launch switches
    """

    context: int
    gpu_layers: int
    flash_attn: bool
    models_max: int
    reasoning_format: Optional[str] = None
    extra_switches: str = "--jinja"

    def to_dict(self) -> dict:
        return asdict(self)

    def with_changes(self, **changes) -> "EngineRuntimeConfig":
        return replace(self, **changes)


@dataclass(frozen=True)
class EngineSnapshot:
    """
    Runtime config, mode and active preset as one consistent value.

    Invariant: active_preset_id is set if and only if mode is SINGLE.
    """

    runtime: EngineRuntimeConfig
    mode: Mode = Mode.ROUTER
    active_preset_id: Optional[str] = None

    def __post_init__(self):
        if (self.mode is Mode.SINGLE) != (self.active_preset_id is not None):
            raise ValueError(
                f"Inconsistent engine state: mode={self.mode.value}, "
                f"active_preset_id={self.active_preset_id!r}"
            )

    def to_dict(self) -> dict:
        return {
            "mode": self.mode.value,
            "activePresetId": self.active_preset_id,
            "runtime": self.runtime.to_dict(),
        }


class OrchestratorState:
    """
    Committed/pending engine state plus the restart lock.

    Only the restart orchestrator calls begin/commit/rollback/replace.

    Attributes:
        restart_lock: Serializes restart sequences
    """

    def __init__(self, initial: EngineSnapshot):
        self._committed = initial
        self._pending: Optional[EngineSnapshot] = None
        self.restart_lock = asyncio.Lock()

    @property
    def committed(self) -> EngineSnapshot:
        return self._committed

    @property
    def pending(self) -> Optional[EngineSnapshot]:
        return self._pending

    @property
    def runtime(self) -> EngineRuntimeConfig:
        return self._committed.runtime

    @property
    def mode(self) -> Mode:
        return self._committed.mode

    @property
    def active_preset_id(self) -> Optional[str]:
        return self._committed.active_preset_id

    @property
    def restarting(self) -> bool:
        return self.restart_lock.locked()

    def begin(self, candidate: EngineSnapshot) -> None:
        self._pending = candidate

    def commit(self) -> EngineSnapshot:
        if self._pending is None:
            raise RuntimeError("No pending engine state to commit")
        self._committed = self._pending
        self._pending = None
        return self._committed

    def rollback(self) -> EngineSnapshot:
        self._pending = None
        return self._committed

    def replace(self, snapshot: EngineSnapshot) -> None:
        """Commit a snapshot directly (stop and engine-exit paths)."""
        self._pending = None
        self._committed = snapshot
