"""
Compatibility Checker

Decides whether a preset can be served by the engine as it is currently
running, or whether the engine has to be restarted with different launch
parameters first.

Only launch parameters are compared. Sampling parameters (temperature,
top-p/k, min-p, chat template kwargs) are applied per request by the proxy
and never require a restart.
"""

from dataclasses import dataclass, field
from typing import List, Optional

from .presets import Preset
from .state import EngineRuntimeConfig, OrchestratorState


@dataclass
class CompatibilityReport:
    compatible: bool
    reasons: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"compatible": self.compatible, "reasons": list(self.reasons)}


def _fmt(value) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class CompatibilityChecker:
    """Compares presets against the committed engine runtime config."""

    def __init__(self, state: OrchestratorState):
        self.state = state

    def is_compatible(
        self,
        preset: Optional[Preset],
        runtime: Optional[EngineRuntimeConfig] = None
    ) -> CompatibilityReport:
        """
        Check a preset against the running configuration.

        Every mismatch is reported, not only the first one.

        Args:
            preset: Candidate preset; None is always compatible
            runtime: Configuration to compare against (default: committed)

        Returns:
            CompatibilityReport with one reason per mismatching field
        """
        if preset is None:
            return CompatibilityReport(compatible=True)

        current = runtime or self.state.runtime
        config = preset.config
        reasons: List[str] = []

        # 0 inherits the running context
        if preset.context and preset.context != current.context:
            reasons.append(f"Context {preset.context} != current {current.context}")

        if config.gpu_layers is not None and config.gpu_layers != current.gpu_layers:
            reasons.append(
                f"GPU layers {config.gpu_layers} != current {current.gpu_layers}"
            )

        if config.flash_attn is not None and config.flash_attn != current.flash_attn:
            reasons.append(
                f"Flash attention {_fmt(config.flash_attn)} != current {_fmt(current.flash_attn)}"
            )

        if config.reasoning_format and config.reasoning_format != current.reasoning_format:
            reasons.append(
                f"Reasoning format \"{config.reasoning_format}\" != "
                f"current \"{current.reasoning_format or 'none'}\""
            )

        return CompatibilityReport(compatible=not reasons, reasons=reasons)
