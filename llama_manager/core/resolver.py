"""
Model Resolver

Maps the model identifier a client sends to what the control plane knows
about it:

    1. Exact preset id                       -> ResolvedPreset
    2. A .gguf file under the model root     -> ResolvedFile (deprecated usage)
    3. A preset whose model file matches     -> ResolvedPreset
       the identifier by basename or suffix
    4. Nothing                               -> None

It also derives the model id the engine itself uses (router mode addresses
models by their top-level folder under the model root, remote models by
their repo string) and the status shown for a preset in model listings.
"""

import logging
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Iterable, List, Optional, Union

from .compatibility import CompatibilityChecker
from .config_store import ConfigStore
from .logging_server import LogSink
from .presets import MODEL_EXTENSION, Preset
from .state import Mode, OrchestratorState


logger = logging.getLogger(__name__)


STATUS_LOADED = "loaded"
STATUS_LOADING = "loading"
STATUS_AVAILABLE = "available"
STATUS_NOT_DOWNLOADED = "not_downloaded"


@dataclass(frozen=True)
class ResolvedPreset:
    preset: Preset


@dataclass(frozen=True)
class ResolvedFile:
    """
    A model file addressed directly by path.

    Attributes:
        path: Absolute path of the file
        relative_path: Path relative to the model root, with forward slashes
    """

    path: str
    relative_path: str


ResolvedModel = Union[ResolvedPreset, ResolvedFile]


def _top_level(relative_path: str) -> str:
    return PurePosixPath(relative_path).parts[0]


def _basename(value: str) -> str:
    return value.rstrip("/").split("/")[-1]


def engine_model_status(model: dict) -> str:
    """Read status.value from an entry of the engine's GET /models list."""
    status = model.get("status")
    if isinstance(status, dict):
        status = status.get("value")
    return status or "unknown"


class ModelResolver:
    """
    Resolves client model identifiers against presets and the model root.

    Attributes:
        store: Preset source
        models_dir: Model root directory
    """

    def __init__(
        self,
        store: ConfigStore,
        models_dir: str,
        state: OrchestratorState,
        checker: CompatibilityChecker,
        log_sink: LogSink
    ):
        self.store = store
        self.models_dir = Path(models_dir).expanduser()
        self.state = state
        self.checker = checker
        self.log_sink = log_sink

    def resolve(self, model_id: Optional[str]) -> Optional[ResolvedModel]:
        """
        Resolve a model identifier.

        Args:
            model_id: Identifier sent by the client

        Returns:
            ResolvedPreset, ResolvedFile, or None when unknown
        """
        if not model_id:
            return None

        preset = self.store.get_preset(model_id)
        if preset is not None:
            logger.debug(f"Resolved '{model_id}' to preset {preset.id}")
            return ResolvedPreset(preset)

        resolved_file = self._resolve_file(model_id)
        if resolved_file is not None:
            logger.warning(
                f"DEPRECATION: model file '{model_id}' used directly. "
                "Create a preset for this model."
            )
            self.log_sink.add_log(
                "models",
                f"DEPRECATION: Direct file path \"{model_id}\" used. "
                "Create a preset for better configuration."
            )
            return resolved_file

        for preset in self.store.get_presets().values():
            if not preset.model_path:
                continue
            file_name = _basename(preset.model_path)
            if model_id == file_name or model_id.endswith(file_name):
                logger.debug(f"Resolved file '{model_id}' to preset {preset.id}")
                return ResolvedPreset(preset)

        logger.info(f"Model '{model_id}' not found")
        return None

    def _resolve_file(self, model_id: str) -> Optional[ResolvedFile]:
        if not model_id.lower().endswith(MODEL_EXTENSION):
            return None

        root = self.models_dir.resolve()
        candidate = Path(model_id)
        if not candidate.is_absolute():
            candidate = root / candidate
        candidate = candidate.resolve()

        try:
            relative = candidate.relative_to(root)
        except ValueError:
            return None

        if not candidate.is_file():
            return None
        return ResolvedFile(path=str(candidate), relative_path=relative.as_posix())

    def resolve_path(self, resolved: Optional[ResolvedModel]) -> Optional[str]:
        """
        Derive the model id the engine expects.

        Returns:
            Top-level folder (or file name) under the model root for local
            models, the repo string for remote presets, None when the
            preset has no usable source
        """
        if resolved is None:
            return None

        if isinstance(resolved, ResolvedFile):
            return _top_level(resolved.relative_path)

        preset = resolved.preset
        if preset.model_path:
            path = Path(preset.model_path)
            try:
                relative = path.relative_to(self.models_dir)
            except ValueError:
                try:
                    relative = path.resolve().relative_to(self.models_dir.resolve())
                except ValueError:
                    return path.name
            return _top_level(relative.as_posix())

        if preset.hf_repo:
            return preset.hf_repo

        return None

    def get_status(self, preset: Preset, engine_models: Optional[Iterable[dict]]) -> str:
        """
        Status of a preset for model listings.

        Never reports "loaded" for a model that is resident but launched with
        incompatible parameters, since serving it would ignore the preset.
        """
        model_path = self.resolve_path(ResolvedPreset(preset))
        if not model_path:
            return STATUS_NOT_DOWNLOADED

        if self.state.mode is Mode.SINGLE and self.state.active_preset_id == preset.id:
            return STATUS_LOADED

        models: List[dict] = list(engine_models or [])
        if not models:
            return STATUS_AVAILABLE

        compatible = self.checker.is_compatible(preset).compatible
        for model in models:
            engine_id = str(model.get("id") or "")
            status = engine_model_status(model)
            if not engine_id:
                continue
            matches = (
                engine_id == model_path
                or engine_id.endswith(model_path)
                or model_path.endswith(engine_id)
                or _basename(engine_id) == _basename(model_path)
            )
            if not matches:
                continue
            if status == STATUS_LOADED:
                return STATUS_LOADED if compatible else STATUS_AVAILABLE
            if status == STATUS_LOADING:
                return STATUS_LOADING

        return STATUS_AVAILABLE
