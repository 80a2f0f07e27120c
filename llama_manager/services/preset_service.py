"""
Preset Service Module

CRUD and activation for presets, plus automatic preset generation for model
files found on disk or finished downloads.

Domain errors are raised as core exceptions (PresetNotFoundError,
PresetConflictError, PresetInUseError, InvalidPresetError,
ModelFileNotFoundError) and translated to HTTP errors by the preset
controller.
"""

import os
import logging
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from ..core.config_store import ConfigStore
from ..core.errors import (
    InvalidPresetError,
    PresetConflictError,
    PresetInUseError,
    PresetNotFoundError,
)
from ..core.logging_server import LogSink
from ..core.model_scanner import scan_local_models
from ..core.orchestrator import RestartOrchestrator, RestartResult
from ..core.presets import (
    Preset,
    PresetConfig,
    create_default_preset,
    is_projector_file,
    resolve_model_file,
    validate_preset_id,
)
from ..core.state import Mode, OrchestratorState


logger = logging.getLogger(__name__)


def _by_alias(model_cls, data: Dict[str, Any]) -> Dict[str, Any]:
    """Normalize snake_case keys to the camelCase aliases used in storage."""
    aliases = {
        name: field.alias or name
        for name, field in model_cls.model_fields.items()
    }
    return {aliases.get(key, key): value for key, value in data.items()}


def _validate(data: Dict[str, Any]) -> Preset:
    try:
        return Preset.model_validate(data)
    except ValidationError as e:
        raise InvalidPresetError(str(e))


class PresetService:
    """
    Preset management on top of the ConfigStore.

    Attributes:
        store: Durable preset storage
        state: Orchestrator state, read to protect the active preset
        orchestrator: Used for explicit activation
        models_dir: Model root for relative model paths
    """

    def __init__(
        self,
        store: ConfigStore,
        state: OrchestratorState,
        orchestrator: RestartOrchestrator,
        models_dir: str,
        log_sink: LogSink
    ):
        self.store = store
        self.state = state
        self.orchestrator = orchestrator
        self.models_dir = models_dir
        self.log_sink = log_sink

    def list(self) -> List[Preset]:
        return list(self.store.get_presets().values())

    def get(self, preset_id: str) -> Preset:
        preset = self.store.get_preset(preset_id)
        if preset is None:
            raise PresetNotFoundError(preset_id)
        return preset

    def _is_active(self, preset_id: str) -> bool:
        return self.state.mode is Mode.SINGLE and self.state.active_preset_id == preset_id

    def create(self, data: Dict[str, Any]) -> Preset:
        """
        Create a preset.

        Args:
            data: Preset fields (camelCase or snake_case)

        Raises:
            InvalidPresetError: Missing id/name/source, malformed id or fields
            PresetConflictError: Id already exists
            ModelFileNotFoundError: Local model file does not exist
        """
        data = _by_alias(Preset, data)
        preset_id = data.get("id")
        name = data.get("name")
        if not preset_id or not name:
            raise InvalidPresetError("Missing required fields: id, name")
        if not data.get("modelPath") and not data.get("hfRepo"):
            raise InvalidPresetError("Either modelPath or hfRepo is required")

        validate_preset_id(preset_id)
        if self.store.get_preset(preset_id) is not None:
            raise PresetConflictError(preset_id)

        if data.get("hfRepo"):
            data["modelPath"] = None
        else:
            data["modelPath"] = resolve_model_file(data["modelPath"], self.models_dir)

        data.setdefault("description", f"Preset for {name}")
        data["config"] = _by_alias(PresetConfig, data.get("config") or {})
        preset = _validate(data)

        self.store.put_preset(preset)
        logger.info(f"Created preset '{preset.id}' ({preset.source})")
        self.log_sink.add_log("presets", f"Created preset: {preset.id}")
        return preset

    def update(self, preset_id: str, changes: Dict[str, Any]) -> Preset:
        """
        Update a preset, optionally renaming it through changes["id"].

        Config fields are merged into the existing config rather than
        replacing it.

        Raises:
            PresetNotFoundError: Unknown preset_id
            PresetConflictError: Rename target exists
            InvalidPresetError: Malformed new id or fields, or renaming the
                active preset
            ModelFileNotFoundError: New local model file does not exist
        """
        existing = self.get(preset_id)
        changes = _by_alias(Preset, changes)

        new_id = changes.get("id") or preset_id
        if new_id != preset_id:
            validate_preset_id(new_id)
            if self.store.get_preset(new_id) is not None:
                raise PresetConflictError(new_id)
            if self._is_active(preset_id):
                raise InvalidPresetError(
                    f"Cannot rename preset '{preset_id}' while it is active"
                )

        merged = existing.to_store()
        config_changes = changes.pop("config", None)
        merged.update(changes)
        merged["id"] = new_id
        if isinstance(config_changes, dict):
            merged["config"] = {**merged["config"], **_by_alias(PresetConfig, config_changes)}

        if changes.get("hfRepo"):
            merged["modelPath"] = None
        elif "modelPath" in changes and changes["modelPath"]:
            merged["modelPath"] = resolve_model_file(changes["modelPath"], self.models_dir)

        if not merged.get("modelPath") and not merged.get("hfRepo"):
            raise InvalidPresetError("Either modelPath or hfRepo is required")

        preset = _validate(merged)
        if new_id != preset_id:
            self.store.rename_preset(preset_id, preset)
            logger.info(f"Renamed preset '{preset_id}' -> '{new_id}'")
        else:
            self.store.put_preset(preset)
        self.log_sink.add_log("presets", f"Updated preset: {preset.id}")
        return preset

    def delete(self, preset_id: str) -> None:
        """
        Raises:
            PresetNotFoundError: Unknown preset_id
            PresetInUseError: Preset is the active single-mode preset
        """
        self.get(preset_id)
        if self._is_active(preset_id):
            raise PresetInUseError(preset_id)
        self.store.delete_preset(preset_id)
        logger.info(f"Deleted preset '{preset_id}'")
        self.log_sink.add_log("presets", f"Deleted preset: {preset_id}")

    async def activate(self, preset_id: str) -> RestartResult:
        """Explicitly run the engine for a preset (always restarts)."""
        preset = self.get(preset_id)
        self.log_sink.add_log("presets", f"Activating preset: {preset_id}")
        return await self.orchestrator.activate_preset(preset)

    def find_by_source(
        self,
        model_path: Optional[str] = None,
        hf_repo: Optional[str] = None
    ) -> Optional[Preset]:
        for preset in self.store.get_presets().values():
            if hf_repo and preset.hf_repo == hf_repo:
                return preset
            if model_path and preset.model_path == model_path:
                return preset
        return None

    def auto_create_preset(
        self,
        model_path: Optional[str] = None,
        hf_repo: Optional[str] = None,
        filename: Optional[str] = None
    ) -> Optional[Preset]:
        """
        Create a default preset for a model unless one already references it.

        Called for every model found at startup and when a download finishes.

        Returns:
            The new preset, or None when a preset already exists
        """
        if not model_path and not hf_repo:
            raise InvalidPresetError("Either model_path or hf_repo is required")

        existing = self.find_by_source(model_path=model_path, hf_repo=hf_repo)
        if existing is not None:
            logger.debug(f"Preset '{existing.id}' already covers {hf_repo or model_path}")
            return None

        preset = create_default_preset(
            self.store.get_presets().keys(),
            model_path=model_path,
            hf_repo=hf_repo,
            filename=filename,
        )
        self.store.put_preset(preset)
        logger.info(f"Auto-created preset '{preset.id}' for {hf_repo or model_path}")
        self.log_sink.add_log("presets", f"Auto-created preset: {preset.id}")
        return preset

    def migrate_existing_models(self) -> int:
        """
        Create presets for every complete model under the model root.

        Incomplete split models and multimodal projector files are skipped.

        Returns:
            Number of presets created
        """
        created = 0
        for model in scan_local_models(self.models_dir):
            if model.incomplete:
                logger.info(f"Skipping incomplete split model: {model.name}")
                continue
            if is_projector_file(model.path):
                continue
            preset = self.auto_create_preset(
                model_path=model.path,
                filename=os.path.basename(model.path)
            )
            if preset is not None:
                created += 1

        if created:
            logger.info(f"Migrated {created} existing model(s) to presets")
        return created
