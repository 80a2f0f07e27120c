"""
Durable State Store

Holds the operator-managed state that survives restarts:

    {
        "presets": {"<id>": {...preset, camelCase keys...}},
        "modelAliases": {"<model name>": "<alias>"},
        "settings": {...RuntimeSettings, camelCase keys...}
    }

Reads are served from memory. Every mutation is written through to disk
atomically (temp file in the same directory, then rename), so a crash never
leaves a half-written state file behind.

Usage:
    store = ConfigStore("data/state.json")
    store.load()
    store.put_preset(preset)
"""

import os
import json
import logging
import tempfile
from typing import Any, Dict, Optional

from pydantic import ValidationError

from .config import RuntimeSettings
from .errors import ConfigurationError, PresetConflictError, PresetNotFoundError
from .presets import Preset


logger = logging.getLogger(__name__)


class ConfigStore:
    """
    JSON-file backed store for presets, model aliases and runtime settings.

    Attributes:
        path: Location of the state file
    """

    def __init__(self, path: str):
        self.path = path
        self._presets: Dict[str, Preset] = {}
        self._aliases: Dict[str, str] = {}
        self._settings = RuntimeSettings()

    def load(self) -> None:
        """
        Load state from disk.

        A missing file starts with empty presets and default settings and is
        created on the first write.

        Raises:
            ConfigurationError: If the file exists but cannot be parsed
        """
        if not os.path.exists(self.path):
            logger.info(f"No state file at '{self.path}', starting with defaults")
            return

        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Cannot read state file '{self.path}': {e}")

        if not isinstance(data, dict):
            raise ConfigurationError(f"State file '{self.path}' must contain a JSON object")

        try:
            presets = {}
            for preset_id, raw in (data.get("presets") or {}).items():
                raw = dict(raw)
                raw.setdefault("id", preset_id)
                presets[preset_id] = Preset.model_validate(raw)
            settings = RuntimeSettings.model_validate(data.get("settings") or {})
        except ValidationError as e:
            raise ConfigurationError(f"Invalid state file '{self.path}': {e}")

        self._presets = presets
        self._aliases = dict(data.get("modelAliases") or {})
        self._settings = settings
        logger.info(f"Loaded {len(presets)} preset(s) from '{self.path}'")

    def _save(self) -> None:
        data = {
            "presets": {pid: p.to_store() for pid, p in self._presets.items()},
            "modelAliases": self._aliases,
            "settings": self._settings.to_store(),
        }

        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)

        fd, tmp_path = tempfile.mkstemp(prefix=".state-", suffix=".json", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    # Presets

    def get_presets(self) -> Dict[str, Preset]:
        return dict(self._presets)

    def get_preset(self, preset_id: str) -> Optional[Preset]:
        return self._presets.get(preset_id)

    def put_preset(self, preset: Preset) -> None:
        self._presets[preset.id] = preset
        self._save()

    def delete_preset(self, preset_id: str) -> None:
        if preset_id not in self._presets:
            raise PresetNotFoundError(preset_id)
        del self._presets[preset_id]
        self._save()

    def rename_preset(self, old_id: str, preset: Preset) -> None:
        """
        Replace preset old_id with preset (stored under preset.id).

        Raises:
            PresetNotFoundError: If old_id does not exist
            PresetConflictError: If preset.id is taken by another preset
        """
        if old_id not in self._presets:
            raise PresetNotFoundError(old_id)
        if preset.id != old_id and preset.id in self._presets:
            raise PresetConflictError(preset.id)
        del self._presets[old_id]
        self._presets[preset.id] = preset
        self._save()

    # Aliases

    def get_aliases(self) -> Dict[str, str]:
        return dict(self._aliases)

    def set_alias(self, model_name: str, alias: str) -> None:
        self._aliases[model_name] = alias
        self._save()

    def remove_alias(self, model_name: str) -> bool:
        if model_name not in self._aliases:
            return False
        del self._aliases[model_name]
        self._save()
        return True

    # Settings

    def get_settings(self) -> RuntimeSettings:
        return self._settings.model_copy(deep=True)

    def update_settings(self, changes: Dict[str, Any]) -> RuntimeSettings:
        """
        Merge changes (camelCase or snake_case keys) into the settings.

        Raises:
            ValidationError: If a value is out of range; nothing is saved
        """
        aliases = {
            name: field.alias or name
            for name, field in RuntimeSettings.model_fields.items()
        }
        merged = self._settings.model_dump(by_alias=True)
        for key, value in changes.items():
            merged[aliases.get(key, key)] = value
        self._settings = RuntimeSettings.model_validate(merged)
        self._save()
        return self.get_settings()
