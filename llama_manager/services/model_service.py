"""
Model Catalog Service

Builds the model listings served to clients and to the operator UI, and
handles explicit load/unload requests.

Presets are the models clients see. Their status combines the orchestrator
state with the engine's live GET /models list (see ModelResolver.get_status).
"""

import time
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx

from ..core.compatibility import CompatibilityChecker
from ..core.config_store import ConfigStore
from ..core.errors import BadGatewayError
from ..core.logging_server import LogSink
from ..core.model_scanner import scan_local_models
from ..core.presets import Preset
from ..core.resolver import ModelResolver, ResolvedPreset
from ..core.state import OrchestratorState
from .proxy_service import ProxyService


logger = logging.getLogger(__name__)

OWNER = "llama-manager"


class ModelService:
    """
    Model listings and explicit load/unload.

    Attributes:
        store: Preset and alias source
        resolver: Status and engine-path derivation
        proxy: Engine HTTP access (model list, preload, unload)
    """

    def __init__(
        self,
        store: ConfigStore,
        resolver: ModelResolver,
        checker: CompatibilityChecker,
        state: OrchestratorState,
        proxy: ProxyService,
        models_dir: str,
        log_sink: LogSink
    ):
        self.store = store
        self.resolver = resolver
        self.checker = checker
        self.state = state
        self.proxy = proxy
        self.models_dir = models_dir
        self.log_sink = log_sink

    def _openai_entry(self, preset: Preset, engine_models: List[dict]) -> Dict[str, Any]:
        created = int(time.time())
        if preset.created_at:
            try:
                created = int(datetime.fromisoformat(preset.created_at).timestamp())
            except ValueError:
                pass
        return {
            "id": preset.id,
            "object": "model",
            "created": created,
            "owned_by": OWNER,
            "name": preset.name,
            "description": preset.description,
            "status": self.resolver.get_status(preset, engine_models),
        }

    async def list_openai_models(self) -> Dict[str, Any]:
        """Presets as an OpenAI model list."""
        engine_models = await self.proxy.list_engine_models()
        return {
            "object": "list",
            "data": [
                self._openai_entry(preset, engine_models)
                for preset in self.store.get_presets().values()
            ],
        }

    async def get_openai_model(self, model_id: str) -> Optional[Dict[str, Any]]:
        preset = self.store.get_preset(model_id)
        if preset is None:
            return None
        engine_models = await self.proxy.list_engine_models()
        return self._openai_entry(preset, engine_models)

    async def list_api_models(self) -> Dict[str, Any]:
        """
        Full catalog for the operator UI: presets with status, resolved
        engine path and compatibility, the engine's own list, local files and
        the engine mode.
        """
        engine_models = await self.proxy.list_engine_models()
        presets = []
        for preset in self.store.get_presets().values():
            entry = preset.to_store()
            entry["status"] = self.resolver.get_status(preset, engine_models)
            entry["resolvedPath"] = self.resolver.resolve_path(ResolvedPreset(preset))
            entry["compatibility"] = self.checker.is_compatible(preset).to_dict()
            presets.append(entry)

        local_models = scan_local_models(self.models_dir, self.store.get_aliases())
        return {
            "presets": presets,
            "engineModels": engine_models,
            "localModels": [m.to_dict() for m in local_models],
            "mode": self.state.mode.value,
            "activePresetId": self.state.active_preset_id,
        }

    async def load(self, model_id: str) -> Dict[str, Any]:
        return await self.proxy.preload(model_id)

    async def unload(self, model_id: str) -> Dict[str, Any]:
        """
        Ask the engine to unload a model.

        Preset ids and model file names are translated to the engine's id;
        anything else is sent as given.
        """
        resolved = self.resolver.resolve(model_id)
        engine_id = self.resolver.resolve_path(resolved) or model_id
        display_name = resolved.preset.name if isinstance(resolved, ResolvedPreset) else engine_id

        try:
            response = await self.proxy.unload_model(engine_id)
        except httpx.HTTPError as e:
            raise BadGatewayError(f"Failed to reach llama server: {e}")

        if response.status_code >= 400:
            logger.warning(f"Unload of {engine_id} failed: {response.status_code} {response.text}")
            self.log_sink.add_log("models", f"Failed to unload {display_name}: {response.text}")
            return {"success": False, "model": engine_id, "error": response.text}

        self.log_sink.add_log("models", f"Unloaded {display_name}")
        return {"success": True, "model": engine_id}
