from llama_manager.core.presets import Preset
from llama_manager.core.resolver import ResolvedFile, ResolvedPreset
from llama_manager.core.state import EngineSnapshot, Mode

from conftest import make_preset


def _local_preset(preset_id, path, context=0):
    return Preset(id=preset_id, name=preset_id, model_path=str(path), context=context)


def test_preset_id_wins(resolver, store):
    store.put_preset(make_preset("qwen"))
    resolved = resolver.resolve("qwen")
    assert isinstance(resolved, ResolvedPreset)
    assert resolver.resolve_path(resolved) == "org/qwen-GGUF:Q4_K_M"


def test_unknown_model(resolver):
    assert resolver.resolve("nope") is None
    assert resolver.resolve("") is None
    assert resolver.resolve_path(None) is None


def test_model_file_under_root(resolver, models_dir, sink):
    target = models_dir / "family" / "a.gguf"
    target.parent.mkdir()
    target.write_bytes(b"x")

    resolved = resolver.resolve("family/a.gguf")

    assert isinstance(resolved, ResolvedFile)
    assert resolved.relative_path == "family/a.gguf"
    assert resolver.resolve_path(resolved) == "family"
    assert any("DEPRECATION" in e["message"] for e in sink.get_logs(source="models"))


def test_file_outside_root_is_not_resolved(resolver, tmp_path):
    outside = tmp_path / "outside.gguf"
    outside.write_bytes(b"x")
    assert resolver.resolve("../outside.gguf") is None
    assert resolver.resolve(str(outside)) is None


def test_file_name_falls_back_to_preset(resolver, store, models_dir):
    store.put_preset(_local_preset("qwen", models_dir / "qwen" / "Qwen3-8B.gguf"))

    resolved = resolver.resolve("Qwen3-8B.gguf")

    assert isinstance(resolved, ResolvedPreset)
    assert resolved.preset.id == "qwen"
    assert resolver.resolve_path(resolved) == "qwen"


def test_preset_outside_root_uses_file_name(resolver, store):
    store.put_preset(_local_preset("ext", "/srv/other/model.gguf"))
    assert resolver.resolve_path(resolver.resolve("ext")) == "model.gguf"


def test_status_not_downloaded(resolver):
    preset = make_preset("a").model_copy(update={"hf_repo": None})
    assert resolver.get_status(preset, []) == "not_downloaded"


def test_status_active_single_preset(resolver, state):
    preset = make_preset("a")
    state.replace(EngineSnapshot(runtime=state.runtime, mode=Mode.SINGLE, active_preset_id="a"))
    assert resolver.get_status(preset, []) == "loaded"


def test_status_from_engine_list(resolver):
    preset = make_preset("a")
    engine_models = [{"id": "org/a-GGUF:Q4_K_M", "status": {"value": "loaded"}}]
    assert resolver.get_status(preset, engine_models) == "loaded"

    engine_models = [{"id": "org/a-GGUF:Q4_K_M", "status": {"value": "loading"}}]
    assert resolver.get_status(preset, engine_models) == "loading"

    assert resolver.get_status(preset, [{"id": "other", "status": "loaded"}]) == "available"


def test_incompatible_loaded_model_is_only_available(resolver, state):
    preset = make_preset("a", context=state.runtime.context * 2)
    engine_models = [{"id": "org/a-GGUF:Q4_K_M", "status": {"value": "loaded"}}]
    assert resolver.get_status(preset, engine_models) == "available"


def test_resolve_is_idempotent(resolver, store):
    store.put_preset(make_preset("qwen"))
    assert resolver.resolve("qwen") == resolver.resolve("qwen")
    assert resolver.resolve("missing.gguf") is None
    assert resolver.resolve("missing.gguf") is None
