import pytest

from llama_manager.core.state import EngineRuntimeConfig

from conftest import make_preset


@pytest.fixture
def runtime():
    return EngineRuntimeConfig(
        context=4096,
        gpu_layers=99,
        flash_attn=False,
        models_max=2,
    )


def test_missing_preset_is_compatible(checker):
    report = checker.is_compatible(None)
    assert report.compatible
    assert report.reasons == []


@pytest.mark.parametrize("running_context", [512, 4096, 8192, 131072])
def test_zero_context_inherits_running_value(checker, runtime, running_context):
    runtime = runtime.with_changes(context=running_context)
    assert checker.is_compatible(make_preset("a", context=0), runtime).compatible


def test_context_mismatch_mentions_both_values(checker, runtime):
    report = checker.is_compatible(make_preset("a", context=8192), runtime)
    assert not report.compatible
    assert report.reasons == ["Context 8192 != current 4096"]


def test_matching_context_is_compatible(checker, runtime):
    assert checker.is_compatible(make_preset("a", context=4096), runtime).compatible


def test_unset_launch_fields_are_ignored(checker, runtime):
    preset = make_preset("a", gpu_layers=None, flash_attn=None, reasoning_format=None)
    assert checker.is_compatible(preset, runtime).compatible


def test_sampling_parameters_never_require_restart(checker, runtime):
    preset = make_preset("a", temp=1.3, top_p=0.5, top_k=3, min_p=0.2)
    assert checker.is_compatible(preset, runtime).compatible


def test_every_mismatch_is_reported(checker, runtime):
    preset = make_preset(
        "a",
        context=8192,
        gpu_layers=10,
        flash_attn=True,
        reasoning_format="deepseek",
    )
    report = checker.is_compatible(preset, runtime)

    assert not report.compatible
    assert report.reasons == [
        "Context 8192 != current 4096",
        "GPU layers 10 != current 99",
        "Flash attention true != current false",
        'Reasoning format "deepseek" != current "none"',
    ]
    assert report.to_dict()["compatible"] is False


def test_defaults_to_committed_runtime(checker, state):
    preset = make_preset("a", context=state.runtime.context + 1)
    assert not checker.is_compatible(preset).compatible
