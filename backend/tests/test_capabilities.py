import pytest

from chatrelay.providers.capabilities import MODEL_CAPABILITIES, resolve_capabilities


@pytest.mark.parametrize(
    "model,family",
    [
        ("gpt-4o-mini", "openai-chat"),
        ("gpt-5-mini", "openai-reasoning"),
        ("o3-mini", "openai-reasoning"),
        ("o1-preview", "openai-reasoning-legacy"),
        ("deepseek-chat", "deepseek-chat"),
        ("deepseek-reasoner", "deepseek-reasoner"),
        ("some-future-model", "openai-chat"),
        ("", "openai-chat"),
    ],
)
def test_resolve_capabilities_by_prefix(model, family):
    assert resolve_capabilities(model).family == family


def test_reasoning_families_drop_sampling():
    caps = resolve_capabilities("o4-mini")
    assert caps.is_reasoning
    assert caps.token_param == "max_completion_tokens"
    assert caps.supports_reasoning_effort


def test_legacy_reasoning_models_do_not_stream():
    assert not resolve_capabilities("o1").supports_streaming
    assert resolve_capabilities("gpt-4o").supports_streaming


def test_stop_sequence_caps_per_family():
    assert resolve_capabilities("gpt-4o").max_stop_sequences == 4
    assert resolve_capabilities("deepseek-chat").max_stop_sequences == 16


def test_temperature_clamped():
    caps = MODEL_CAPABILITIES["default"]
    assert caps.clamp_temperature(3.5) == 2.0
    assert caps.clamp_temperature(-1) == 0.0
