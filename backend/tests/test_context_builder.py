from chatrelay.config import settings
from chatrelay.services.assistant_config import AssistantConfig
from chatrelay.services.context import build_context, system_prompt_for


def _config(**overrides) -> AssistantConfig:
    fields = dict(id=1, name="Helper", provider="openai", model="gpt-4o-mini", system_prompt="Be brief.")
    fields.update(overrides)
    return AssistantConfig(**fields)


def test_context_window_keeps_newest_history():
    history = [("user", f"q{i}") if i % 2 == 0 else ("assistant", f"a{i}") for i in range(6)]
    messages = build_context(history, "latest", _config(context_window=2, filter_unsafe_content=False))

    assert messages[0] == {"role": "system", "content": "Be brief."}
    assert messages[1:] == [
        {"role": "user", "content": "q4"},
        {"role": "assistant", "content": "a5"},
        {"role": "user", "content": "latest"},
    ]


def test_exactly_one_system_message_and_history_system_rows_dropped():
    history = [("system", "old system"), ("user", "hi"), ("assistant", "hello")]
    messages = build_context(history, "next", _config(context_window=10, filter_unsafe_content=False))

    assert [m["role"] for m in messages].count("system") == 1
    assert [m["role"] for m in messages] == ["system", "user", "assistant", "user"]


def test_zero_window_sends_only_system_and_new_turn():
    messages = build_context([("user", "hi")], "only this", _config(context_window=0, filter_unsafe_content=False))
    assert [m["content"] for m in messages] == ["Be brief.", "only this"]


def test_safety_clause_appended_when_filtering():
    prompt = system_prompt_for(_config(filter_unsafe_content=True))
    assert prompt.startswith("Be brief.")
    assert prompt.endswith(settings.SAFETY_CLAUSE)
    assert system_prompt_for(_config(filter_unsafe_content=False)) == "Be brief."
