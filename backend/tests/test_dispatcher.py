import pytest
from unittest.mock import patch

from chatrelay.config import settings
from chatrelay.errors import ConfigurationError
from chatrelay.providers.assistants import AssistantsClient
from chatrelay.providers.deepseek import DeepSeekClient
from chatrelay.providers.factory import get_provider_client
from chatrelay.providers.mock import MockProviderClient
from chatrelay.providers.openai_chat import OpenAIChatClient
from chatrelay.services.assistant_config import AssistantConfig
from chatrelay.services.dispatcher import plan_turn, uses_knowledge_base
from tests.fixtures.fakes import FakeProviderClient


def _config(**overrides) -> AssistantConfig:
    fields = dict(id=1, name="Helper", provider="openai", model="gpt-4o-mini", system_prompt="Sys")
    fields.update(overrides)
    return AssistantConfig(**fields)


def test_factory_routes_by_provider_and_mode():
    assert isinstance(get_provider_client("openai"), OpenAIChatClient)
    assert isinstance(get_provider_client("openai", knowledge_base=True), AssistantsClient)
    deepseek = get_provider_client("deepseek")
    assert isinstance(deepseek, DeepSeekClient)
    assert deepseek.name == "deepseek"


def test_factory_rejects_unknown_provider_and_deepseek_kb():
    with pytest.raises(ConfigurationError):
        get_provider_client("anthropic")
    with pytest.raises(ConfigurationError):
        get_provider_client("deepseek", knowledge_base=True)


def test_missing_key_is_configuration_error(monkeypatch):
    monkeypatch.setattr(settings, "DEEPSEEK_API_KEY", None)
    with pytest.raises(ConfigurationError):
        get_provider_client("deepseek")


def test_mock_mode_short_circuits(monkeypatch):
    monkeypatch.setattr(settings, "PROVIDER_MOCK_MODE", True)
    assert isinstance(get_provider_client("deepseek"), MockProviderClient)


def test_knowledge_base_only_for_openai():
    assert uses_knowledge_base(_config(use_knowledge_base=True))
    assert not uses_knowledge_base(_config(provider="deepseek", model="deepseek-chat", use_knowledge_base=True))
    assert not uses_knowledge_base(_config())


def test_plan_turn_shapes_request():
    fake = FakeProviderClient()
    config = _config(include_user_id=True, stop_sequences=("END",), context_window=1)
    with patch("chatrelay.services.dispatcher.get_provider_client", return_value=fake) as factory:
        plan = plan_turn(config, [("user", "old"), ("assistant", "older reply")], "new", user_id=42, thread_id="t1")

    factory.assert_called_once_with("openai", knowledge_base=False)
    assert plan.client is fake
    assert plan.request.user == "user_42"
    assert plan.request.stop == ["END"]
    assert plan.request.thread_id is None
    assert [m["content"] for m in plan.request.messages] == ["Sys", "older reply", "new"]


def test_plan_turn_keeps_thread_in_kb_mode():
    config = _config(use_knowledge_base=True, upstream_assistant_id="asst_1", vector_store_id="vs_1")
    with patch("chatrelay.services.dispatcher.get_provider_client", return_value=FakeProviderClient()):
        plan = plan_turn(config, [], "question", user_id=1, thread_id="thread_9")

    assert plan.knowledge_base
    assert plan.request.thread_id == "thread_9"
    assert plan.request.user is None
    assert plan.request.user_text == "question"
    assert plan.request.upstream_assistant_id == "asst_1"
