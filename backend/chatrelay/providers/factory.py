from __future__ import annotations

from ..config import settings
from ..errors import ConfigurationError
from ..models import Provider
from .assistants import AssistantsClient
from .base import ProviderClient
from .deepseek import DeepSeekClient
from .mock import MockProviderClient
from .openai_chat import OpenAIChatClient


def get_provider_client(provider: str, *, knowledge_base: bool = False) -> ProviderClient:
    """
    Return the client for a provider and mode.

    Raises ConfigurationError for unknown providers or missing credentials.
    """
    if settings.PROVIDER_MOCK_MODE:
        return MockProviderClient()
    if provider == Provider.OPENAI.value:
        return AssistantsClient() if knowledge_base else OpenAIChatClient()
    if provider == Provider.DEEPSEEK.value:
        if knowledge_base:
            raise ConfigurationError("knowledge base mode is only available for OpenAI assistants")
        return DeepSeekClient()
    raise ConfigurationError(f"unknown provider '{provider}'")


def get_thread_client() -> AssistantsClient | MockProviderClient:
    """Client used to release upstream threads on clear/purge."""
    if settings.PROVIDER_MOCK_MODE:
        return MockProviderClient()
    return AssistantsClient()
