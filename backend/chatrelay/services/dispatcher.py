"""Turn routing: pick the provider client and shape the request for an assistant."""

from __future__ import annotations

from dataclasses import dataclass
from typing import AsyncIterator, Optional, Sequence

from ..models import Provider
from ..providers.base import ProviderClient, ProviderEvent, ProviderRequest, complete_as_events
from ..providers.factory import get_provider_client
from .assistant_config import AssistantConfig
from .context import HistoryItem, build_context, system_prompt_for


@dataclass(frozen=True)
class TurnPlan:
    config: AssistantConfig
    client: ProviderClient
    request: ProviderRequest
    knowledge_base: bool

    @property
    def provider(self) -> str:
        return self.config.provider

    @property
    def model(self) -> str:
        return self.config.model


def uses_knowledge_base(config: AssistantConfig) -> bool:
    """Thread/run mode applies only to OpenAI assistants flagged for it."""
    return config.provider == Provider.OPENAI.value and config.use_knowledge_base


def build_request(
    config: AssistantConfig,
    history: Sequence[HistoryItem],
    user_text: str,
    *,
    user_id: int | None = None,
    thread_id: Optional[str] = None,
) -> ProviderRequest:
    return ProviderRequest(
        model=config.model,
        messages=build_context(history, user_text, config),
        max_tokens=config.max_tokens,
        temperature=config.temperature,
        top_p=config.top_p,
        frequency_penalty=config.frequency_penalty,
        presence_penalty=config.presence_penalty,
        response_format=config.response_format,
        stop=list(config.stop_sequences),
        seed=config.seed,
        user=f"user_{user_id}" if config.include_user_id and user_id is not None else None,
        reasoning_effort=config.reasoning_effort,
        user_text=user_text,
        instructions=system_prompt_for(config),
        thread_id=thread_id,
        upstream_assistant_id=config.upstream_assistant_id,
        vector_store_id=config.vector_store_id,
    )


def plan_turn(
    config: AssistantConfig,
    history: Sequence[HistoryItem],
    user_text: str,
    *,
    user_id: int | None = None,
    thread_id: Optional[str] = None,
) -> TurnPlan:
    """
    Resolve the client and request for one turn.

    Raises ConfigurationError when the provider is unknown or has no
    credentials; callers run this before persisting anything.
    """
    knowledge_base = uses_knowledge_base(config)
    client = get_provider_client(config.provider, knowledge_base=knowledge_base)
    request = build_request(
        config,
        history,
        user_text,
        user_id=user_id,
        thread_id=thread_id if knowledge_base else None,
    )
    return TurnPlan(config=config, client=client, request=request, knowledge_base=knowledge_base)


def open_events(plan: TurnPlan, *, buffered: bool = False) -> AsyncIterator[ProviderEvent]:
    if buffered:
        return complete_as_events(plan.client, plan.request)
    return plan.client.stream(plan.request)
