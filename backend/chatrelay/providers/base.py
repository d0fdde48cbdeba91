# SPDX-License-Identifier: Apache-2.0
"""
Provider-agnostic request/event types.

Every client normalizes its backend into the same event sequence:
zero or more ContentDelta/ReasoningDelta (and ThreadBound for stateful
backends), then exactly one terminal UsageFinal or ProviderError. A
sequence that simply stops is treated by the relay as a failure.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol, Union

from ..errors import FAILURE_BY_KIND, ProviderFailure, ProviderRejected
from .capabilities import ModelCapabilities, resolve_capabilities


@dataclass(frozen=True)
class ContentDelta:
    text: str


@dataclass(frozen=True)
class ReasoningDelta:
    text: str


@dataclass(frozen=True)
class ThreadBound:
    """A stateful backend created (or confirmed) its upstream thread."""

    thread_id: str


@dataclass(frozen=True)
class UsageFinal:
    input_tokens: int
    output_tokens: int
    reported: bool = True


@dataclass(frozen=True)
class ProviderError:
    kind: str
    message: str
    thread_id: Optional[str] = None

    @classmethod
    def from_exception(cls, exc: ProviderFailure) -> "ProviderError":
        return cls(kind=exc.kind, message=exc.detail or str(exc), thread_id=getattr(exc, "thread_id", None))

    def to_exception(self) -> ProviderFailure:
        failure_cls = FAILURE_BY_KIND.get(self.kind, ProviderRejected)
        if self.kind == "stale_thread":
            return failure_cls(self.thread_id, self.message)  # type: ignore[call-arg]
        return failure_cls(self.message)


ProviderEvent = Union[ContentDelta, ReasoningDelta, ThreadBound, UsageFinal, ProviderError]


@dataclass
class ProviderRequest:
    """Everything one provider call needs, with capabilities resolved once from the model id."""

    model: str
    messages: List[Dict[str, str]]
    max_tokens: int
    temperature: float = 0.7
    top_p: float = 1.0
    frequency_penalty: float = 0.0
    presence_penalty: float = 0.0
    response_format: str = "text"
    stop: List[str] = field(default_factory=list)
    seed: Optional[int] = None
    user: Optional[str] = None
    reasoning_effort: Optional[str] = None
    # Knowledge-base (thread/run) fields
    user_text: str = ""
    instructions: str = ""
    thread_id: Optional[str] = None
    upstream_assistant_id: Optional[str] = None
    vector_store_id: Optional[str] = None
    capabilities: ModelCapabilities = field(init=False)

    def __post_init__(self) -> None:
        self.capabilities = resolve_capabilities(self.model)


@dataclass(frozen=True)
class ProviderResult:
    content: str
    input_tokens: int
    output_tokens: int
    thread_id: Optional[str] = None
    raw: Optional[Dict[str, Any]] = None


class ProviderClient(Protocol):
    name: str

    async def complete(self, request: ProviderRequest) -> ProviderResult: ...

    def stream(self, request: ProviderRequest) -> AsyncIterator[ProviderEvent]: ...


async def result_as_events(result: ProviderResult) -> AsyncIterator[ProviderEvent]:
    """Replay a buffered result through the streaming event contract."""
    if result.thread_id:
        yield ThreadBound(result.thread_id)
    if result.content:
        yield ContentDelta(result.content)
    yield UsageFinal(result.input_tokens, result.output_tokens)


async def complete_as_events(client: ProviderClient, request: ProviderRequest) -> AsyncIterator[ProviderEvent]:
    """Run one non-streaming call and surface it as events; failures become a ProviderError."""
    try:
        result = await client.complete(request)
    except ProviderFailure as exc:
        yield ProviderError.from_exception(exc)
        return
    async for event in result_as_events(result):
        yield event
