# SPDX-License-Identifier: Apache-2.0
"""
Streaming relay: drives one turn's provider event stream to exactly one terminal state.

    PENDING -> THINKING -> STREAMING -> COMPLETED
                    \\           \\-> FAILED | CANCELLED
                     \\-> FAILED | CANCELLED

Content deltas are forwarded to the caller's channel in arrival order and
accumulated. Terminal bookkeeping (persist, title, settle or abort) runs
synchronously inside `_finalize`, guarded by a flag, so it executes once
even when cancellation lands while the terminal event is being emitted.
"""

from __future__ import annotations

import asyncio
import enum
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

from sqlalchemy.orm import sessionmaker

from ..config import settings
from ..errors import ProviderFailure, redact_provider_error, safe_message
from ..metrics import relay_turns_total
from ..models import Conversation
from ..providers.base import (
    ContentDelta,
    ProviderError,
    ProviderEvent,
    ReasoningDelta,
    ThreadBound,
    UsageFinal,
)
from ..telemetry import bind_turn_context, clear_turn_context, log_json
from .conversations import abort_turn, bind_thread, complete_turn, conversation_to_dict, ensure_title, invalidate_thread
from .quota import QuotaGuard, Settlement, Subject, quota_guard

Emit = Callable[[str, Dict[str, Any]], Awaitable[None]]


class RelayState(str, enum.Enum):
    PENDING = "pending"
    THINKING = "thinking"
    STREAMING = "streaming"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


TERMINAL_STATES = frozenset({RelayState.COMPLETED, RelayState.CANCELLED, RelayState.FAILED})
_TRANSITIONS = {
    RelayState.PENDING: {RelayState.THINKING, RelayState.FAILED, RelayState.CANCELLED},
    RelayState.THINKING: {RelayState.STREAMING, RelayState.FAILED, RelayState.CANCELLED},
    RelayState.STREAMING: {RelayState.COMPLETED, RelayState.FAILED, RelayState.CANCELLED},
}


@dataclass
class StreamSession:
    """Transient per-turn state; never persisted."""

    turn_id: str
    state: RelayState = RelayState.PENDING
    content_parts: List[str] = field(default_factory=list)
    input_tokens: int = 0
    output_tokens: int = 0
    usage_reported: bool = False
    error_kind: Optional[str] = None
    error_detail: Optional[str] = None
    stale_thread_id: Optional[str] = None
    finalized: bool = False

    @property
    def content(self) -> str:
        return "".join(self.content_parts)

    @property
    def has_content(self) -> bool:
        return bool(self.content.strip())

    def advance(self, new_state: RelayState) -> None:
        allowed = _TRANSITIONS.get(self.state, set())
        if new_state not in allowed:
            raise RuntimeError(f"invalid relay transition {self.state.value} -> {new_state.value}")
        self.state = new_state


@dataclass(frozen=True)
class TurnContext:
    turn_id: str
    conversation_id: int
    user_message_id: int
    subject: Subject
    provider: str
    model: str
    title_source: Optional[str] = None  # set on a conversation's first turn
    thread_id: Optional[str] = None


@dataclass
class RelayOutcome:
    state: RelayState
    turn_id: str
    message_id: Optional[int] = None
    content: str = ""
    tokens_input: int = 0
    tokens_output: int = 0
    tokens_balance: Optional[int] = None
    settled: bool = False
    error_kind: Optional[str] = None
    error_detail: Optional[str] = None
    provider: Optional[str] = None
    model: Optional[str] = None
    conversation: Optional[Dict[str, Any]] = None

    @property
    def ok(self) -> bool:
        return self.state == RelayState.COMPLETED and self.error_kind is None

    @property
    def tokens_used(self) -> int:
        return self.tokens_input + self.tokens_output

    def done_payload(self) -> Dict[str, Any]:
        return {
            "message_id": self.message_id,
            "tokens_input": self.tokens_input,
            "tokens_output": self.tokens_output,
            "tokens_used": self.tokens_used,
            "tokens_balance": self.tokens_balance,
            "provider": self.provider,
            "model": self.model,
            "conversation": self.conversation,
        }


class TurnBookkeeper:
    """Terminal side effects of one turn. Each step opens its own session."""

    def __init__(self, ctx: TurnContext, session_factory: sessionmaker, quota: QuotaGuard | None = None) -> None:
        self.ctx = ctx
        self.session_factory = session_factory
        self.quota = quota or quota_guard

    def thread_bound(self, thread_id: str) -> None:
        with self.session_factory() as db:
            bind_thread(db, self.ctx.conversation_id, thread_id)

    def _settle(self, session: StreamSession) -> Settlement:
        with self.session_factory() as db:
            return self.quota.settle(
                db,
                self.ctx.subject,
                turn_id=self.ctx.turn_id,
                provider=self.ctx.provider,
                model=self.ctx.model,
                input_tokens=session.input_tokens,
                output_tokens=session.output_tokens,
            )

    def _conversation_snapshot(self) -> Optional[Dict[str, Any]]:
        with self.session_factory() as db:
            conversation = db.get(Conversation, self.ctx.conversation_id)
            return conversation_to_dict(conversation) if conversation is not None else None

    def _persist_reply(self, session: StreamSession) -> int:
        with self.session_factory() as db:
            message = complete_turn(
                db, self.ctx.conversation_id, session.content, session.input_tokens, session.output_tokens
            )
            if self.ctx.title_source:
                ensure_title(db, self.ctx.conversation_id, self.ctx.title_source)
            return message.id

    def _outcome(self, session: StreamSession, message_id: Optional[int], settlement: Optional[Settlement]):
        return RelayOutcome(
            state=session.state,
            turn_id=self.ctx.turn_id,
            message_id=message_id,
            content=session.content,
            tokens_input=session.input_tokens,
            tokens_output=session.output_tokens,
            tokens_balance=settlement.balance if settlement else None,
            settled=bool(settlement and settlement.applied),
            error_kind=session.error_kind,
            error_detail=session.error_detail,
            provider=self.ctx.provider,
            model=self.ctx.model,
            conversation=self._conversation_snapshot(),
        )

    def complete(self, session: StreamSession) -> RelayOutcome:
        message_id = None
        try:
            message_id = self._persist_reply(session)
        finally:
            # Content was generated; the turn is billable even if persistence failed.
            settlement = self._settle(session)
        return self._outcome(session, message_id, settlement)

    def fail(self, session: StreamSession) -> RelayOutcome:
        """FAILED and CANCELLED share this path: keep partial content, otherwise drop the user turn."""
        message_id = None
        settlement = None
        try:
            if session.has_content:
                message_id = self._persist_reply(session)
            else:
                with self.session_factory() as db:
                    abort_turn(db, self.ctx.user_message_id)
            if session.error_kind == "stale_thread":
                with self.session_factory() as db:
                    invalidate_thread(db, self.ctx.conversation_id, session.stale_thread_id or self.ctx.thread_id)
        finally:
            if session.has_content or session.output_tokens > 0:
                settlement = self._settle(session)
        return self._outcome(session, message_id, settlement)


class StreamingRelay:
    def __init__(
        self,
        bookkeeper: TurnBookkeeper,
        *,
        timeout_s: float | None = None,
        on_finish: Optional[List[Callable[[], None]]] = None,
    ) -> None:
        self.bookkeeper = bookkeeper
        self.session = StreamSession(turn_id=bookkeeper.ctx.turn_id)
        self.timeout_s = settings.TURN_TIMEOUT_S if timeout_s is None else timeout_s
        self.outcome: Optional[RelayOutcome] = None
        self._on_finish = list(on_finish or [])
        self._started = False

    @property
    def state(self) -> RelayState:
        return self.session.state

    def abandon(self) -> Optional[RelayOutcome]:
        """Finalize a relay whose `run` never started (caller left before scheduling)."""
        if self._started:
            return self.outcome
        self._started = True
        try:
            return self._finalize(RelayState.CANCELLED)
        finally:
            for callback in self._on_finish:
                callback()

    async def run(self, events: AsyncIterator[ProviderEvent], emit: Emit) -> RelayOutcome:
        if self._started:
            raise RuntimeError("relay already ran")
        self._started = True
        ctx = self.bookkeeper.ctx
        token = bind_turn_context(ctx.turn_id)
        iterator = events.__aiter__()
        try:
            self.session.advance(RelayState.THINKING)
            await emit(
                "start",
                {"turn_id": ctx.turn_id, "conversation_id": ctx.conversation_id, "user_message_id": ctx.user_message_id},
            )
            return await self._pump(iterator, emit)
        except asyncio.CancelledError:
            self._finalize(RelayState.CANCELLED)
            raise
        finally:
            try:
                await self._close_source(iterator)
            finally:
                # Source teardown can be cancelled; the turn lock must still be released.
                for callback in self._on_finish:
                    callback()
                clear_turn_context(token)

    async def _pump(self, iterator: AsyncIterator[ProviderEvent], emit: Emit) -> RelayOutcome:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout_s
        while True:
            remaining = deadline - loop.time()
            try:
                if remaining <= 0:
                    raise asyncio.TimeoutError()
                event = await asyncio.wait_for(iterator.__anext__(), timeout=remaining)
            except StopAsyncIteration:
                return await self._fail(emit, "unexpected_end", "stream ended without a terminal event")
            except asyncio.TimeoutError:
                return await self._fail(emit, "timeout", f"turn exceeded {self.timeout_s:g}s")
            except ProviderFailure as exc:
                log_json(40, "relay_provider_exception", **redact_provider_error(exc))
                return await self._fail(emit, exc.kind, exc.detail, getattr(exc, "thread_id", None))
            except Exception as exc:
                log_json(40, "relay_provider_exception", **redact_provider_error(exc))
                return await self._fail(emit, "internal", str(exc))

            if isinstance(event, ContentDelta):
                if not event.text:
                    continue
                if self.session.state == RelayState.THINKING:
                    self.session.advance(RelayState.STREAMING)
                self.session.content_parts.append(event.text)
                await emit("content", {"text": event.text})
            elif isinstance(event, ReasoningDelta):
                if event.text:
                    await emit("reasoning", {"text": event.text})
            elif isinstance(event, ThreadBound):
                self.bookkeeper.thread_bound(event.thread_id)
            elif isinstance(event, UsageFinal):
                self.session.input_tokens = max(0, event.input_tokens)
                self.session.output_tokens = max(0, event.output_tokens)
                self.session.usage_reported = event.reported
                if not self.session.has_content:
                    return await self._fail(emit, "empty_response", "provider returned no content")
                return await self._complete(emit)
            elif isinstance(event, ProviderError):
                return await self._fail(emit, event.kind, event.message, event.thread_id)

    async def _complete(self, emit: Emit) -> RelayOutcome:
        outcome = self._finalize(RelayState.COMPLETED)
        if outcome.error_kind:
            await emit("error", {"message": safe_message(outcome.error_kind), "code": outcome.error_kind})
        else:
            await emit("done", outcome.done_payload())
        return outcome

    async def _fail(self, emit: Emit, kind: str, detail: str | None, thread_id: str | None = None) -> RelayOutcome:
        self.session.error_kind = kind
        self.session.error_detail = detail
        self.session.stale_thread_id = thread_id
        outcome = self._finalize(RelayState.FAILED)
        await emit("error", {"message": safe_message(kind, detail), "code": kind})
        return outcome

    def _finalize(self, state: RelayState) -> RelayOutcome:
        if self.session.finalized:
            return self.outcome  # type: ignore[return-value]
        self.session.finalized = True
        ctx = self.bookkeeper.ctx
        try:
            self.session.advance(state)
            if state == RelayState.COMPLETED:
                outcome = self.bookkeeper.complete(self.session)
            else:
                outcome = self.bookkeeper.fail(self.session)
        except Exception as exc:
            log_json(
                40,
                "relay_bookkeeping_failed",
                conversation_id=ctx.conversation_id,
                state=state.value,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            outcome = RelayOutcome(
                state=self.session.state,
                turn_id=ctx.turn_id,
                content=self.session.content,
                tokens_input=self.session.input_tokens,
                tokens_output=self.session.output_tokens,
                error_kind="internal",
                error_detail=str(exc),
                provider=ctx.provider,
                model=ctx.model,
            )
        self.outcome = outcome
        relay_turns_total.labels(state=outcome.state.value).inc()
        log_json(
            20 if outcome.ok else 30,
            f"relay_{outcome.state.value}",
            conversation_id=ctx.conversation_id,
            provider=ctx.provider,
            model=ctx.model,
            chars=len(self.session.content),
            tokens_input=outcome.tokens_input,
            tokens_output=outcome.tokens_output,
            usage_reported=self.session.usage_reported,
            settled=outcome.settled,
            error_kind=outcome.error_kind,
        )
        return outcome

    def abandon_if_unstarted(self, task: "asyncio.Task[Any]") -> None:
        """Task done-callback: a task cancelled before its first step never ran `run`."""
        if task.cancelled() and not self._started:
            log_json(30, "relay_abandoned", conversation_id=self.bookkeeper.ctx.conversation_id)
            self.abandon()

    async def _close_source(self, iterator: AsyncIterator[ProviderEvent]) -> None:
        aclose = getattr(iterator, "aclose", None)
        if aclose is None:
            return
        try:
            await aclose()
        except (RuntimeError, ProviderFailure) as exc:
            log_json(30, "relay_source_close_failed", error_type=type(exc).__name__)
