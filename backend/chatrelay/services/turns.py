from __future__ import annotations

import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Iterator

from sqlalchemy.orm import Session, sessionmaker

from ..db import get_session_factory
from ..errors import ConfigurationError, TurnInProgress
from ..models import Assistant, Conversation, User
from ..providers.base import ProviderEvent
from ..telemetry import log_json
from .assistant_config import AssistantConfig
from .conversations import load_history, start_turn
from .dispatcher import TurnPlan, open_events, plan_turn
from .quota import QuotaGuard, Subject, quota_guard
from .relay import StreamingRelay, TurnBookkeeper, TurnContext
from .turn_locks import TurnLockRegistry, turn_locks


@dataclass
class PreparedTurn:
    relay: StreamingRelay
    events: AsyncIterator[ProviderEvent]
    plan: TurnPlan


def subject_for(user: User, conversation: Conversation) -> Subject:
    if conversation.is_admin_test:
        return Subject.admin(user.id)
    return Subject.user(user.id)


def load_assistant_config(db: Session, conversation: Conversation) -> AssistantConfig:
    assistant = db.get(Assistant, conversation.assistant_id) if conversation.assistant_id else None
    if assistant is None or not assistant.is_active:
        raise ConfigurationError(f"assistant {conversation.assistant_id} is missing or inactive")
    return AssistantConfig.from_model(assistant)


def begin_turn(
    db: Session,
    user: User,
    conversation: Conversation,
    text: str,
    *,
    buffered: bool = False,
    session_factory: sessionmaker | None = None,
    quota: QuotaGuard | None = None,
    locks: TurnLockRegistry | None = None,
    timeout_s: float | None = None,
) -> PreparedTurn:
    """
    Pre-flight a turn and hand back a relay ready to run.

    Raises QuotaExceeded, TurnInProgress or ConfigurationError before any
    message is written. On success the user message is committed and the
    conversation's turn lock is held until the relay finishes.
    """
    quota = quota or quota_guard
    locks = locks or turn_locks
    subject = subject_for(user, conversation)
    quota.require_sufficient(db, subject)

    lock = locks.acquire(conversation.id)
    if lock is None:
        log_json(20, "turn_rejected_in_progress", conversation_id=conversation.id)
        raise TurnInProgress(conversation.id)

    try:
        config = load_assistant_config(db, conversation)
        history = load_history(db, conversation.id, config.context_window)
        plan = plan_turn(
            config,
            history,
            text,
            user_id=user.id,
            thread_id=conversation.openai_thread_id,
        )
        title_source = text if conversation.title is None else None
        user_message = start_turn(db, conversation, text)
        ctx = TurnContext(
            turn_id=uuid.uuid4().hex,
            conversation_id=conversation.id,
            user_message_id=user_message.id,
            subject=subject,
            provider=config.provider,
            model=config.model,
            title_source=title_source,
            thread_id=plan.request.thread_id,
        )
        bookkeeper = TurnBookkeeper(ctx, session_factory or get_session_factory(), quota)
        relay = StreamingRelay(bookkeeper, timeout_s=timeout_s, on_finish=[lock.release])
        events = open_events(plan, buffered=buffered)
    except BaseException:
        lock.release()
        raise

    log_json(
        20,
        "turn_started",
        turn_id=ctx.turn_id,
        conversation_id=conversation.id,
        provider=config.provider,
        model=config.model,
        knowledge_base=plan.knowledge_base,
        history_messages=len(history),
        buffered=buffered,
    )
    return PreparedTurn(relay=relay, events=events, plan=plan)


@contextmanager
def conversation_guard(conversation_id: int, *, locks: TurnLockRegistry | None = None) -> Iterator[None]:
    """Hold the turn lock while mutating a conversation outside a turn; a running turn wins."""
    lock = (locks or turn_locks).acquire(conversation_id)
    if lock is None:
        log_json(20, "conversation_busy", conversation_id=conversation_id)
        raise TurnInProgress(conversation_id)
    try:
        yield
    finally:
        lock.release()
