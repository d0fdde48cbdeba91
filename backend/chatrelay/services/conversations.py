# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

import datetime
from typing import Any, Dict, List, Optional

from fastapi import HTTPException
from sqlalchemy import delete, update
from sqlalchemy.orm import Session

from ..models import Conversation, ConversationType, Message, MessageRole
from ..telemetry import log_json
from .context import HistoryItem

TITLE_MAX_CHARS = 50


def _now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def trim_title(title: str | None) -> str | None:
    if not title:
        return None
    clean = " ".join(title.split())
    if not clean:
        return None
    if len(clean) <= TITLE_MAX_CHARS:
        return clean
    return f"{clean[:TITLE_MAX_CHARS]}…"


def create_conversation(
    db: Session,
    *,
    user_id: int,
    assistant_id: int | None,
    type: str = ConversationType.USER_CHAT.value,
) -> Conversation:
    conversation = Conversation(user_id=user_id, assistant_id=assistant_id, type=type)
    db.add(conversation)
    db.flush()
    return conversation


def get_owned_conversation(db: Session, conversation_id: int, user_id: int) -> Conversation:
    conversation = db.get(Conversation, conversation_id)
    if conversation is None or conversation.deleted_at is not None or conversation.user_id != user_id:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return conversation


def load_history(db: Session, conversation_id: int, limit: int) -> List[HistoryItem]:
    """Newest `limit` user/assistant messages, returned oldest first."""
    if limit <= 0:
        return []
    rows = (
        db.query(Message.role, Message.content)
        .filter(
            Message.conversation_id == conversation_id,
            Message.role.in_([MessageRole.USER.value, MessageRole.ASSISTANT.value]),
        )
        .order_by(Message.id.desc())
        .limit(limit)
        .all()
    )
    rows.reverse()
    return [(row.role, row.content) for row in rows]


def start_turn(db: Session, conversation: Conversation, user_text: str) -> Message:
    """Persist the user message before any provider call so the turn survives a crash."""
    message = Message(conversation_id=conversation.id, role=MessageRole.USER.value, content=user_text)
    db.add(message)
    db.execute(update(Conversation).where(Conversation.id == conversation.id).values(last_message_at=_now()))
    db.commit()
    return message


def abort_turn(db: Session, user_message_id: int) -> bool:
    """Remove a user message whose turn produced no assistant reply."""
    result = db.execute(
        delete(Message).where(Message.id == user_message_id, Message.role == MessageRole.USER.value)
    )
    db.commit()
    removed = bool(result.rowcount)
    log_json(20, "turn_aborted", message_id=user_message_id, removed=removed)
    return removed


def complete_turn(
    db: Session,
    conversation_id: int,
    content: str,
    input_tokens: int,
    output_tokens: int,
) -> Message:
    """Persist the assistant reply and roll the conversation counters in one commit."""
    message = Message(
        conversation_id=conversation_id,
        role=MessageRole.ASSISTANT.value,
        content=content,
        tokens_input=max(0, int(input_tokens or 0)),
        tokens_output=max(0, int(output_tokens or 0)),
    )
    db.add(message)
    db.execute(
        update(Conversation)
        .where(Conversation.id == conversation_id)
        .values(
            total_tokens_input=Conversation.total_tokens_input + message.tokens_input,
            total_tokens_output=Conversation.total_tokens_output + message.tokens_output,
            last_message_at=_now(),
        )
    )
    db.commit()
    return message


def ensure_title(db: Session, conversation_id: int, first_user_text: str | None) -> bool:
    """
    Set the title from the first user message only while it is still null.

    A single conditional UPDATE: concurrent callers race on the row and the
    first write wins; later calls match zero rows.
    """
    title = trim_title(first_user_text)
    if not title:
        return False
    result = db.execute(
        update(Conversation)
        .where(Conversation.id == conversation_id, Conversation.title.is_(None))
        .values(title=title)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return bool(result.rowcount)


def bind_thread(db: Session, conversation_id: int, thread_id: str) -> None:
    db.execute(
        update(Conversation)
        .where(Conversation.id == conversation_id)
        .values(openai_thread_id=thread_id)
        .execution_options(synchronize_session=False)
    )
    db.commit()


def invalidate_thread(db: Session, conversation_id: int, thread_id: str | None) -> bool:
    """Clear a stale thread handle, unless it has already been replaced."""
    stmt = update(Conversation).where(Conversation.id == conversation_id)
    if thread_id:
        stmt = stmt.where(Conversation.openai_thread_id == thread_id)
    result = db.execute(stmt.values(openai_thread_id=None).execution_options(synchronize_session=False))
    db.commit()
    cleared = bool(result.rowcount)
    log_json(30, "kb_thread_invalidated", conversation_id=conversation_id, cleared=cleared)
    return cleared


def clear_conversation(db: Session, conversation: Conversation) -> Optional[str]:
    """Drop messages and counters; returns the released thread id (if any) for upstream cleanup."""
    thread_id = conversation.openai_thread_id
    db.execute(delete(Message).where(Message.conversation_id == conversation.id))
    conversation.title = None
    conversation.total_tokens_input = 0
    conversation.total_tokens_output = 0
    conversation.openai_thread_id = None
    conversation.last_message_at = None
    db.commit()
    return thread_id


def rename_conversation(db: Session, conversation: Conversation, title: str) -> Conversation:
    """User-set title; `ensure_title` never overwrites a non-null title."""
    conversation.title = title
    db.commit()
    return conversation


def set_archived(db: Session, conversation: Conversation, archived: bool) -> Conversation:
    conversation.archived_at = _now() if archived else None
    db.commit()
    return conversation


def soft_delete_conversation(db: Session, conversation: Conversation) -> None:
    conversation.soft_delete()
    db.commit()


def purge_conversation(db: Session, conversation: Conversation) -> Optional[str]:
    """Hard delete; returns the upstream thread id the caller must release."""
    thread_id = conversation.openai_thread_id
    db.execute(delete(Message).where(Message.conversation_id == conversation.id))
    db.delete(conversation)
    db.commit()
    return thread_id


def conversation_to_dict(conversation: Conversation) -> Dict[str, Any]:
    return {
        "id": conversation.id,
        "assistant_id": conversation.assistant_id,
        "type": conversation.type,
        "title": conversation.title,
        "total_tokens_input": conversation.total_tokens_input or 0,
        "total_tokens_output": conversation.total_tokens_output or 0,
        "last_message_at": conversation.last_message_at.isoformat() if conversation.last_message_at else None,
        "archived": conversation.archived_at is not None,
    }


def message_to_dict(message: Message) -> Dict[str, Any]:
    return {
        "id": message.id,
        "role": message.role,
        "content": message.content,
        "tokens_input": message.tokens_input or 0,
        "tokens_output": message.tokens_output or 0,
        "created_at": message.created_at.isoformat() if message.created_at else None,
    }
