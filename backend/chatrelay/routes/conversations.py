# SPDX-License-Identifier: Apache-2.0

import asyncio
import json
from typing import Any, Dict, List

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import func
from sqlalchemy.orm import Session, sessionmaker
from starlette.responses import StreamingResponse

from ..auth import get_current_user
from ..config import settings
from ..db import get_db, get_session_factory
from ..errors import FAILURE_BY_KIND, ChatRelayError, safe_message
from ..models import Assistant, Conversation, Message, User
from ..providers.factory import get_thread_client
from ..rate_limit import check_chat_rate_limit
from ..schemas import ConversationCreate, ConversationUpdate, MessageIn
from ..services.conversations import (
    clear_conversation,
    conversation_to_dict,
    create_conversation,
    get_owned_conversation,
    message_to_dict,
    rename_conversation,
    set_archived,
    soft_delete_conversation,
)
from ..services.relay import RelayOutcome
from ..services.turns import PreparedTurn, begin_turn, conversation_guard
from ..telemetry import log_json

router = APIRouter(prefix="/conversations", tags=["conversations"])
_stream_semaphore = asyncio.Semaphore(settings.MAX_CONCURRENT_STREAMS)

_TERMINAL_EVENTS = {"done", "error"}
_HTTP_ERROR_CODES = {
    status.HTTP_401_UNAUTHORIZED: "unauthorized",
    status.HTTP_403_FORBIDDEN: "forbidden",
    status.HTTP_404_NOT_FOUND: "not_found",
    status.HTTP_429_TOO_MANY_REQUESTS: "rate_limited",
}
SSE_HEADERS = {
    "Content-Type": "text/event-stream; charset=utf-8",
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def _sse(event: str, payload: Dict[str, Any]) -> str:
    return f"event: {event}\ndata: {json.dumps(payload)}\n\n"


def _default_assistant(db: Session) -> Assistant | None:
    return (
        db.query(Assistant)
        .filter(Assistant.is_active.is_(True))
        .order_by(Assistant.is_default.desc(), Assistant.sort_order.asc(), Assistant.id.asc())
        .first()
    )


def resolve_assistant(db: Session, assistant_id: int | None) -> Assistant:
    assistant = _default_assistant(db) if assistant_id is None else db.get(Assistant, assistant_id)
    if assistant is None or not assistant.is_active:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Assistant not found")
    return assistant


async def release_upstream_thread(thread_id: str | None, conversation_id: int) -> None:
    """Upstream thread cleanup; local state is already reset so failures are only logged."""
    if not thread_id:
        return
    try:
        released = await get_thread_client().delete_thread(thread_id)
    except ChatRelayError as exc:
        log_json(30, "kb_thread_release_failed", conversation_id=conversation_id, error_code=exc.code)
        return
    log_json(20, "kb_thread_released", conversation_id=conversation_id, released=released)


def _prepare_turn(
    session_factory: sessionmaker, user: User, conversation_id: int, content: str, *, buffered: bool
) -> PreparedTurn:
    with session_factory() as db:
        check_chat_rate_limit(user.id)
        conversation = get_owned_conversation(db, conversation_id, user.id)
        return begin_turn(db, user, conversation, content, buffered=buffered, session_factory=session_factory)


def _outcome_error(outcome: RelayOutcome) -> ChatRelayError:
    kind = outcome.error_kind or "internal"
    failure = FAILURE_BY_KIND.get(kind)
    if failure is not None:
        status_code = failure.status_code
    else:
        status_code = 500 if kind == "internal" else 502
    return ChatRelayError(safe_message(kind, outcome.error_detail), code=kind, status_code=status_code)


@router.post("", status_code=status.HTTP_201_CREATED)
def create(
    body: ConversationCreate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> Dict[str, Any]:
    assistant = resolve_assistant(db, body.assistant_id)
    conversation = create_conversation(db, user_id=user.id, assistant_id=assistant.id)
    db.commit()
    log_json(20, "conversation_created", conversation_id=conversation.id, assistant_id=assistant.id)
    return conversation_to_dict(conversation)


@router.get("")
def list_conversations(
    archived: bool = False,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> List[Dict[str, Any]]:
    query = db.query(Conversation).filter(Conversation.user_id == user.id, Conversation.deleted_at.is_(None))
    if archived:
        query = query.filter(Conversation.archived_at.isnot(None))
    else:
        query = query.filter(Conversation.archived_at.is_(None))
    rows = query.order_by(
        func.coalesce(Conversation.last_message_at, Conversation.created_at).desc(), Conversation.id.desc()
    ).all()
    return [conversation_to_dict(row) for row in rows]


@router.get("/{conversation_id}/messages")
def list_messages(
    conversation_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> List[Dict[str, Any]]:
    get_owned_conversation(db, conversation_id, user.id)
    rows = db.query(Message).filter(Message.conversation_id == conversation_id).order_by(Message.id.asc()).all()
    return [message_to_dict(row) for row in rows]


@router.post("/{conversation_id}/messages")
async def send_message(
    conversation_id: int,
    body: MessageIn,
    user: User = Depends(get_current_user),
    session_factory: sessionmaker = Depends(get_session_factory),
) -> Dict[str, Any]:
    prepared = _prepare_turn(session_factory, user, conversation_id, body.content, buffered=True)

    async def _discard(event: str, payload: Dict[str, Any]) -> None:
        return None

    outcome = await prepared.relay.run(prepared.events, _discard)
    if not outcome.ok:
        raise _outcome_error(outcome)
    return {"content": outcome.content, **outcome.done_payload()}


@router.post(
    "/{conversation_id}/messages/stream",
    response_class=StreamingResponse,
    responses={200: {"content": {"text/event-stream": {}}}},
)
async def send_message_stream(
    conversation_id: int,
    body: MessageIn,
    user: User = Depends(get_current_user),
    session_factory: sessionmaker = Depends(get_session_factory),
):
    async def generator():
        keepalive_interval = settings.STREAM_KEEPALIVE_SECS if settings.STREAM_KEEPALIVE_SECS > 0 else None
        sem_acquired = False
        task: asyncio.Task | None = None
        terminal_sent = False
        try:
            try:
                await asyncio.wait_for(_stream_semaphore.acquire(), timeout=2.0)
                sem_acquired = True
            except asyncio.TimeoutError:
                yield _sse("error", {"message": "Server is busy. Please try again.", "code": "stream_capacity_exceeded"})
                return

            try:
                prepared = _prepare_turn(session_factory, user, conversation_id, body.content, buffered=False)
            except ChatRelayError as exc:
                yield _sse("error", {"message": exc.message, "code": exc.code})
                return
            except HTTPException as exc:
                yield _sse(
                    "error",
                    {"message": str(exc.detail), "code": _HTTP_ERROR_CODES.get(exc.status_code, "request_error")},
                )
                return

            channel: asyncio.Queue = asyncio.Queue(maxsize=settings.STREAM_QUEUE_SIZE)

            async def emit(event: str, payload: Dict[str, Any]) -> None:
                await channel.put((event, payload))

            async def drive() -> None:
                try:
                    await prepared.relay.run(prepared.events, emit)
                except Exception as exc:
                    log_json(40, "relay_task_failed", conversation_id=conversation_id, error_type=type(exc).__name__)
                    await channel.put(("error", {"message": safe_message("internal"), "code": "internal"}))

            task = asyncio.create_task(drive())
            # The slot is held until bookkeeping finishes, not until the client goes away.
            task.add_done_callback(lambda _: _stream_semaphore.release())
            task.add_done_callback(prepared.relay.abandon_if_unstarted)
            sem_acquired = False

            while True:
                try:
                    event, payload = await asyncio.wait_for(channel.get(), timeout=keepalive_interval)
                except asyncio.TimeoutError:
                    yield ": keepalive\n\n"
                    continue
                yield _sse(event, payload)
                if event in _TERMINAL_EVENTS:
                    terminal_sent = True
                    break
            # Bookkeeping is done; let the relay close its source and release the turn lock.
            await asyncio.wait({task})
        finally:
            if task is not None and not task.done() and not terminal_sent:
                task.cancel()
            if sem_acquired:
                _stream_semaphore.release()

    return StreamingResponse(generator(), headers=SSE_HEADERS)


@router.patch("/{conversation_id}")
def update(
    conversation_id: int,
    body: ConversationUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> Dict[str, Any]:
    conversation = get_owned_conversation(db, conversation_id, user.id)
    return conversation_to_dict(rename_conversation(db, conversation, body.title))


@router.post("/{conversation_id}/archive")
def archive(conversation_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    conversation = get_owned_conversation(db, conversation_id, user.id)
    return conversation_to_dict(set_archived(db, conversation, True))


@router.post("/{conversation_id}/unarchive")
def unarchive(conversation_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    conversation = get_owned_conversation(db, conversation_id, user.id)
    return conversation_to_dict(set_archived(db, conversation, False))


@router.post("/{conversation_id}/clear")
async def clear(conversation_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    conversation = get_owned_conversation(db, conversation_id, user.id)
    with conversation_guard(conversation_id):
        thread_id = clear_conversation(db, conversation)
    await release_upstream_thread(thread_id, conversation_id)
    return conversation_to_dict(conversation)


@router.delete("/{conversation_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete(conversation_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    conversation = get_owned_conversation(db, conversation_id, user.id)
    with conversation_guard(conversation_id):
        soft_delete_conversation(db, conversation)
    log_json(20, "conversation_deleted", conversation_id=conversation_id)
