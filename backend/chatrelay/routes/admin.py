from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from ..auth import require_admin
from ..config import settings
from ..db import get_db
from ..models import Conversation, ConversationType, User
from ..rate_limit import check_rate_limit
from ..schemas import AdminConversationCreate
from ..services.assistant_config import assistant_cache
from ..services.conversations import conversation_to_dict, create_conversation, purge_conversation
from ..services.turns import conversation_guard
from ..telemetry import log_json
from .conversations import release_upstream_thread, resolve_assistant

router = APIRouter(prefix="/admin", tags=["admin"])


def _admin_rate_limit(admin_user: User, action: str) -> None:
    check_rate_limit(f"admin:{admin_user.id}:{action}", settings.RATE_LIMIT_PER_MINUTE)


@router.post("/conversations", status_code=status.HTTP_201_CREATED)
def create_test_conversation(
    body: AdminConversationCreate,
    db: Session = Depends(get_db),
    admin_user: User = Depends(require_admin),
) -> Dict[str, Any]:
    """Test chat against any active assistant; usage lands on the admin ledger, never a balance."""
    _admin_rate_limit(admin_user, "create_test_conversation")
    assistant = resolve_assistant(db, body.assistant_id)
    conversation = create_conversation(
        db, user_id=admin_user.id, assistant_id=assistant.id, type=ConversationType.ADMIN_TEST.value
    )
    db.commit()
    log_json(20, "admin_test_conversation_created", conversation_id=conversation.id, assistant_id=assistant.id)
    return conversation_to_dict(conversation)


@router.delete("/conversations/{conversation_id}", status_code=status.HTTP_204_NO_CONTENT)
async def purge(
    conversation_id: int,
    db: Session = Depends(get_db),
    admin_user: User = Depends(require_admin),
) -> None:
    _admin_rate_limit(admin_user, "purge_conversation")
    conversation = db.get(Conversation, conversation_id)
    if conversation is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Conversation not found")
    with conversation_guard(conversation_id):
        thread_id = purge_conversation(db, conversation)
    log_json(30, "conversation_purged", conversation_id=conversation_id, admin_id=admin_user.id)
    await release_upstream_thread(thread_id, conversation_id)


@router.post("/assistants/cache/invalidate")
def invalidate_assistant_cache(admin_user: User = Depends(require_admin)) -> Dict[str, Any]:
    assistant_cache.invalidate()
    return {"ok": True}
