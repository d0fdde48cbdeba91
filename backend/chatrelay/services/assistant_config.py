from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from ..config import settings
from ..models import Assistant
from ..telemetry import log_json


def _split_stop_sequences(raw: str | None) -> Tuple[str, ...]:
    if not raw:
        return ()
    return tuple(part.strip() for part in raw.split(",") if part.strip())


@dataclass(frozen=True)
class AssistantConfig:
    """Immutable per-turn snapshot of an assistant row."""

    id: int
    name: str
    provider: str
    model: str
    system_prompt: str
    temperature: float = 0.7
    max_tokens: int = 2000
    top_p: float = 1.0
    frequency_penalty: float = 0.0
    presence_penalty: float = 0.0
    response_format: str = "text"
    stop_sequences: Tuple[str, ...] = field(default_factory=tuple)
    seed: Optional[int] = None
    context_window: int = 10
    filter_unsafe_content: bool = True
    include_user_id: bool = False
    use_knowledge_base: bool = False
    reasoning_effort: Optional[str] = None
    upstream_assistant_id: Optional[str] = None
    vector_store_id: Optional[str] = None

    @classmethod
    def from_model(cls, assistant: Assistant) -> "AssistantConfig":
        return cls(
            id=assistant.id,
            name=assistant.name,
            provider=assistant.provider,
            model=assistant.model,
            system_prompt=assistant.system_prompt or "",
            temperature=float(assistant.temperature if assistant.temperature is not None else 0.7),
            max_tokens=int(assistant.max_tokens or 2000),
            top_p=float(assistant.top_p if assistant.top_p is not None else 1.0),
            frequency_penalty=float(assistant.frequency_penalty or 0.0),
            presence_penalty=float(assistant.presence_penalty or 0.0),
            response_format=assistant.response_format or "text",
            stop_sequences=_split_stop_sequences(assistant.stop_sequences),
            seed=assistant.seed,
            context_window=max(0, int(assistant.context_messages if assistant.context_messages is not None else 10)),
            filter_unsafe_content=bool(assistant.filter_unsafe_content),
            include_user_id=bool(assistant.include_user_id),
            use_knowledge_base=bool(assistant.use_knowledge_base),
            reasoning_effort=assistant.reasoning_effort or None,
            upstream_assistant_id=assistant.openai_assistant_id,
            vector_store_id=assistant.openai_vector_store_id,
        )


def assistant_to_dict(assistant: Assistant) -> Dict[str, Any]:
    return {
        "id": assistant.id,
        "name": assistant.name,
        "description": assistant.description,
        "provider": assistant.provider,
        "model": assistant.model,
        "use_knowledge_base": bool(assistant.use_knowledge_base),
        "is_default": bool(assistant.is_default),
    }


class AssistantCache:
    """Active-assistant list with an explicit expiry; `invalidate()` forces the next `get()` to reload."""

    def __init__(self, ttl_seconds: float | None = None, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_seconds = settings.ASSISTANT_CACHE_TTL_S if ttl_seconds is None else ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._items: Optional[List[Dict[str, Any]]] = None
        self._expires_at = 0.0
        self._generation = 0

    def get(self, db: Session) -> List[Dict[str, Any]]:
        with self._lock:
            if self._items is not None and self._clock() < self._expires_at:
                return list(self._items)
            generation = self._generation
        rows = (
            db.query(Assistant)
            .filter(Assistant.is_active.is_(True))
            .order_by(Assistant.sort_order.asc(), Assistant.name.asc())
            .all()
        )
        items = [assistant_to_dict(row) for row in rows]
        with self._lock:
            # An invalidate() landed mid-load; this list may predate it.
            if self._generation == generation:
                self._items = items
                self._expires_at = self._clock() + self.ttl_seconds
        return list(items)

    def invalidate(self) -> None:
        with self._lock:
            self._items = None
            self._expires_at = 0.0
            self._generation += 1
        log_json(20, "assistant_cache_invalidated")


assistant_cache = AssistantCache()
