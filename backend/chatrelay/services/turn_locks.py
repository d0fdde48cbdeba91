from __future__ import annotations

import logging
import threading
from typing import Any, Optional, Protocol

import redis
from redis.exceptions import LockError, RedisError

from ..config import settings
from ..telemetry import log_json


class TurnLock(Protocol):
    conversation_id: int

    def release(self) -> None: ...


class _MemoryTurnLock:
    def __init__(self, registry: "InMemoryTurnLocks", conversation_id: int) -> None:
        self._registry = registry
        self.conversation_id = conversation_id
        self._released = False

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        self._registry._release(self.conversation_id)


class InMemoryTurnLocks:
    """Single-process single-flight guard; does not coordinate across workers."""

    def __init__(self) -> None:
        self._held: set[int] = set()
        self._mutex = threading.Lock()

    def acquire(self, conversation_id: int) -> Optional[_MemoryTurnLock]:
        with self._mutex:
            if conversation_id in self._held:
                return None
            self._held.add(conversation_id)
        return _MemoryTurnLock(self, conversation_id)

    def _release(self, conversation_id: int) -> None:
        with self._mutex:
            self._held.discard(conversation_id)

    def is_held(self, conversation_id: int) -> bool:
        with self._mutex:
            return conversation_id in self._held


class _RedisTurnLock:
    def __init__(self, lock: Any, conversation_id: int) -> None:
        self._lock = lock
        self.conversation_id = conversation_id
        self._released = False

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        try:
            self._lock.release()
        except LockError as exc:
            # Expired before release; the TTL already freed it.
            log_json(30, "turn_lock_release_failed", conversation_id=self.conversation_id, error=str(exc))
        except RedisError as exc:
            log_json(30, "turn_lock_release_failed", conversation_id=self.conversation_id, error=str(exc))


class RedisTurnLocks:
    def __init__(self, client: "redis.Redis", ttl_seconds: int) -> None:
        self.client = client
        self.ttl_seconds = ttl_seconds

    def acquire(self, conversation_id: int) -> Optional[_RedisTurnLock]:
        lock = self.client.lock(f"turnlock:conversation:{conversation_id}", timeout=self.ttl_seconds)
        if not lock.acquire(blocking=False):
            return None
        return _RedisTurnLock(lock, conversation_id)


class TurnLockRegistry:
    """
    Per-conversation single flight. Redis-backed when configured so that
    workers share the guard; falls back to the in-process set if Redis errors.
    """

    def __init__(self, redis_client: "redis.Redis | None" = None, ttl_seconds: int | None = None) -> None:
        self._memory = InMemoryTurnLocks()
        ttl = ttl_seconds or settings.TURN_LOCK_TTL_S
        self._redis = RedisTurnLocks(redis_client, ttl) if redis_client is not None else None
        self._fallback_logged = False

    def acquire(self, conversation_id: int) -> Optional[TurnLock]:
        if self._redis is None:
            return self._memory.acquire(conversation_id)
        try:
            return self._redis.acquire(conversation_id)
        except RedisError as exc:
            if not self._fallback_logged:
                self._fallback_logged = True
                log_json(30, "turn_lock_degraded", reason=f"redis error: {exc}")
            return self._memory.acquire(conversation_id)


_r = None
if settings.REDIS_URL:
    try:
        _r = redis.Redis.from_url(settings.REDIS_URL, decode_responses=True)
    except Exception as exc:
        logging.warning("Failed to init Redis for turn locks: %s", exc)
        _r = None

turn_locks = TurnLockRegistry(_r)
