# SPDX-License-Identifier: Apache-2.0

import ipaddress
import logging
import time
from collections import defaultdict, deque
from typing import Deque

import redis
from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse
from jose import JWTError
from redis.exceptions import RedisError

from .config import settings
from .telemetry import log_json


def _limit_exceeded(limit: int, window: int) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        detail="Rate limit exceeded",
        headers={
            "Retry-After": str(window),
            "X-RateLimit-Limit": str(limit),
            "X-RateLimit-Remaining": "0",
        },
    )


class InMemoryRateLimiter:
    """Single-process fallback; keys idle past key_ttl_seconds are pruned."""

    def __init__(self, max_keys: int = 5000, key_ttl_seconds: int = 900):
        self.store: dict[str, Deque[float]] = defaultdict(deque)
        self.last_seen: dict[str, float] = {}
        self.max_keys = max_keys
        self.key_ttl_seconds = key_ttl_seconds

    def _prune(self, now: float, window: int) -> None:
        cutoff = now - max(window, self.key_ttl_seconds)
        stale = [k for k, ts in self.last_seen.items() if ts < cutoff]
        for key in stale:
            self.store.pop(key, None)
            self.last_seen.pop(key, None)

    def _evict_if_needed(self) -> None:
        if len(self.last_seen) < self.max_keys:
            return
        oldest_key = min(self.last_seen, key=self.last_seen.get)
        self.store.pop(oldest_key, None)
        self.last_seen.pop(oldest_key, None)

    def check(self, key: str, limit: int, window: int) -> tuple[int, int]:
        """Returns (remaining, limit) for rate limit headers."""
        now = time.time()
        self._prune(now, window)
        q = self.store.get(key)
        if q is None:
            self._evict_if_needed()
            q = self.store[key]
        while q and now - q[0] > window:
            q.popleft()
        if len(q) >= limit:
            raise _limit_exceeded(limit, window)
        q.append(now)
        self.last_seen[key] = now
        return (limit - len(q), limit)


class RedisRateLimiter:
    def __init__(self, client: "redis.Redis"):
        self.client = client

    def check(self, key: str, limit: int, window: int) -> tuple[int, int]:
        bucket = int(time.time()) // window
        rk = f"ratelimit:{key}:{bucket}"
        with self.client.pipeline() as pipe:
            pipe.incr(rk)
            pipe.expire(rk, window * 2)
            count, _ = pipe.execute()
        if count > limit:
            raise _limit_exceeded(limit, window)
        return max(0, limit - count), limit


class RateLimiter:
    def __init__(self, redis_client: "redis.Redis | None"):
        self._memory_limiter = InMemoryRateLimiter()
        self._redis_limiter = RedisRateLimiter(redis_client) if redis_client else None
        self._fallback_logged = False

    @property
    def store(self):
        return self._memory_limiter.store

    def check(self, key: str, limit: int, window: int) -> tuple[int, int]:
        if self._redis_limiter is None:
            return self._memory_limiter.check(key, limit, window)
        try:
            return self._redis_limiter.check(key, limit, window)
        except RedisError as exc:
            if not self._fallback_logged:
                self._fallback_logged = True
                log_json(30, "ratelimit_degraded", reason=f"redis error: {exc}")
            return self._memory_limiter.check(key, limit, window)


_r = None
if settings.REDIS_URL:
    try:
        _r = redis.Redis.from_url(settings.REDIS_URL, decode_responses=True)
    except Exception as exc:
        logging.warning("Failed to init Redis for rate limiting: %s", exc)
        _r = None

limiter = RateLimiter(_r)

_trusted_proxy_networks = [ipaddress.ip_network(cidr, strict=False) for cidr in settings.TRUSTED_PROXY_IPS]


def _resolved_client_ip(request: Request) -> str:
    """Resolve client IP, honoring X-Forwarded-For only behind a trusted proxy."""
    client_host = request.client.host if request.client else None
    if not client_host:
        return "unknown"
    try:
        client_ip = ipaddress.ip_address(client_host)
    except ValueError:
        return client_host

    if _trusted_proxy_networks and any(client_ip in net for net in _trusted_proxy_networks):
        xff = request.headers.get("x-forwarded-for")
        if xff:
            forwarded_for = xff.split(",")[0].strip()
            try:
                return str(ipaddress.ip_address(forwarded_for))
            except ValueError:
                return str(client_ip)
    return str(client_ip)


def check_rate_limit(key: str, limit: int, window: int = 60) -> tuple[int, int]:
    """Fixed-window limit for `key`; raises 429 when exhausted."""
    return limiter.check(key, limit, window)


def check_chat_rate_limit(user_id: int) -> tuple[int, int]:
    return check_rate_limit(f"chat:user:{user_id}", settings.CHAT_RATE_LIMIT_PER_MINUTE)


async def rate_limit_middleware(request: Request, call_next):
    key = f"ip:{_resolved_client_ip(request)}"
    authz = request.headers.get("authorization")
    if authz and authz.lower().startswith("bearer "):
        from .auth import decode_token

        try:
            sub = decode_token(authz.split(" ", 1)[1]).get("sub")
            if sub:
                key = f"user:{sub}"
        except JWTError:
            # Auth dependency rejects the token later; limit by IP meanwhile.
            pass

    limit = settings.RATE_LIMIT_PER_MINUTE
    try:
        remaining, _ = check_rate_limit(key, limit)
    except HTTPException as exc:
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail}, headers=exc.headers or {})

    response = await call_next(request)
    response.headers["X-RateLimit-Limit"] = str(limit)
    response.headers["X-RateLimit-Remaining"] = str(remaining)
    return response
