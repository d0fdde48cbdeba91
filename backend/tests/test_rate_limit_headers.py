import pytest
from fastapi import HTTPException
from fastapi.testclient import TestClient

from chatrelay.config import settings
from chatrelay.main import app
from chatrelay.rate_limit import RateLimiter, check_chat_rate_limit, limiter
from tests.fixtures.fakes import FakeRedis


def _reset_memory_limiter() -> None:
    limiter._memory_limiter.store.clear()
    limiter._memory_limiter.last_seen.clear()


def test_429_carries_rate_limit_headers(monkeypatch):
    client = TestClient(app, raise_server_exceptions=False)
    _reset_memory_limiter()
    monkeypatch.setattr(settings, "RATE_LIMIT_PER_MINUTE", 1)
    try:
        first = client.get("/health")
        assert first.headers["X-RateLimit-Limit"] == "1"
        assert first.headers["X-RateLimit-Remaining"] == "0"

        resp = client.get("/health")
        assert resp.status_code == 429
        assert resp.headers["Retry-After"] == "60"
        assert resp.json() == {"detail": "Rate limit exceeded"}
    finally:
        _reset_memory_limiter()


def test_chat_limit_is_per_user(monkeypatch):
    _reset_memory_limiter()
    monkeypatch.setattr(settings, "CHAT_RATE_LIMIT_PER_MINUTE", 2)
    try:
        check_chat_rate_limit(1)
        check_chat_rate_limit(1)
        check_chat_rate_limit(2)
        with pytest.raises(HTTPException) as excinfo:
            check_chat_rate_limit(1)
        assert excinfo.value.status_code == 429
    finally:
        _reset_memory_limiter()


def test_redis_limiter_counts_in_shared_buckets():
    fake = FakeRedis()
    shared = RateLimiter(fake)

    remaining, limit = shared.check("user:9", 3, 60)

    assert (remaining, limit) == (2, 3)
    assert fake.was_called("incr")
    assert any(key.startswith("ratelimit:user:9:") for key in fake._counters)
