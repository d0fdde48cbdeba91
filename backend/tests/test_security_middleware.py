import asyncio
from ipaddress import ip_network

import pytest
from fastapi.responses import JSONResponse
from fastapi.testclient import TestClient
from starlette.datastructures import Headers
from starlette.requests import Request

from chatrelay.config import settings
from chatrelay.main import create_app
from chatrelay.rate_limit import _resolved_client_ip, _trusted_proxy_networks, limiter, rate_limit_middleware


@pytest.fixture
def app_client() -> TestClient:
    return TestClient(create_app())


def test_csrf_header_required_when_enabled(app_client: TestClient, monkeypatch) -> None:
    monkeypatch.setattr(settings, "REQUIRE_CSRF_HEADER", True)

    r = app_client.post("/api/conversations", json={})
    assert r.status_code == 403
    assert "CSRF" in r.json()["detail"]

    # With the header the request reaches auth instead
    r2 = app_client.post("/api/conversations", json={}, headers={"X-Requested-With": "XMLHttpRequest"})
    assert r2.status_code == 401


def test_security_headers_present(app_client: TestClient) -> None:
    resp = app_client.get("/health")
    assert resp.headers["X-Content-Type-Options"] == "nosniff"
    assert resp.headers["X-Frame-Options"] == "DENY"
    assert "frame-ancestors 'none'" in resp.headers["Content-Security-Policy"]
    assert resp.headers["X-Request-ID"]


def test_request_id_is_propagated_when_well_formed(app_client: TestClient) -> None:
    resp = app_client.get("/health", headers={"X-Request-ID": "abcd1234-req"})
    assert resp.headers["X-Request-ID"] == "abcd1234-req"

    resp = app_client.get("/health", headers={"X-Request-ID": "bad id!"})
    assert resp.headers["X-Request-ID"] != "bad id!"


def test_oversized_json_body_is_rejected(app_client: TestClient, monkeypatch) -> None:
    monkeypatch.setattr(settings, "MAX_JSON_MB", 1)
    body = "x" * (1024 * 1024 + 10)
    resp = app_client.post("/api/auth/token", content=body, headers={"Content-Type": "application/json"})
    assert resp.status_code == 413


@pytest.fixture
def reset_trusted_proxies():
    original = list(_trusted_proxy_networks)
    yield
    _trusted_proxy_networks[:] = original
    assert _trusted_proxy_networks == original


def _fake_request(client_host: str, headers: dict[str, str] | None = None) -> Request:
    scope = {
        "type": "http",
        "method": "GET",
        "path": "/",
        "headers": Headers(headers or {}).raw,
        "client": (client_host, 1234),
        "scheme": "http",
        "server": ("testserver", 80),
    }
    return Request(scope)


def test_resolved_client_ip_prefers_forwarded_for_when_proxy_trusted(reset_trusted_proxies) -> None:
    _trusted_proxy_networks[:] = [ip_network("127.0.0.1/32")]
    req = _fake_request("127.0.0.1", {"x-forwarded-for": "203.0.113.9"})
    assert _resolved_client_ip(req) == "203.0.113.9"


def test_resolved_client_ip_ignores_forwarded_for_from_untrusted_proxy(reset_trusted_proxies) -> None:
    _trusted_proxy_networks[:] = [ip_network("10.0.0.0/8")]
    req = _fake_request("127.0.0.1", {"x-forwarded-for": "203.0.113.9"})
    assert _resolved_client_ip(req) == "127.0.0.1"


def test_resolved_client_ip_trusted_proxy_uses_first_xff(reset_trusted_proxies) -> None:
    _trusted_proxy_networks[:] = [ip_network("127.0.0.1/32")]
    req = _fake_request("127.0.0.1", {"X-Forwarded-For": "203.0.113.9, 10.0.0.1"})
    assert _resolved_client_ip(req) == "203.0.113.9"


def test_resolved_client_ip_malformed_forwarded_for_falls_back(reset_trusted_proxies) -> None:
    _trusted_proxy_networks[:] = [ip_network("127.0.0.1/32")]
    req = _fake_request("127.0.0.1", {"X-Forwarded-For": "not-an-ip"})
    assert _resolved_client_ip(req) == "127.0.0.1"


def test_rate_limit_exceeded_for_same_ip(reset_trusted_proxies, monkeypatch) -> None:
    """
    Executes the async middleware via asyncio.run to avoid needing pytest-asyncio.
    """
    limiter.store.clear()
    _trusted_proxy_networks[:] = []
    monkeypatch.setattr(settings, "RATE_LIMIT_PER_MINUTE", 3)

    async def call_next(_):
        return JSONResponse({"ok": True})

    req = _fake_request("203.0.113.9")

    async def _exercise():
        for _ in range(3):
            resp = await rate_limit_middleware(req, call_next)
            assert resp.status_code == 200

        resp = await rate_limit_middleware(req, call_next)
        assert resp.status_code == 429
        assert resp.headers["X-RateLimit-Remaining"] == "0"

    asyncio.run(_exercise())
    limiter.store.clear()


def test_invalid_bearer_token_falls_back_to_ip_key(reset_trusted_proxies, monkeypatch) -> None:
    limiter.store.clear()
    _trusted_proxy_networks[:] = []

    async def call_next(_):
        return JSONResponse({"ok": True})

    req = _fake_request("198.51.100.7", {"Authorization": "Bearer not-a-jwt"})
    resp = asyncio.run(rate_limit_middleware(req, call_next))

    assert resp.status_code == 200
    assert "ip:198.51.100.7" in limiter.store
    limiter.store.clear()
