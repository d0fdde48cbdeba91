import time

from jose import jwt

from chatrelay.auth import ALGORITHM, create_access_token, decode_token
from chatrelay.config import Settings, settings
from chatrelay.models import User
from chatrelay.routes.auth import build_router
from tests.fixtures.api import auth_headers, dev_token


def test_dev_login_token(client):
    """Use dev token flow in tests to avoid password/CSRF complexity."""
    tok = dev_token(client, "u@example.com")
    assert isinstance(tok, str) and len(tok) > 10
    assert decode_token(tok)["sub"]


def test_token_carries_only_user_id():
    claims = decode_token(create_access_token(user_id=42))
    assert claims["sub"] == "42"
    assert claims["iss"] == settings.JWT_ISSUER
    assert claims["aud"] == settings.JWT_AUDIENCE
    assert "email" not in claims


def test_expired_token_is_rejected(client):
    now = int(time.time())
    expired = jwt.encode(
        {"sub": "1", "iss": settings.JWT_ISSUER, "aud": settings.JWT_AUDIENCE, "iat": now - 120, "exp": now - 60},
        settings.JWT_SECRET,
        algorithm=ALGORITHM,
    )
    assert client.get("/api/conversations", headers=auth_headers(expired)).status_code == 401


def test_malformed_header_is_rejected(client):
    assert client.get("/api/conversations", headers={"Authorization": "Token abc"}).status_code == 401


def test_inactive_user_is_rejected(client, db_session):
    tok = dev_token(client, "inactive@example.com")
    user = db_session.query(User).filter(User.email == "inactive@example.com").one()
    user.is_active = False
    db_session.commit()

    resp = client.get("/api/conversations", headers=auth_headers(tok))
    assert resp.status_code == 403


def test_dev_login_route_absent_in_production():
    prod = Settings(
        ENVIRONMENT="production",
        DATABASE_URL="postgresql+psycopg2://relay:s3cure-pass@db:5432/relay",
        JWT_SECRET="x" * 64,
        REDIS_URL="redis://redis:6379/0",
        REQUIRE_CSRF_HEADER=True,
        ALLOW_DEV_LOGIN=False,
    )
    router = build_router(prod)
    assert not [route for route in router.routes if getattr(route, "path", "") == "/auth/token"]
