import os

import pytest


# Ensure required environment variables are present before app imports.
# Tests opt into dev login and disable CSRF explicitly; production defaults remain hardened.
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("JWT_SECRET", "x" * 64)
os.environ.setdefault("DATABASE_URL", "sqlite:///./test_chatrelay.db")
os.environ.setdefault("REQUIRE_CSRF_HEADER", "false")
os.environ.setdefault("ALLOW_DEV_LOGIN", "true")
os.environ.setdefault("RATE_LIMIT_PER_MINUTE", "100000")
os.environ.setdefault("CHAT_RATE_LIMIT_PER_MINUTE", "100000")
os.environ.setdefault("OPENAI_API_KEY", "sk-test-openai")
os.environ.setdefault("DEEPSEEK_API_KEY", "sk-test-deepseek")


@pytest.fixture(scope="session", autouse=True)
def _prepare_db():
    """Create database tables for tests using the app's SQLAlchemy metadata."""
    from chatrelay.db import Base, engine
    from chatrelay import models  # noqa: F401

    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture(autouse=True)
def _fresh_turn_state(monkeypatch):
    """Each test gets its own single-flight registry and an empty assistant cache."""
    from chatrelay.services import turns as turns_module
    from chatrelay.services.assistant_config import assistant_cache
    from chatrelay.services.turn_locks import TurnLockRegistry

    monkeypatch.setattr(turns_module, "turn_locks", TurnLockRegistry())
    assistant_cache.invalidate()
    yield


@pytest.fixture
def client():
    from fastapi.testclient import TestClient

    from chatrelay.main import app

    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def db_session():
    from chatrelay.db import SessionLocal

    session = SessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture
def session_factory():
    from chatrelay.db import get_session_factory

    return get_session_factory()
