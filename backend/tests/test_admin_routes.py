from chatrelay.models import Conversation, ConversationType, Message, TokenUsage, User
from chatrelay.services import turns as turns_module
from chatrelay.services.assistant_config import assistant_cache
from tests.fixtures.api import login
from tests.fixtures.factories import AssistantFactory
from tests.fixtures.fakes import FakeProviderClient


def test_non_admin_cannot_access_admin_routes(client, db_session):
    headers, _ = login(client, db_session, "admin-denied@example.com")
    assistant = AssistantFactory.create(db_session, name="Admin Denied")
    db_session.commit()

    assert client.post("/api/admin/conversations", json={"assistant_id": assistant.id}, headers=headers).status_code == 403
    assert client.post("/api/admin/assistants/cache/invalidate", headers=headers).status_code == 403


def test_admin_test_chat_never_touches_balance(client, db_session, monkeypatch):
    headers, admin_id = login(client, db_session, "admin-tester@example.com", tokens_balance=0, is_admin=True)
    assistant = AssistantFactory.create(db_session, name="Admin Target", is_active=True)
    db_session.commit()
    monkeypatch.setattr(
        "chatrelay.services.dispatcher.get_provider_client",
        lambda provider, knowledge_base=False: FakeProviderClient.reply("test ok", usage=(40, 8)),
    )

    resp = client.post("/api/admin/conversations", json={"assistant_id": assistant.id}, headers=headers)
    assert resp.status_code == 201, resp.text
    conv = resp.json()
    assert conv["type"] == ConversationType.ADMIN_TEST.value

    resp = client.post(f"/api/conversations/{conv['id']}/messages", json={"content": "ping"}, headers=headers)
    assert resp.status_code == 200, resp.text
    assert resp.json()["tokens_balance"] is None

    db_session.expire_all()
    assert db_session.get(User, admin_id).tokens_balance == 0
    ledger = db_session.query(TokenUsage).filter(TokenUsage.subject_id == admin_id).all()
    assert [(row.subject_type, row.tokens_input, row.tokens_output) for row in ledger] == [("admin", 40, 8)]


def test_admin_purge_removes_rows_and_releases_thread(client, db_session, monkeypatch):
    admin_headers, _ = login(client, db_session, "admin-purger@example.com", is_admin=True)
    user_headers, _ = login(client, db_session, "purge-victim@example.com")
    assistant = AssistantFactory.create(db_session, name="Purge Target")
    db_session.commit()
    monkeypatch.setattr(
        "chatrelay.services.dispatcher.get_provider_client",
        lambda provider, knowledge_base=False: FakeProviderClient.reply("bye"),
    )
    releaser = FakeProviderClient()
    monkeypatch.setattr("chatrelay.routes.conversations.get_thread_client", lambda: releaser)
    conv_id = client.post("/api/conversations", json={"assistant_id": assistant.id}, headers=user_headers).json()["id"]
    client.post(f"/api/conversations/{conv_id}/messages", json={"content": "hello"}, headers=user_headers)
    conversation = db_session.get(Conversation, conv_id)
    conversation.openai_thread_id = "thread_purge"
    db_session.commit()

    resp = client.delete(f"/api/admin/conversations/{conv_id}", headers=admin_headers)

    assert resp.status_code == 204
    db_session.expire_all()
    assert db_session.get(Conversation, conv_id) is None
    assert db_session.query(Message).filter(Message.conversation_id == conv_id).count() == 0
    assert releaser.deleted_threads == ["thread_purge"]
    assert client.delete(f"/api/admin/conversations/{conv_id}", headers=admin_headers).status_code == 404


def test_cache_invalidation_exposes_new_assistant(client, db_session):
    headers, _ = login(client, db_session, "admin-cache@example.com", is_admin=True)
    client.get("/api/assistants", headers=headers)
    AssistantFactory.create(db_session, name="Fresh Assistant")
    db_session.commit()

    assert "Fresh Assistant" not in [a["name"] for a in client.get("/api/assistants", headers=headers).json()]
    assert client.post("/api/admin/assistants/cache/invalidate", headers=headers).json() == {"ok": True}
    assert "Fresh Assistant" in [a["name"] for a in assistant_cache.get(db_session)]


def test_admin_purge_refuses_conversation_with_running_turn(client, db_session):
    admin_headers, _ = login(client, db_session, "admin-purge-busy@example.com", is_admin=True)
    user_headers, _ = login(client, db_session, "purge-busy-owner@example.com")
    assistant = AssistantFactory.create(db_session, name="Purge Busy")
    db_session.commit()
    conv_id = client.post("/api/conversations", json={"assistant_id": assistant.id}, headers=user_headers).json()["id"]
    held = turns_module.turn_locks.acquire(conv_id)

    try:
        resp = client.delete(f"/api/admin/conversations/{conv_id}", headers=admin_headers)
    finally:
        held.release()

    assert resp.status_code == 409
    assert resp.json()["code"] == "turn_in_progress"
    db_session.expire_all()
    assert db_session.get(Conversation, conv_id) is not None
