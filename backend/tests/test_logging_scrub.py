import json
import logging

from chatrelay.errors import ProviderRejected
from chatrelay.providers.base import ContentDelta
from tests.fixtures.api import login, parse_sse
from tests.fixtures.factories import AssistantFactory
from tests.fixtures.fakes import FakeProviderClient


def _record_payload(record):
    if isinstance(record.msg, dict):
        return record.msg
    try:
        return json.loads(record.getMessage())
    except (TypeError, ValueError):
        return None


def test_request_headers_are_scrubbed(client, caplog):
    secret = "super-secret-token"
    with caplog.at_level(logging.INFO):
        response = client.get(
            "/health",
            headers={
                "Authorization": f"Bearer {secret}",
                "Cookie": "session=abc",
                "X-API-Key": "key-123",
            },
        )

    assert response.status_code in (200, 503)

    found = False
    for record in caplog.records:
        payload = _record_payload(record)
        if not isinstance(payload, dict) or payload.get("event") != "request_complete":
            continue
        found = True
        headers = payload.get("request_headers") or {}
        assert headers.get("authorization") == "[REDACTED]"
        assert headers.get("cookie") == "[REDACTED]"
        assert headers.get("x-api-key") == "[REDACTED]"
        assert secret not in json.dumps(headers)
    assert found
    assert secret not in caplog.text


def test_provider_errors_are_redacted(client, db_session, monkeypatch, caplog):
    assistant = AssistantFactory.create(db_session, name="Noisy")
    db_session.commit()
    headers, _ = login(client, db_session, "noisy@example.com")
    secret_prompt = "never log this prompt text"
    fake = FakeProviderClient([ContentDelta("Partial")], raise_after=ProviderRejected(f"model saw: {secret_prompt}"))
    monkeypatch.setattr("chatrelay.services.dispatcher.get_provider_client", lambda provider, knowledge_base=False: fake)
    conv_id = client.post("/api/conversations", json={"assistant_id": assistant.id}, headers=headers).json()["id"]

    with caplog.at_level(logging.INFO):
        response = client.post(
            f"/api/conversations/{conv_id}/messages/stream", json={"content": secret_prompt}, headers=headers
        )

    assert response.status_code == 200
    events = parse_sse(response.text)
    assert events[-1][0] == "error"
    assert secret_prompt not in events[-1][1]["message"]

    redaction_logged = False
    for record in caplog.records:
        payload = _record_payload(record)
        if not isinstance(payload, dict):
            continue
        if payload.get("event") == "relay_provider_exception":
            redaction_logged = True
            assert secret_prompt not in json.dumps(payload, default=str)
            assert payload.get("detail") == "[REDACTED]"
    assert redaction_logged
    assert secret_prompt not in caplog.text
