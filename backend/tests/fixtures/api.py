"""HTTP helpers shared by route tests."""

import json

from sqlalchemy.orm import Session

from chatrelay.models import User


def dev_token(client, email: str) -> str:
    resp = client.post("/api/auth/token", json={"email": email})
    assert resp.status_code == 200, resp.text
    return resp.json()["access_token"]


def auth_headers(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def login(client, db: Session, email: str, *, tokens_balance: int = 5000, is_admin: bool = False):
    """Dev-login a user, then commit its balance and role; returns (headers, user_id)."""
    headers = auth_headers(dev_token(client, email))
    user = db.query(User).filter(User.email == email.lower()).one()
    user.tokens_balance = tokens_balance
    user.is_admin = is_admin
    db.commit()
    return headers, user.id


def parse_sse(body: str) -> list[tuple[str, dict]]:
    """Split a text/event-stream body into (event, payload) pairs; comments are dropped."""
    events = []
    for block in body.split("\n\n"):
        name, data = None, []
        for line in block.splitlines():
            if line.startswith("event: "):
                name = line[len("event: "):]
            elif line.startswith("data: "):
                data.append(line[len("data: "):])
        if name:
            events.append((name, json.loads("\n".join(data))))
    return events
