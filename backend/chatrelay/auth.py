# SPDX-License-Identifier: Apache-2.0

import time
import uuid
from typing import Any, Optional

from fastapi import Depends, Header, HTTPException, status
from jose import JWTError, jwt
from sqlalchemy.orm import Session

from .config import settings
from .db import get_db
from .models import User
from .telemetry import bind_user_context, log_json

ALGORITHM = "HS256"


def _now() -> int:
    return int(time.time())


def create_access_token(*, user_id: int) -> str:
    """
    Create a short-lived access token; only the user id is carried (in 'sub').
    """
    iat = _now()
    payload = {
        "sub": str(user_id),
        "iss": settings.JWT_ISSUER,
        "aud": settings.JWT_AUDIENCE,
        "iat": iat,
        "exp": iat + settings.ACCESS_TOKEN_EXPIRE_MINUTES * 60,
        "jti": str(uuid.uuid4()),
    }
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=ALGORITHM)


def decode_token(token: str) -> dict[str, Any]:
    return jwt.decode(
        token,
        settings.JWT_SECRET,
        algorithms=[ALGORITHM],
        audience=settings.JWT_AUDIENCE,
        issuer=settings.JWT_ISSUER,
        options={"verify_aud": True, "verify_signature": True, "verify_exp": True},
    )


def get_authorization(authorization: Optional[str] = Header(None)) -> str:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing bearer token")
    return authorization.split(" ", 1)[1]


def get_current_user(db: Session = Depends(get_db), token: str = Depends(get_authorization)) -> User:
    try:
        payload = decode_token(token)
        sub = payload.get("sub")
        if not isinstance(sub, str) or not sub.strip():
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token payload")
        user_id = int(sub)
    except (JWTError, ValueError, TypeError):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")

    user = db.get(User, user_id)
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found")
    if not user.is_active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="User is inactive")
    bind_user_context(user.id)
    return user


def require_admin(user: User = Depends(get_current_user)) -> User:
    if user.is_admin:
        return user
    log_json(30, "admin_access_denied", user_id=user.id)
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
