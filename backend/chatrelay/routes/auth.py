from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..auth import create_access_token
from ..config import Settings, settings
from ..db import get_db
from ..models import User
from ..schemas import DevLoginIn, TokenOut


def build_router(current_settings: Settings | None = None) -> APIRouter:
    cfg = current_settings or settings
    router = APIRouter(prefix="/auth", tags=["auth"])

    if cfg.ALLOW_DEV_LOGIN and cfg.ENVIRONMENT != "production":

        @router.post("/token", response_model=TokenOut)
        def dev_login(body: DevLoginIn, db: Session = Depends(get_db)) -> TokenOut:
            """
            Dev-only login. NOT AVAILABLE IN PRODUCTION.
            Creates or gets a user by email without password verification.
            """
            email = body.email.lower().strip()
            user = db.query(User).filter(User.email == email).one_or_none()
            if not user:
                user = User(email=email, is_active=True, is_admin=False)
                db.add(user)
                db.commit()
                db.refresh(user)
            return TokenOut(access_token=create_access_token(user_id=user.id))

    return router


router = build_router()
