from typing import Any, Dict, List

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..auth import get_current_user
from ..db import get_db
from ..models import User
from ..services.assistant_config import assistant_cache

router = APIRouter(prefix="/assistants", tags=["assistants"])


@router.get("")
def list_assistants(db: Session = Depends(get_db), _: User = Depends(get_current_user)) -> List[Dict[str, Any]]:
    return assistant_cache.get(db)
