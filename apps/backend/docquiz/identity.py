from typing import Optional

from fastapi import Header
from pydantic import BaseModel

from .errors import Unauthorized


class CurrentUser(BaseModel):
    id: str


def current_user(x_user_id: Optional[str] = Header(default=None)) -> Optional[CurrentUser]:
    """Identity collaborator: the upstream gateway forwards the authenticated id."""
    uid = (x_user_id or "").strip()
    return CurrentUser(id=uid) if uid else None


def require_user(user: Optional[CurrentUser]) -> CurrentUser:
    if user is None or not user.id:
        raise Unauthorized("User session not found")
    return user
