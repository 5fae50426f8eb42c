from __future__ import annotations

from dataclasses import dataclass

from flask import g, request

from soko.extensions import db
from soko.models import User
from soko.utils.jwt_utils import decode_token, get_bearer_token

ROLES = ("buyer", "vendor", "admin", "system")


@dataclass(frozen=True)
class Actor:
    user_id: int | None
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    @property
    def is_system(self) -> bool:
        return self.role == "system"

    @property
    def is_privileged(self) -> bool:
        return self.role in ("admin", "system")

    def key(self) -> str:
        return f"{self.role}:{self.user_id if self.user_id is not None else '-'}"


SYSTEM_ACTOR = Actor(user_id=None, role="system")


def _role_for(uid: int, claimed: str) -> str:
    role = (claimed or "").strip().lower()
    if role in ROLES:
        return role
    try:
        u = db.session.get(User, uid)
    except Exception:
        db.session.rollback()
        u = None
    role = (getattr(u, "role", None) or "buyer").strip().lower()
    return role if role in ROLES and role != "system" else "buyer"


def current_actor() -> Actor | None:
    cached = getattr(g, "actor", None)
    if cached is not None:
        return cached
    token = get_bearer_token(request.headers.get("Authorization", ""))
    if not token:
        return None
    payload = decode_token(token)
    if not payload:
        return None
    try:
        uid = int(payload.get("sub"))
    except Exception:
        return None
    actor = Actor(user_id=uid, role=_role_for(uid, payload.get("role") or ""))
    g.actor = actor
    return actor
