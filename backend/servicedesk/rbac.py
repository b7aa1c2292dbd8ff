from __future__ import annotations

from enum import IntEnum
from typing import Any

from fastapi import Depends, HTTPException

from . import models
from .auth import get_current_user

# purpose: centralize the staff role ladder and the request-boundary guards built on it
# status: active


class Role(IntEnum):
    """Ordered staff roles; a higher value carries every permission of the lower ones."""

    USER = 1
    IT_STAFF = 2
    IT_LEAD = 3
    ADMIN = 4


STAFF_ROOM = "admin_notifications"

# minimum role for status changes on cases the actor did not report
CASE_STAFF_ROLE = Role.IT_STAFF
LONGTERM_CHECK_ROLE = Role.IT_LEAD


def parse_role(value: Any) -> Role | None:
    """Return the ``Role`` for a member, name or ordinal, or ``None`` when unknown."""

    if value is None:
        return None
    if isinstance(value, Role):
        return value
    if isinstance(value, str):
        return Role.__members__.get(value.strip().upper())
    if isinstance(value, int) and not isinstance(value, bool):
        try:
            return Role(value)
        except ValueError:
            return None
    return None


def at_least(actual_role: Any, minimum_role: Role | str) -> bool:
    actual = parse_role(actual_role)
    minimum = parse_role(minimum_role)
    if actual is None or minimum is None:
        return False
    return actual >= minimum


def has_role(actual_role: Any, allowed: list[Role] | tuple[Role, ...]) -> bool:
    actual = parse_role(actual_role)
    return actual is not None and actual in allowed


def require_role(minimum_role: Role):
    """Build a dependency that resolves the caller and rejects roles below ``minimum_role``."""

    async def dependency(user: models.User = Depends(get_current_user)) -> models.User:
        if not at_least(user.role, minimum_role):
            raise HTTPException(status_code=403, detail="Forbidden")
        return user

    return dependency


def ensure_case_actor(
    user: models.User,
    case: models.CaseLifecycleMixin,
    minimum_role: Role = CASE_STAFF_ROLE,
) -> None:
    """Allow staff at ``minimum_role`` or above, or the case's own reporter; otherwise 403."""

    if at_least(user.role, minimum_role) or case.reporter_id == user.id:
        return
    raise HTTPException(status_code=403, detail="Not authorized")


def user_room(user_id: Any) -> str:
    return f"user_{user_id}"


def can_join_room(user: models.User, room: str) -> bool:
    """Decide whether a live connection for ``user`` may subscribe to ``room``."""

    if room == STAFF_ROOM:
        return at_least(user.role, Role.IT_STAFF)
    if room.startswith("user_"):
        return room == user_room(user.id)
    role = parse_role(room)
    if role is not None:
        return parse_role(user.role) == role
    return False
