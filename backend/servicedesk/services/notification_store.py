"""Per-recipient persistence for in-app notifications."""

from __future__ import annotations

from enum import Enum
from typing import Any
from uuid import UUID

from prometheus_client import Counter
from sqlalchemy import func
from sqlalchemy.orm import Session

from .. import models

# purpose: own every read and write of notification rows, always scoped to one recipient
# status: active

NOTIFICATIONS_CREATED = Counter(
    "notifications_created_total", "Notification rows written", ["kind"]
)


class NotificationKind(str, Enum):
    CASE_CREATED = "CASE_CREATED"
    CASE_UPDATED = "CASE_UPDATED"
    CASE_COMPLETED = "CASE_COMPLETED"
    CASE_ASSIGNED = "CASE_ASSIGNED"
    SYSTEM_ALERT = "SYSTEM_ALERT"


class NotificationNotFound(LookupError):
    """Raised when a notification id is unknown or belongs to another recipient."""


class NotificationStore:
    def __init__(self, db: Session):
        self.db = db

    def create(
        self,
        recipient_id: UUID,
        kind: NotificationKind,
        payload: dict[str, Any],
    ) -> models.Notification:
        """Stage a notification row; the caller owns the commit."""

        notification = models.Notification(
            user_id=recipient_id,
            kind=NotificationKind(kind).value,
            title=payload["title"],
            message=payload["message"],
            case_id=payload.get("case_id"),
            case_type=payload.get("case_type"),
            meta=dict(payload.get("meta") or {}),
        )
        self.db.add(notification)
        NOTIFICATIONS_CREATED.labels(notification.kind).inc()
        return notification

    def _scoped(self, recipient_id: UUID):
        return self.db.query(models.Notification).filter(
            models.Notification.user_id == recipient_id
        )

    def get(self, notification_id: UUID, recipient_id: UUID) -> models.Notification:
        notification = (
            self._scoped(recipient_id)
            .filter(models.Notification.id == notification_id)
            .first()
        )
        if notification is None:
            raise NotificationNotFound(str(notification_id))
        return notification

    def count_unread(self, recipient_id: UUID) -> int:
        return (
            self._scoped(recipient_id)
            .filter(models.Notification.is_read.is_(False))
            .count()
        )

    def list_for(
        self,
        recipient_id: UUID,
        *,
        is_read: bool | None = None,
        kind: str | None = None,
        page: int = 1,
        limit: int = 10,
    ) -> tuple[list[models.Notification], int]:
        query = self._scoped(recipient_id)
        if is_read is not None:
            query = query.filter(models.Notification.is_read.is_(is_read))
        if kind:
            query = query.filter(models.Notification.kind == kind)
        total = query.count()
        rows = (
            query.order_by(models.Notification.created_at.desc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return rows, total

    def mark_read(self, notification_id: UUID, recipient_id: UUID) -> models.Notification:
        notification = self.get(notification_id, recipient_id)
        notification.is_read = True
        self.db.commit()
        self.db.refresh(notification)
        return notification

    def mark_all_read(self, recipient_id: UUID) -> int:
        updated = (
            self._scoped(recipient_id)
            .filter(models.Notification.is_read.is_(False))
            .update({models.Notification.is_read: True}, synchronize_session=False)
        )
        self.db.commit()
        return updated

    def delete(self, notification_id: UUID, recipient_id: UUID) -> None:
        notification = self.get(notification_id, recipient_id)
        self.db.delete(notification)
        self.db.commit()

    def stats(self, recipient_id: UUID) -> dict[str, Any]:
        rows = (
            self._scoped(recipient_id)
            .with_entities(
                models.Notification.kind,
                models.Notification.is_read,
                func.count(models.Notification.id),
            )
            .group_by(models.Notification.kind, models.Notification.is_read)
            .all()
        )
        stats: dict[str, Any] = {
            "total": 0,
            "unread": 0,
            "by_kind": {kind.value: 0 for kind in NotificationKind},
        }
        for kind, is_read, count in rows:
            stats["total"] += count
            if not is_read:
                stats["unread"] += count
            stats["by_kind"][kind] = stats["by_kind"].get(kind, 0) + count
        return stats
