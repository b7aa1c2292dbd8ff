"""Translate case lifecycle events into notification rows and live broadcasts."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Protocol
from uuid import UUID

from fastapi import Depends
from sqlalchemy.orm import Session

from .. import models, notify, schemas
from ..database import get_db
from ..realtime import RealtimeGateway, get_gateway
from ..rbac import STAFF_ROOM, Role, user_room
from .case_lifecycle import CaseVariant, as_utc, variant_for
from .notification_store import NotificationKind, NotificationStore

# purpose: publish typed case events to independent subscribers; persistence
#   subscribers commit before any delivery subscriber runs
# inputs: case rows from the lifecycle machine, the monitor or case creation
# outputs: committed notification rows, refresh/notification broadcasts, staff chat posts
# status: active

logger = logging.getLogger(__name__)

LEAD_ROLES = (Role.ADMIN.name, Role.IT_LEAD.name)


class CaseEventKind(str, Enum):
    CREATED = "case_created"
    STARTED = "case_started"
    CLOSED = "case_closed"
    LONG_TERM = "long_term_alert"


class Broadcaster(Protocol):
    async def broadcast(
        self, room: str, event_kind: str, payload: dict[str, Any] | None = None
    ) -> int: ...


@dataclass(slots=True)
class Recipient:
    user_id: UUID
    kind: NotificationKind
    email: str | None = None


@dataclass(slots=True)
class CaseEvent:
    """A lifecycle event on one case plus whatever the subscribers attach to it."""

    kind: CaseEventKind
    variant: CaseVariant
    case_id: UUID
    case_title: str
    status: str
    title: str
    message: str
    recipients: list[Recipient]
    actor_id: UUID | None = None
    meta: dict[str, Any] = field(default_factory=dict)
    # filled by the persistence subscriber after commit
    notifications: list[dict[str, Any]] = field(default_factory=list)
    unread_counts: dict[UUID, int] = field(default_factory=dict)

    def snapshot(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "case_type": self.variant.slug,
            "case_id": str(self.case_id),
            "status": self.status,
            "title": self.case_title,
        }


Subscriber = Callable[[CaseEvent], Awaitable[None]]


class PersistNotifications:
    """Write one notification per recipient and commit before delivery starts."""

    def __init__(self, store: NotificationStore):
        self.store = store

    async def __call__(self, event: CaseEvent) -> None:
        db = self.store.db
        rows: list[models.Notification] = []
        try:
            for recipient in event.recipients:
                rows.append(
                    self.store.create(
                        recipient.user_id,
                        recipient.kind,
                        {
                            "title": event.title,
                            "message": event.message,
                            "case_id": event.case_id,
                            "case_type": event.variant.slug,
                            "meta": event.meta,
                        },
                    )
                )
            db.commit()
        except Exception:
            db.rollback()
            raise
        for row in rows:
            event.notifications.append(
                schemas.NotificationOut.model_validate(row).model_dump(mode="json")
            )
        for recipient_id in {recipient.user_id for recipient in event.recipients}:
            event.unread_counts[recipient_id] = self.store.count_unread(recipient_id)


class RealtimeDelivery:
    """Ping staff dashboards and push each new row to its recipient's room."""

    def __init__(self, broadcaster: Broadcaster):
        self.broadcaster = broadcaster

    async def __call__(self, event: CaseEvent) -> None:
        await self._send(STAFF_ROOM, "refresh_dashboard", event.snapshot())
        for notification in event.notifications:
            recipient_id = UUID(notification["user_id"])
            await self._send(
                user_room(recipient_id),
                "notification",
                {
                    "notification": notification,
                    "unread_count": event.unread_counts.get(recipient_id, 0),
                },
            )

    async def _send(self, room: str, event_kind: str, payload: dict[str, Any]) -> None:
        try:
            await self.broadcaster.broadcast(room, event_kind, payload)
        except Exception:
            logger.exception("Broadcast of %s to %s failed", event_kind, room)


class StaffChatDelivery:
    """Mirror new cases and long-running alerts to the staff chat and handler inbox."""

    async def __call__(self, event: CaseEvent) -> None:
        if event.kind not in (CaseEventKind.CREATED, CaseEventKind.LONG_TERM):
            return
        text = notify.format_case_message(
            event.title, event.variant.label, event.case_title, [event.message]
        )
        await asyncio.to_thread(notify.send_staff_chat, text)
        if event.kind is CaseEventKind.LONG_TERM:
            for recipient in event.recipients:
                if recipient.email:
                    await asyncio.to_thread(
                        notify.send_email, recipient.email, event.title, event.message
                    )


class NotificationBroker:
    def __init__(
        self,
        store: NotificationStore,
        broadcaster: Broadcaster | None = None,
        *,
        chat: bool = True,
    ):
        self.store = store
        self._persistence: list[Subscriber] = [PersistNotifications(store)]
        self._delivery: list[Subscriber] = []
        if broadcaster is not None:
            self._delivery.append(RealtimeDelivery(broadcaster))
        if chat:
            self._delivery.append(StaffChatDelivery())

    @property
    def db(self) -> Session:
        return self.store.db

    def subscribe(self, subscriber: Subscriber, *, persistence: bool = False) -> None:
        (self._persistence if persistence else self._delivery).append(subscriber)

    async def publish(self, event: CaseEvent) -> CaseEvent:
        for subscriber in self._persistence:
            await subscriber(event)
        for subscriber in self._delivery:
            try:
                await subscriber(event)
            except Exception:
                logger.exception(
                    "Delivery of %s for %s %s failed",
                    event.kind.value,
                    event.variant.slug,
                    event.case_id,
                )
        return event

    def _leads(self) -> list[models.User]:
        return (
            self.db.query(models.User)
            .filter(models.User.role.in_(LEAD_ROLES), models.User.is_active.is_(True))
            .all()
        )

    def _user(self, user_id: UUID | None) -> models.User | None:
        return self.db.get(models.User, user_id) if user_id else None

    @staticmethod
    def _recipients(
        users: list[tuple[models.User | None, NotificationKind]],
        exclude: UUID | None = None,
    ) -> list[Recipient]:
        seen: set[UUID] = set()
        recipients: list[Recipient] = []
        for user, kind in users:
            if user is None or user.id == exclude or user.id in seen:
                continue
            seen.add(user.id)
            recipients.append(Recipient(user.id, kind, user.email))
        return recipients

    def _event(
        self,
        kind: CaseEventKind,
        case: models.CaseLifecycleMixin,
        title: str,
        message: str,
        recipients: list[Recipient],
        actor_id: UUID | None,
        variant: CaseVariant | None = None,
    ) -> CaseEvent:
        variant = variant or variant_for(case)
        return CaseEvent(
            kind=kind,
            variant=variant,
            case_id=case.id,
            case_title=case.title,
            status=case.status,
            title=title,
            message=message,
            recipients=recipients,
            actor_id=actor_id,
            meta={"action_url": f"/cases/{variant.slug}/{case.id}", "status": case.status},
        )

    async def on_case_created(
        self, case: models.CaseLifecycleMixin, actor: models.User | None = None
    ) -> CaseEvent:
        variant = variant_for(case)
        reporter = self._user(case.reporter_id)
        handler = self._user(case.handler_id)
        actor_id = actor.id if actor else None
        # the assigned handler hears about it as an assignment, not a generic new case
        users = [(handler, NotificationKind.CASE_ASSIGNED)]
        users += [(lead, NotificationKind.CASE_CREATED) for lead in self._leads()]
        reporter_name = (reporter.full_name or reporter.email) if reporter else "Someone"
        event = self._event(
            CaseEventKind.CREATED,
            case,
            f"New {variant.label.lower()} created",
            f'{reporter_name} created "{case.title}"',
            self._recipients(users, exclude=actor_id),
            actor_id,
            variant,
        )
        return await self.publish(event)

    async def on_case_started(
        self, case: models.CaseLifecycleMixin, actor: models.User | None = None
    ) -> CaseEvent:
        variant = variant_for(case)
        actor_id = actor.id if actor else None
        event = self._event(
            CaseEventKind.STARTED,
            case,
            f"{variant.label} in progress",
            f'"{case.title}" is now being handled',
            self._recipients(
                [(self._user(case.reporter_id), NotificationKind.CASE_UPDATED)],
                exclude=actor_id,
            ),
            actor_id,
            variant,
        )
        return await self.publish(event)

    async def on_case_closed(
        self, case: models.CaseLifecycleMixin, actor: models.User | None = None
    ) -> CaseEvent:
        variant = variant_for(case)
        actor_id = actor.id if actor else None
        users = [
            (self._user(case.reporter_id), NotificationKind.CASE_COMPLETED),
            (self._user(case.handler_id), NotificationKind.CASE_COMPLETED),
        ]
        event = self._event(
            CaseEventKind.CLOSED,
            case,
            f"{variant.label} completed",
            f'"{case.title}" was closed',
            self._recipients(users, exclude=actor_id),
            actor_id,
            variant,
        )
        return await self.publish(event)

    def long_term_recipients(self, case: models.CaseLifecycleMixin) -> list[Recipient]:
        """The active handler, or every lead when the case has nobody working it."""

        handler = self._user(case.handler_id)
        if handler is not None and handler.is_active:
            users = [(handler, NotificationKind.SYSTEM_ALERT)]
        else:
            users = [(lead, NotificationKind.SYSTEM_ALERT) for lead in self._leads()]
        return self._recipients(users)

    async def on_long_term_alert(
        self,
        case: models.CaseLifecycleMixin,
        *,
        open_for: timedelta | None = None,
    ) -> CaseEvent:
        variant = variant_for(case)
        hours = int(open_for.total_seconds() // 3600) if open_for else None
        title = (
            f"{variant.label} open for {hours}h"
            if hours is not None
            else f"{variant.label} open too long"
        )
        created = as_utc(case.created_at)
        event = self._event(
            CaseEventKind.LONG_TERM,
            case,
            title,
            f'"{case.title}" has been {case.status} since {created:%Y-%m-%d %H:%M} UTC',
            self.long_term_recipients(case),
            None,
            variant,
        )
        return await self.publish(event)


def get_broker(
    db: Session = Depends(get_db),
    gateway: RealtimeGateway = Depends(get_gateway),
) -> NotificationBroker:
    return NotificationBroker(NotificationStore(db), gateway)
