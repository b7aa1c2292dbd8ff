import logging
import math
from uuid import UUID
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from ..database import get_db
from ..auth import get_current_user
from ..rbac import user_room
from ..realtime import RealtimeGateway, get_gateway
from ..services.notification_store import NotificationNotFound, NotificationStore
from .. import models, schemas

logger = logging.getLogger(__name__)


async def _publish_unread_count(
    gateway: RealtimeGateway, user: models.User, event_type: str, unread: int, payload: dict
) -> None:
    """Tell the user's open tabs that their badge changed."""
    try:
        await gateway.broadcast(
            user_room(user.id), event_type, {**payload, "unread_count": unread}
        )
    except Exception:
        logger.exception("Failed to publish %s for user %s", event_type, user.id)


router = APIRouter(prefix="/api/notifications", tags=["notifications"])


@router.get("/", response_model=schemas.NotificationPage)
async def list_notifications(
    is_read: Optional[bool] = Query(None, description="Filter by read status"),
    kind: Optional[str] = Query(None, description="Filter by notification kind"),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    rows, total = NotificationStore(db).list_for(
        user.id, is_read=is_read, kind=kind, page=page, limit=limit
    )
    return schemas.NotificationPage(
        notifications=[schemas.NotificationOut.model_validate(n) for n in rows],
        pagination=schemas.Pagination(
            page=page, limit=limit, total=total, pages=math.ceil(total / limit)
        ),
    )


@router.get("/unread-count", response_model=schemas.UnreadCountOut)
async def unread_count(
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    return schemas.UnreadCountOut(unreadCount=NotificationStore(db).count_unread(user.id))


@router.get("/stats", response_model=schemas.NotificationStatsOut)
async def get_notification_stats(
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    """Get notification statistics"""
    return NotificationStore(db).stats(user.id)


@router.post("/{notification_id}/read", response_model=schemas.NotificationOut)
async def mark_read(
    notification_id: UUID,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
    gateway: RealtimeGateway = Depends(get_gateway),
):
    store = NotificationStore(db)
    try:
        notif = store.mark_read(notification_id, user.id)
    except NotificationNotFound:
        raise HTTPException(status_code=404, detail="Notification not found")
    await _publish_unread_count(
        gateway, user, "notification_read", store.count_unread(user.id), {"id": str(notif.id)}
    )
    return notif


@router.post("/mark-all-read")
async def mark_all_read(
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
    gateway: RealtimeGateway = Depends(get_gateway),
):
    """Mark all unread notifications as read"""
    updated = NotificationStore(db).mark_all_read(user.id)
    if updated:
        await _publish_unread_count(gateway, user, "notification_read", 0, {"updated": updated})
    return {"message": "All notifications marked as read", "updated": updated}


@router.delete("/{notification_id}")
async def delete_notification(
    notification_id: UUID,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
    gateway: RealtimeGateway = Depends(get_gateway),
):
    """Delete a notification"""
    store = NotificationStore(db)
    try:
        store.delete(notification_id, user.id)
    except NotificationNotFound:
        raise HTTPException(status_code=404, detail="Notification not found")
    await _publish_unread_count(
        gateway,
        user,
        "notification_deleted",
        store.count_unread(user.id),
        {"id": str(notification_id)},
    )
    return {"message": "Notification deleted"}
