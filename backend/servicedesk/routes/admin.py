import os

from fastapi import APIRouter, Depends, Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from ..rbac import LONGTERM_CHECK_ROLE, require_role
from ..services.longterm_monitor import LongTermCaseMonitor
from ..services.notification_broker import NotificationBroker, get_broker
from .. import models, schemas

limiter = Limiter(key_func=get_remote_address)
testing = os.getenv("TESTING") == "1"

def rate_limit(limit: str):
    if testing:
        def wrapper(func):
            return func
        return wrapper
    return limiter.limit(limit)

router = APIRouter(prefix="/api/admin", tags=["admin"])


@router.post("/check-longterm", response_model=schemas.LongTermCheckOut)
@rate_limit("6/minute")
async def check_longterm(
    request: Request,
    user: models.User = Depends(require_role(LONGTERM_CHECK_ROLE)),
    broker: NotificationBroker = Depends(get_broker),
):
    """Run the long-term case sweep now instead of waiting for the scheduler."""
    sent = await LongTermCaseMonitor(broker).sweep()
    return schemas.LongTermCheckOut(notificationsSent=sent)
