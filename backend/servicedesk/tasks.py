import asyncio
import os
from celery import Celery
from celery.utils.log import get_task_logger

from .database import SessionLocal
from .pubsub import RedisBroadcaster
from .services.longterm_monitor import LongTermCaseMonitor
from .services.notification_broker import NotificationBroker
from .services.notification_store import NotificationStore

CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL", "memory://")
celery_app = Celery("tasks", broker=CELERY_BROKER_URL)
celery_app.conf.task_always_eager = (
    CELERY_BROKER_URL == "memory://" or os.getenv("TESTING") == "1"
)

_logger = get_task_logger(__name__)

celery_app.conf.beat_schedule = {
    "long-term-case-check": {
        "task": "servicedesk.tasks.check_long_term_cases",
        "schedule": float(os.getenv("LONGTERM_CHECK_INTERVAL_SECONDS", "1800")),
    },
}


async def _sweep(db) -> int:
    # the worker has no live connections; broadcasts reach the web process via redis
    broker = NotificationBroker(NotificationStore(db), RedisBroadcaster())
    return await LongTermCaseMonitor(broker).sweep()


@celery_app.task(name="servicedesk.tasks.check_long_term_cases")
def check_long_term_cases() -> int:
    db = SessionLocal()
    try:
        sent = asyncio.run(_sweep(db))
    finally:
        db.close()
    _logger.info("Long-term case check sent %d notification(s)", sent)
    return sent
