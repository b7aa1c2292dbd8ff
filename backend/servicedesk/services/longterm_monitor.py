"""Periodic sweep that flags cases left open past a threshold."""

from __future__ import annotations

import logging
import os
from datetime import datetime, timedelta, timezone
from uuid import UUID

from prometheus_client import Counter
from sqlalchemy import or_, update

from .case_lifecycle import CASE_VARIANTS, CaseStatus, CaseVariant, as_utc
from .notification_broker import NotificationBroker

# purpose: emit at most one long-term alert per case per cooldown window, even when
#   sweeps overlap across workers
# inputs: broker bound to a session, threshold and cooldown durations, sweep time
# outputs: count of alerts sent in the sweep
# status: active

logger = logging.getLogger(__name__)

LONGTERM_ALERTS = Counter("longterm_alerts_total", "Long-term case alerts sent")

DEFAULT_THRESHOLD = timedelta(hours=float(os.getenv("LONGTERM_THRESHOLD_HOURS", "18")))
DEFAULT_COOLDOWN = timedelta(hours=float(os.getenv("LONGTERM_COOLDOWN_HOURS", "24")))


class LongTermCaseMonitor:
    def __init__(
        self,
        broker: NotificationBroker,
        *,
        threshold: timedelta = DEFAULT_THRESHOLD,
        cooldown: timedelta = DEFAULT_COOLDOWN,
    ):
        self.broker = broker
        self.db = broker.db
        self.threshold = threshold
        self.cooldown = cooldown

    def _open_filters(self, variant: CaseVariant, age_cutoff: datetime, cooldown_cutoff: datetime):
        model = variant.model
        return (
            model.status != CaseStatus.COMPLETED.value,
            model.created_at < age_cutoff,
            or_(
                model.last_long_term_alert_at.is_(None),
                model.last_long_term_alert_at < cooldown_cutoff,
            ),
        )

    async def sweep(self, now: datetime | None = None) -> int:
        now = as_utc(now) or datetime.now(timezone.utc)
        age_cutoff = now - self.threshold
        cooldown_cutoff = now - self.cooldown
        sent = 0
        for variant in CASE_VARIANTS.values():
            filters = self._open_filters(variant, age_cutoff, cooldown_cutoff)
            candidate_ids = [
                row[0] for row in self.db.query(variant.model.id).filter(*filters).all()
            ]
            # end the read transaction so claims start from fresh state
            self.db.rollback()
            for case_id in candidate_ids:
                if await self._alert(variant, case_id, now, filters):
                    sent += 1
        if sent:
            LONGTERM_ALERTS.inc(sent)
        logger.info("Long-term sweep sent %d alert(s)", sent)
        return sent

    async def _alert(self, variant: CaseVariant, case_id: UUID, now: datetime, filters) -> bool:
        model = variant.model
        claim = (
            update(model)
            .where(model.id == case_id, *filters)
            .values(last_long_term_alert_at=now)
            .execution_options(synchronize_session=False)
        )
        if self.db.execute(claim).rowcount != 1:
            # another sweep claimed it, or the case closed in the meantime
            self.db.rollback()
            return False
        case = variant.find_by_id(self.db, case_id)
        self.db.refresh(case)
        if not self.broker.long_term_recipients(case):
            # keep the case unclaimed so the alert goes out once someone can receive it
            self.db.rollback()
            logger.warning(
                "No recipient for long-term alert on %s %s; left unclaimed", variant.slug, case_id
            )
            return False
        # the claim commits together with the notification rows
        try:
            await self.broker.on_long_term_alert(
                case, open_for=now - as_utc(case.created_at)
            )
        except Exception:
            self.db.rollback()
            raise
        logger.info("Sent long-term alert for %s %s", variant.slug, case_id)
        return True
