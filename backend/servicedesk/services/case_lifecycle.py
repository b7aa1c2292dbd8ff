"""Case status state machine shared by every case variant."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Protocol
from uuid import UUID

from prometheus_client import Counter
from sqlalchemy import update
from sqlalchemy.orm import Session

from .. import audit, models

# purpose: apply forward-only status transitions through conditional writes so that
#   concurrent requests and service instances agree on a single winner
# inputs: SQLAlchemy session, case variant slug, case id, acting user
# outputs: TransitionResult carrying the refreshed case or a typed TransitionError
# status: active

logger = logging.getLogger(__name__)

CASE_TRANSITIONS = Counter(
    "case_transitions_total",
    "Case status transition attempts",
    ["case_type", "target", "outcome"],
)

MAX_CAS_ATTEMPTS = 3


class CaseStatus(str, Enum):
    RECEIVED = "RECEIVED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"


# permitted source statuses for each target
_ALLOWED_SOURCES: dict[CaseStatus, tuple[CaseStatus, ...]] = {
    CaseStatus.IN_PROGRESS: (CaseStatus.RECEIVED,),
    CaseStatus.COMPLETED: (CaseStatus.RECEIVED, CaseStatus.IN_PROGRESS),
}


class TransitionError(str, Enum):
    ALREADY_TERMINAL = "AlreadyTerminal"
    INVALID_TRANSITION = "InvalidTransition"
    NOT_FOUND = "NotFound"


class StatusfulCase(Protocol):
    id: Any
    status: str
    created_at: datetime
    in_progress_at: datetime | None
    end_date: datetime | None


@dataclass(frozen=True)
class CaseVariant:
    """Adapter binding a URL slug to the table that stores that kind of case.

    ``detail_field`` names the one column that differs between variants.
    """

    slug: str
    label: str
    model: type[models.CaseLifecycleMixin]
    detail_field: str

    def find_by_id(self, db: Session, case_id: UUID) -> models.CaseLifecycleMixin | None:
        return db.get(self.model, case_id)

    def read_status(self, db: Session, case_id: UUID) -> CaseStatus | None:
        value = (
            db.query(self.model.status)
            .filter(self.model.id == case_id)
            .scalar()
        )
        return CaseStatus(value) if value is not None else None

    def write_status(
        self,
        db: Session,
        case_id: UUID,
        *,
        expected: CaseStatus,
        values: dict[str, Any],
    ) -> bool:
        """Conditionally update the row; ``False`` when the stored status moved on."""

        stmt = (
            update(self.model)
            .where(self.model.id == case_id, self.model.status == expected.value)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = db.execute(stmt)
        return result.rowcount == 1


CASE_VARIANTS: dict[str, CaseVariant] = {
    variant.slug: variant
    for variant in (
        CaseVariant("incidents", "Incident", models.Incident, "severity"),
        CaseVariant("warranties", "Warranty", models.Warranty, "serial_number"),
        CaseVariant("delivery-cases", "Delivery case", models.DeliveryCase, "customer_name"),
        CaseVariant("receiving-cases", "Receiving case", models.ReceivingCase, "supplier_name"),
        CaseVariant("deployment-cases", "Deployment case", models.DeploymentCase, "target_site"),
        CaseVariant("internal-cases", "Internal case", models.InternalCase, "requested_for"),
        CaseVariant("maintenance-cases", "Maintenance case", models.MaintenanceCase, "equipment_code"),
    )
}


def get_variant(slug: str) -> CaseVariant | None:
    return CASE_VARIANTS.get(slug)


def variant_for(case: models.CaseLifecycleMixin) -> CaseVariant:
    for variant in CASE_VARIANTS.values():
        if isinstance(case, variant.model):
            return variant
    raise LookupError(f"Unregistered case model {type(case).__name__}")


@dataclass(slots=True)
class TransitionResult:
    """Outcome of a status change; exactly one of ``case`` and ``error`` is set."""

    case: models.CaseLifecycleMixin | None = None
    error: TransitionError | None = None
    previous_status: CaseStatus | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def reason(self) -> str | None:
        if self.error is TransitionError.ALREADY_TERMINAL:
            return "Case is already completed"
        if self.error is TransitionError.INVALID_TRANSITION:
            if self.previous_status is None:
                return "Invalid status transition"
            return f"Case is already {self.previous_status.value}"
        if self.error is TransitionError.NOT_FOUND:
            return "Case not found"
        return None


def as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _timestamp_values(
    target: CaseStatus, case_created_at: datetime | None, now: datetime
) -> dict[str, Any]:
    created = as_utc(case_created_at)
    # clocks may disagree between the writer of created_at and this process
    stamp = max(now, created) if created is not None else now
    values: dict[str, Any] = {"status": target.value, "updated_at": stamp}
    if target is CaseStatus.IN_PROGRESS:
        values["in_progress_at"] = stamp
    elif target is CaseStatus.COMPLETED:
        values["end_date"] = stamp
    return values


def transition(
    db: Session,
    variant: CaseVariant,
    case_id: UUID,
    target: CaseStatus,
    actor: models.User | None = None,
    *,
    now: datetime | None = None,
) -> TransitionResult:
    """Move a case to ``target`` with compare-and-swap semantics.

    The stored status is read, validated against the allowed sources for ``target``
    and then written with ``WHERE status = <read value>``. When another writer wins
    in between, the status is re-read and validated again, so a racing second
    ``complete`` observes ``COMPLETED`` and is rejected with ``AlreadyTerminal``.
    Authorization is the caller's concern.
    """

    now = as_utc(now) or datetime.now(timezone.utc)
    allowed = _ALLOWED_SOURCES.get(target)
    if allowed is None:
        raise ValueError(f"{target.value} is not a transition target")

    for _ in range(MAX_CAS_ATTEMPTS):
        case = variant.find_by_id(db, case_id)
        if case is None:
            _count(variant, target, TransitionError.NOT_FOUND.value)
            return TransitionResult(error=TransitionError.NOT_FOUND)
        db.refresh(case)
        current = CaseStatus(case.status)
        if current is CaseStatus.COMPLETED:
            _count(variant, target, TransitionError.ALREADY_TERMINAL.value)
            return TransitionResult(
                error=TransitionError.ALREADY_TERMINAL, previous_status=current
            )
        if current not in allowed:
            _count(variant, target, TransitionError.INVALID_TRANSITION.value)
            return TransitionResult(
                error=TransitionError.INVALID_TRANSITION, previous_status=current
            )

        values = _timestamp_values(target, case.created_at, now)
        if variant.write_status(db, case_id, expected=current, values=values):
            if actor is not None:
                audit.log_action(
                    db,
                    actor.id,
                    f"case_{target.value.lower()}",
                    variant.slug,
                    case_id,
                    {"from": current.value, "to": target.value},
                    commit=False,
                )
            db.commit()
            db.refresh(case)
            _count(variant, target, "applied")
            logger.info(
                "%s %s moved %s -> %s", variant.label, case_id, current.value, target.value
            )
            return TransitionResult(case=case, previous_status=current)

        # lost the race; release the snapshot and look again
        db.rollback()
        logger.debug("Compare-and-swap miss on %s %s", variant.slug, case_id)

    final = variant.read_status(db, case_id)
    if final is CaseStatus.COMPLETED:
        _count(variant, target, TransitionError.ALREADY_TERMINAL.value)
        return TransitionResult(error=TransitionError.ALREADY_TERMINAL, previous_status=final)
    _count(variant, target, TransitionError.INVALID_TRANSITION.value)
    return TransitionResult(error=TransitionError.INVALID_TRANSITION, previous_status=final)


def advance_to_in_progress(
    db: Session,
    variant: CaseVariant,
    case_id: UUID,
    actor: models.User | None = None,
    *,
    now: datetime | None = None,
) -> TransitionResult:
    return transition(db, variant, case_id, CaseStatus.IN_PROGRESS, actor, now=now)


def complete(
    db: Session,
    variant: CaseVariant,
    case_id: UUID,
    actor: models.User | None = None,
    *,
    now: datetime | None = None,
) -> TransitionResult:
    return transition(db, variant, case_id, CaseStatus.COMPLETED, actor, now=now)


def _count(variant: CaseVariant, target: CaseStatus, outcome: str) -> None:
    CASE_TRANSITIONS.labels(variant.slug, target.value, outcome).inc()
