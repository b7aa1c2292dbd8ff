from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ..database import get_db
from ..auth import get_current_user
from ..rbac import ensure_case_actor
from ..services import case_lifecycle
from ..services.case_lifecycle import CaseStatus, CaseVariant, TransitionError, TransitionResult
from ..services.notification_broker import NotificationBroker, get_broker
from .. import models, schemas, audit

router = APIRouter(prefix="/api/cases", tags=["cases"])

_CASE_FIELDS = (
    "id",
    "title",
    "description",
    "status",
    "created_at",
    "in_progress_at",
    "end_date",
    "reporter_id",
    "handler_id",
)


def _variant_or_404(case_type: str) -> CaseVariant:
    variant = case_lifecycle.get_variant(case_type)
    if variant is None:
        raise HTTPException(status_code=404, detail="Unknown case type")
    return variant


def _case_out(variant: CaseVariant, case: models.CaseLifecycleMixin) -> schemas.CaseOut:
    data = {name: getattr(case, name) for name in _CASE_FIELDS}
    return schemas.CaseOut(
        case_type=variant.slug, detail=getattr(case, variant.detail_field), **data
    )


def _load_case(
    db: Session, variant: CaseVariant, case_id: UUID, user: models.User
) -> models.CaseLifecycleMixin:
    case = variant.find_by_id(db, case_id)
    if case is None:
        raise HTTPException(status_code=404, detail=f"{variant.label} not found")
    ensure_case_actor(user, case)
    return case


def _raise_for(result: TransitionResult, variant: CaseVariant) -> None:
    if result.ok:
        return
    if result.error is TransitionError.NOT_FOUND:
        raise HTTPException(status_code=404, detail=f"{variant.label} not found")
    raise HTTPException(
        status_code=400,
        detail={"error": result.error.value, "reason": result.reason},
    )


@router.post("/{case_type}", response_model=schemas.CaseOut, status_code=201)
async def create_case(
    case_type: str,
    payload: schemas.CaseCreate,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
    broker: NotificationBroker = Depends(get_broker),
):
    variant = _variant_or_404(case_type)
    if payload.handler_id and db.get(models.User, payload.handler_id) is None:
        raise HTTPException(status_code=400, detail="Unknown handler")
    case = variant.model(
        title=payload.title,
        description=payload.description,
        status=CaseStatus.RECEIVED.value,
        reporter_id=user.id,
        handler_id=payload.handler_id,
    )
    if payload.detail is not None:
        setattr(case, variant.detail_field, payload.detail)
    db.add(case)
    db.commit()
    db.refresh(case)
    audit.log_action(db, user.id, "case_created", variant.slug, case.id)
    await broker.on_case_created(case, user)
    return _case_out(variant, case)


@router.get("/{case_type}/{case_id}", response_model=schemas.CaseOut)
async def get_case(
    case_type: str,
    case_id: UUID,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
):
    variant = _variant_or_404(case_type)
    case = _load_case(db, variant, case_id, user)
    return _case_out(variant, case)


@router.put("/{case_type}/{case_id}/in-progress", response_model=schemas.CaseOut)
async def set_in_progress(
    case_type: str,
    case_id: UUID,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
    broker: NotificationBroker = Depends(get_broker),
):
    variant = _variant_or_404(case_type)
    _load_case(db, variant, case_id, user)
    result = case_lifecycle.advance_to_in_progress(db, variant, case_id, user)
    _raise_for(result, variant)
    await broker.on_case_started(result.case, user)
    return _case_out(variant, result.case)


@router.put("/{case_type}/{case_id}/close", response_model=schemas.CaseOut)
async def close_case(
    case_type: str,
    case_id: UUID,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
    broker: NotificationBroker = Depends(get_broker),
):
    variant = _variant_or_404(case_type)
    _load_case(db, variant, case_id, user)
    result = case_lifecycle.complete(db, variant, case_id, user)
    _raise_for(result, variant)
    await broker.on_case_closed(result.case, user)
    return _case_out(variant, result.case)
