from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from backend.app.api.deps import get_current_user, http_error
from backend.app.db import get_db
from backend.app.domain.contracts import AlertStatus, AlertType, FixAction, ResolveReason
from backend.app.domain.errors import EngineError, InvalidState
from backend.app.models import User
from backend.app.services import alert_service


router = APIRouter(prefix="/api/alerts", tags=["alerts"])


class AlertOut(BaseModel):
    id: str
    user_id: str
    type: AlertType
    source_type: str
    source_id: str
    status: AlertStatus
    reason_resolved: Optional[str]
    resolution_note: Optional[str]
    client_name: Optional[str]
    client_email: Optional[str]
    estimated_amount_cents: int
    currency: str
    confidence: int
    created_at: datetime
    updated_at: datetime
    fixed_at: Optional[datetime]
    resolved_at: Optional[datetime]

    class Config:
        from_attributes = True


class AlertSummaryOut(BaseModel):
    count: int
    total_cents: int
    severity: str
    by_type: dict[str, int]


class AlertListOut(BaseModel):
    alerts: list[AlertOut]
    summary: AlertSummaryOut


class AlertTransitionOut(BaseModel):
    alert: AlertOut
    already_handled: bool = False


class AlertFixIn(BaseModel):
    action: FixAction


class AlertResolveIn(BaseModel):
    reason: ResolveReason
    note: Optional[str] = None


class AlertEventOut(BaseModel):
    id: str
    alert_id: str
    actor: str
    action: str
    metadata_json: dict
    created_at: datetime

    class Config:
        from_attributes = True


class UnbilledReceiptOut(BaseModel):
    id: str
    project_id: Optional[str]
    vendor: Optional[str]
    total_cents: int
    currency: str
    created_at: datetime

    class Config:
        from_attributes = True


def _summary_out(db: Session, user_id: str) -> AlertSummaryOut:
    summary = alert_service.alert_summary(db, user_id=user_id)
    return AlertSummaryOut(
        count=summary.count,
        total_cents=summary.total_cents,
        severity=summary.severity,
        by_type=summary.by_type,
    )


def _already_handled(db: Session, user: User, exc: InvalidState) -> dict:
    db.rollback()
    alert = alert_service.require_alert(db, user_id=user.id, alert_id=exc.entity_id)
    return {"alert": AlertOut.model_validate(alert), "already_handled": True}


@router.get("", response_model=AlertListOut)
def get_alerts(
    status: Optional[str] = Query(default="open"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    rows = alert_service.list_alerts(db, user_id=user.id, status=status or None, limit=limit, offset=offset)
    return {"alerts": [AlertOut.model_validate(row) for row in rows], "summary": _summary_out(db, user.id)}


@router.get("/summary", response_model=AlertSummaryOut)
def get_alert_summary(
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return _summary_out(db, user.id)


@router.get("/unbilled-materials", response_model=list[UnbilledReceiptOut])
def get_unbilled_materials(
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return alert_service.list_unbilled_receipts(db, user_id=user.id)


@router.post("/{alert_id}/fix", response_model=AlertTransitionOut)
def fix_alert(
    alert_id: str,
    req: AlertFixIn,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    try:
        alert = alert_service.fix_alert(db, user_id=user.id, alert_id=alert_id, action=req.action)
    except InvalidState as exc:
        return _already_handled(db, user, exc)
    except EngineError as exc:
        db.rollback()
        raise http_error(exc) from exc
    db.commit()
    db.refresh(alert)
    return {"alert": AlertOut.model_validate(alert), "already_handled": False}


@router.post("/{alert_id}/resolve", response_model=AlertTransitionOut)
def resolve_alert(
    alert_id: str,
    req: AlertResolveIn,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    try:
        alert = alert_service.resolve_alert(
            db, user_id=user.id, alert_id=alert_id, reason=req.reason, note=req.note
        )
    except InvalidState as exc:
        return _already_handled(db, user, exc)
    except EngineError as exc:
        db.rollback()
        raise http_error(exc) from exc
    db.commit()
    db.refresh(alert)
    return {"alert": AlertOut.model_validate(alert), "already_handled": False}


@router.get("/{alert_id}/events", response_model=list[AlertEventOut])
def get_alert_events(
    alert_id: str,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    try:
        return alert_service.list_alert_events(db, user_id=user.id, alert_id=alert_id)
    except EngineError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
