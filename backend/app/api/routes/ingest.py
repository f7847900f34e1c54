from __future__ import annotations

from dataclasses import asdict

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from backend.app.api.deps import get_current_user, http_error
from backend.app.db import get_db
from backend.app.domain.contracts import (
    InvoiceStateChangedEvent,
    ReceiptCreatedEvent,
    ScopeApprovedEvent,
    VoiceLogCreatedEvent,
)
from backend.app.domain.errors import EngineError
from backend.app.models import User
from backend.app.services import ingest_service


router = APIRouter(prefix="/api/ingest", tags=["ingest"])


def _run(db: Session, fn, *args, **kwargs) -> dict:
    try:
        outcome = fn(db, *args, **kwargs)
    except EngineError as exc:
        db.rollback()
        raise http_error(exc) from exc
    db.commit()
    return asdict(outcome)


@router.post("/receipt-created")
def receipt_created(
    req: ReceiptCreatedEvent,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return _run(db, ingest_service.on_receipt_created, req.receipt_id, user_id=user.id)


@router.post("/scope-approved")
def scope_approved(
    req: ScopeApprovedEvent,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return _run(db, ingest_service.on_scope_approved, req.scope_id, user_id=user.id)


@router.post("/invoice-state-changed")
def invoice_state_changed(
    req: InvoiceStateChangedEvent,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return _run(db, ingest_service.on_invoice_state_changed, req.invoice_id, req.new_state, user_id=user.id)


@router.post("/voice-log-created")
def voice_log_created(
    req: VoiceLogCreatedEvent,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return _run(db, ingest_service.on_voice_log_created, req.voice_log_id, user_id=user.id)
