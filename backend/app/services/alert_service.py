from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Union

from pydantic import BaseModel
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from backend.app.alerts import AlertMutation, AlertSummary, summarize
from backend.app.domain.contracts import (
    FIX_ACTIONS_BY_TYPE,
    AlertCreatedMeta,
    AlertFixedMeta,
    AlertResolvedMeta,
    AttachToInvoiceAction,
    CreateInvoiceAction,
    SendInvoiceAction,
    alert_event_metadata_adapter,
)
from backend.app.domain.errors import InvalidState, NotFound, ValidationFailure
from backend.app.models import Alert, AlertEvent, ApprovalRequest, Project, Receipt, VoiceLog, utcnow
from backend.app.services import billing_service, notification_service


logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"
RESOLVE_REASONS = ("included_in_contract", "warranty", "personal", "customer_refused", "other")

FixActionInput = Union[AttachToInvoiceAction, CreateInvoiceAction, SendInvoiceAction]


@dataclass(frozen=True)
class _BillableSource:
    project_id: Optional[str]
    description: str
    amount_cents: int


def _append_event(db: Session, *, alert_id: str, actor: str, action: str, meta: BaseModel) -> AlertEvent:
    # round-trip through the tagged union so only known shapes are stored
    payload = alert_event_metadata_adapter.validate_python(meta.model_dump())
    row = AlertEvent(
        alert_id=alert_id,
        actor=actor,
        action=action,
        metadata_json=payload.model_dump(mode="json"),
        created_at=utcnow(),
    )
    db.add(row)
    db.flush()
    return row


def _current_status(db: Session, alert_id: str) -> str:
    status = db.execute(select(Alert.status).where(Alert.id == alert_id)).scalar_one_or_none()
    if status is None:
        raise NotFound("alert", alert_id)
    return status


def _transition_from_open(db: Session, alert_id: str, values: dict) -> bool:
    """Single conditional update; the caller won iff exactly one row moved."""
    result = db.execute(
        update(Alert)
        .where(Alert.id == alert_id, Alert.status == "open")
        .values(**values)
        .execution_options(synchronize_session="fetch")
    )
    return result.rowcount == 1


def require_alert(db: Session, *, user_id: str, alert_id: str) -> Alert:
    alert = db.get(Alert, alert_id)
    if not alert or alert.user_id != user_id:
        raise NotFound("alert", alert_id)
    return alert


def find_open_alert(db: Session, *, user_id: str, alert_type: str, source_id: str) -> Optional[Alert]:
    return db.execute(
        select(Alert).where(
            Alert.user_id == user_id,
            Alert.type == alert_type,
            Alert.source_id == source_id,
            Alert.status == "open",
        )
    ).scalars().first()


def open_alert(
    db: Session,
    *,
    user_id: str,
    mutation: AlertMutation,
    client_name: Optional[str] = None,
    client_email: Optional[str] = None,
    currency: str = "USD",
    now: Optional[datetime] = None,
) -> Optional[Alert]:
    """Open an alert unless one is already open for the same source. Returns None on duplicate."""
    if mutation.op != "open":
        raise ValueError("open_alert requires an open mutation")
    if find_open_alert(db, user_id=user_id, alert_type=mutation.alert_type, source_id=mutation.source_id):
        return None

    stamp = now or utcnow()
    alert = Alert(
        user_id=user_id,
        type=mutation.alert_type,
        source_type=mutation.source_type,
        source_id=mutation.source_id,
        status="open",
        client_name=client_name,
        client_email=client_email,
        estimated_amount_cents=mutation.estimated_amount_cents,
        currency=currency,
        confidence=mutation.confidence,
        created_at=stamp,
        updated_at=stamp,
    )
    try:
        with db.begin_nested():
            db.add(alert)
            db.flush()
    except IntegrityError:
        # partial unique index: a concurrent ingest opened it first
        logger.info("alert %s/%s already open for user %s", mutation.alert_type, mutation.source_id, user_id)
        return None

    _append_event(
        db,
        alert_id=alert.id,
        actor=SYSTEM_ACTOR,
        action="created",
        meta=AlertCreatedMeta(
            trigger=mutation.trigger,
            estimated_amount_cents=mutation.estimated_amount_cents,
            confidence=mutation.confidence,
        ),
    )
    logger.info("opened %s alert %s for source %s", alert.type, alert.id, alert.source_id)
    return alert


def fix_alerts_for_source(
    db: Session,
    *,
    user_id: str,
    alert_type: str,
    source_id: str,
    trigger: str,
    now: Optional[datetime] = None,
) -> int:
    """Close open alerts whose precondition no longer holds."""
    stamp = now or utcnow()
    ids = db.execute(
        select(Alert.id).where(
            Alert.user_id == user_id,
            Alert.type == alert_type,
            Alert.source_id == source_id,
            Alert.status == "open",
        )
    ).scalars().all()
    fixed = 0
    for alert_id in ids:
        if not _transition_from_open(db, alert_id, {"status": "fixed", "fixed_at": stamp, "updated_at": stamp}):
            continue
        _append_event(
            db,
            alert_id=alert_id,
            actor=SYSTEM_ACTOR,
            action="fixed",
            meta=AlertFixedMeta(via="precondition_cleared", trigger=trigger),
        )
        fixed += 1
    return fixed


def _billable_source(db: Session, alert: Alert) -> _BillableSource:
    if alert.type == "RECEIPT_UNBILLED":
        receipt = db.get(Receipt, alert.source_id)
        if not receipt:
            raise NotFound("receipt", alert.source_id)
        label = receipt.vendor or "Materials"
        return _BillableSource(receipt.project_id, f"{label} (receipt)", receipt.total_cents)
    if alert.type == "SCOPE_APPROVED_NO_INVOICE":
        scope = db.get(ApprovalRequest, alert.source_id)
        if not scope:
            raise NotFound("approval", alert.source_id)
        return _BillableSource(scope.project_id, scope.description, scope.estimated_cost_cents)
    if alert.type == "VOICE_LOG_NO_INVOICE":
        log = db.get(VoiceLog, alert.source_id)
        if not log:
            raise NotFound("voice_log", alert.source_id)
        text = (log.transcript or "Logged work").strip()
        return _BillableSource(log.project_id, text[:200], log.estimated_amount_cents)
    raise ValidationFailure(f"alert type {alert.type} has no billable source")


def _apply_fix_action(db: Session, alert: Alert, action: FixActionInput) -> tuple[Optional[str], bool]:
    """Run the side effect behind a fix. Returns the invoice it touched and whether it went out just now."""
    if isinstance(action, SendInvoiceAction):
        invoice = billing_service.require_invoice(db, alert.source_id, user_id=alert.user_id)
        return invoice.id, billing_service.mark_invoice_sent(db, invoice_id=invoice.id)

    source = _billable_source(db, alert)
    if isinstance(action, AttachToInvoiceAction):
        invoice = billing_service.require_invoice(db, action.target_invoice_id, user_id=alert.user_id)
    else:
        invoice = billing_service.create_invoice(
            db,
            user_id=alert.user_id,
            project_id=source.project_id,
            client_name=action.client_name or alert.client_name,
            client_email=action.client_email or alert.client_email,
            currency=alert.currency,
        )
    billing_service.add_line_item(
        db,
        invoice=invoice,
        description=source.description,
        amount_cents=source.amount_cents,
        source_type=alert.source_type,
        source_id=alert.source_id,
    )
    if alert.type == "RECEIPT_UNBILLED":
        billing_service.link_receipt(db, receipt_id=alert.source_id, invoice_id=invoice.id)
    return invoice.id, False


def fix_alert(
    db: Session,
    *,
    user_id: str,
    alert_id: str,
    action: FixActionInput,
    actor: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Alert:
    alert = require_alert(db, user_id=user_id, alert_id=alert_id)
    if alert.status != "open":
        raise InvalidState("alert", alert_id, alert.status)
    if action.kind not in FIX_ACTIONS_BY_TYPE.get(alert.type, frozenset()):
        raise ValidationFailure(f"fix action {action.kind} is not available for {alert.type}")

    stamp = now or utcnow()
    savepoint = db.begin_nested()
    try:
        invoice_id, newly_sent = _apply_fix_action(db, alert, action)
        won = _transition_from_open(db, alert_id, {"status": "fixed", "fixed_at": stamp, "updated_at": stamp})
    except Exception:
        savepoint.rollback()
        raise
    if not won:
        savepoint.rollback()
        raise InvalidState("alert", alert_id, _current_status(db, alert_id))
    savepoint.commit()

    _append_event(
        db,
        alert_id=alert_id,
        actor=actor or user_id,
        action="fixed",
        meta=AlertFixedMeta(via="user_action", action=action.kind, invoice_id=invoice_id),
    )
    if newly_sent:
        _notify_invoice_sent(db, invoice_id, action.channel)
    db.refresh(alert)
    return alert


def _notify_invoice_sent(db: Session, invoice_id: str, channel: str) -> None:
    invoice = billing_service.require_invoice(db, invoice_id)
    if channel == "email":
        recipient = invoice.client_email
    else:
        project = db.get(Project, invoice.project_id) if invoice.project_id else None
        recipient = project.client_phone if project else None
    if not recipient:
        logger.warning("invoice %s sent without a %s recipient", invoice_id, channel)
        return
    notification_service.send_notification(
        channel,
        recipient,
        "invoice_sent",
        {
            "client_name": invoice.client_name or "there",
            "amount": notification_service.format_cents(invoice.total_cents, invoice.currency),
        },
        idempotency_key=notification_service.idempotency_key("invoice", invoice.id, "sent"),
    )


def resolve_alert(
    db: Session,
    *,
    user_id: str,
    alert_id: str,
    reason: str,
    note: Optional[str] = None,
    actor: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Alert:
    if reason not in RESOLVE_REASONS:
        raise ValidationFailure(f"invalid resolve reason: {reason}")
    alert = require_alert(db, user_id=user_id, alert_id=alert_id)
    if alert.status != "open":
        raise InvalidState("alert", alert_id, alert.status)

    stamp = now or utcnow()
    won = _transition_from_open(
        db,
        alert_id,
        {
            "status": "resolved",
            "reason_resolved": reason,
            "resolution_note": note,
            "resolved_at": stamp,
            "updated_at": stamp,
        },
    )
    if not won:
        raise InvalidState("alert", alert_id, _current_status(db, alert_id))

    _append_event(
        db,
        alert_id=alert_id,
        actor=actor or user_id,
        action="resolved",
        meta=AlertResolvedMeta(reason=reason, note=note),
    )
    db.refresh(alert)
    return alert


def list_alerts(
    db: Session,
    *,
    user_id: str,
    status: Optional[str] = "open",
    limit: int = 50,
    offset: int = 0,
) -> list[Alert]:
    stmt = select(Alert).where(Alert.user_id == user_id)
    if status:
        stmt = stmt.where(Alert.status == status)
    stmt = stmt.order_by(Alert.created_at.desc(), Alert.id.asc()).limit(limit).offset(offset)
    return list(db.execute(stmt).scalars().all())


def alert_summary(db: Session, *, user_id: str) -> AlertSummary:
    rows = db.execute(select(Alert).where(Alert.user_id == user_id, Alert.status == "open")).scalars().all()
    return summarize(rows)


def list_alert_events(db: Session, *, user_id: str, alert_id: str) -> list[AlertEvent]:
    require_alert(db, user_id=user_id, alert_id=alert_id)
    return list(
        db.execute(
            select(AlertEvent)
            .where(AlertEvent.alert_id == alert_id)
            .order_by(AlertEvent.created_at.asc(), AlertEvent.id.asc())
        )
        .scalars()
        .all()
    )


def list_unbilled_receipts(db: Session, *, user_id: str) -> list[Receipt]:
    return list(
        db.execute(
            select(Receipt)
            .where(
                Receipt.user_id == user_id,
                Receipt.billable.is_(True),
                Receipt.linked_invoice_id.is_(None),
            )
            .order_by(Receipt.created_at.desc())
        )
        .scalars()
        .all()
    )
