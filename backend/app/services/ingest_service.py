from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from backend.app import config
from backend.app.alerts import (
    AlertMutation,
    InvoiceFacts,
    ReceiptFacts,
    ScopeFacts,
    VoiceLogFacts,
    evaluate_invoice,
    evaluate_receipt,
    evaluate_scope,
    evaluate_voice_log,
)
from backend.app.domain.errors import NotFound, ValidationFailure
from backend.app.models import (
    ApprovalRequest,
    Invoice,
    InvoiceLineItem,
    Project,
    Receipt,
    User,
    VoiceLog,
    utcnow,
)
from backend.app.services import alert_service, billing_service


logger = logging.getLogger(__name__)

INVOICE_STATES = ("draft", "sent", "paid")

# alert type billed by a line item with this source_type
_LINE_SOURCE_ALERTS = {
    "RECEIPT": "RECEIPT_UNBILLED",
    "SCOPE": "SCOPE_APPROVED_NO_INVOICE",
    "TRANSCRIPT": "VOICE_LOG_NO_INVOICE",
}


@dataclass(frozen=True)
class IngestOutcome:
    opened: int = 0
    fixed: int = 0
    skipped_reason: Optional[str] = None


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _owned(row, entity: str, entity_id: str, user_id: Optional[str]):
    if not row or (user_id is not None and row.user_id != user_id):
        raise NotFound(entity, entity_id)
    return row


def user_is_eligible(db: Session, user_id: str) -> bool:
    if not config.alerts_paid_plans_only():
        return True
    user = db.get(User, user_id)
    return bool(user and (user.current_plan or "").lower() in config.PAID_PLANS)


def _client_for_project(db: Session, project_id: Optional[str]) -> tuple[Optional[str], Optional[str]]:
    project = db.get(Project, project_id) if project_id else None
    if not project:
        return None, None
    return project.client_name, project.client_email


def apply_mutation(
    db: Session,
    *,
    user_id: str,
    mutation: Optional[AlertMutation],
    project_id: Optional[str] = None,
    client_name: Optional[str] = None,
    client_email: Optional[str] = None,
    currency: str = "USD",
    now: Optional[datetime] = None,
) -> IngestOutcome:
    if mutation is None:
        return IngestOutcome()
    if mutation.op == "fix":
        fixed = alert_service.fix_alerts_for_source(
            db,
            user_id=user_id,
            alert_type=mutation.alert_type,
            source_id=mutation.source_id,
            trigger=mutation.trigger,
            now=now,
        )
        return IngestOutcome(fixed=fixed)

    # closing stays available to everyone; opening is a paid feature
    if not user_is_eligible(db, user_id):
        return IngestOutcome(skipped_reason="plan_not_eligible")
    if client_name is None and client_email is None:
        client_name, client_email = _client_for_project(db, project_id)
    alert = alert_service.open_alert(
        db,
        user_id=user_id,
        mutation=mutation,
        client_name=client_name,
        client_email=client_email,
        currency=currency,
        now=now,
    )
    if alert is None:
        return IngestOutcome(skipped_reason="already_open")
    return IngestOutcome(opened=1)


def on_receipt_created(
    db: Session,
    receipt_id: str,
    *,
    user_id: Optional[str] = None,
    trigger: str = "receipt_created",
) -> IngestOutcome:
    receipt = _owned(db.get(Receipt, receipt_id), "receipt", receipt_id, user_id)
    facts = ReceiptFacts(
        receipt_id=receipt.id,
        billable=bool(receipt.billable),
        linked_invoice_id=receipt.linked_invoice_id,
        total_cents=receipt.total_cents,
    )
    return apply_mutation(
        db,
        user_id=receipt.user_id,
        mutation=evaluate_receipt(facts, trigger=trigger),
        project_id=receipt.project_id,
        currency=receipt.currency,
    )


def _scope_invoiced(db: Session, scope: ApprovalRequest) -> bool:
    if scope.invoice_line_item_id:
        return True
    return billing_service.find_line_for_source(db, source_type="SCOPE", source_id=scope.id) is not None


def on_scope_approved(
    db: Session,
    scope_id: str,
    *,
    user_id: Optional[str] = None,
    trigger: str = "scope_approved",
) -> IngestOutcome:
    scope = _owned(db.get(ApprovalRequest, scope_id), "approval", scope_id, user_id)
    facts = ScopeFacts(
        scope_id=scope.id,
        status=scope.status,
        estimated_cost_cents=scope.estimated_cost_cents,
        invoiced=_scope_invoiced(db, scope),
    )
    client_name, _ = _client_for_project(db, scope.project_id)
    return apply_mutation(
        db,
        user_id=scope.user_id,
        mutation=evaluate_scope(facts, trigger=trigger),
        client_name=client_name,
        client_email=scope.client_email,
    )


def on_voice_log_created(
    db: Session,
    voice_log_id: str,
    *,
    user_id: Optional[str] = None,
    trigger: str = "voice_log_created",
) -> IngestOutcome:
    log = _owned(db.get(VoiceLog, voice_log_id), "voice_log", voice_log_id, user_id)
    facts = VoiceLogFacts(
        voice_log_id=log.id,
        estimated_amount_cents=log.estimated_amount_cents,
        invoiced=billing_service.find_line_for_source(db, source_type="TRANSCRIPT", source_id=log.id) is not None,
    )
    return apply_mutation(
        db,
        user_id=log.user_id,
        mutation=evaluate_voice_log(facts, trigger=trigger),
        project_id=log.project_id,
    )


def invoice_facts(invoice: Invoice) -> InvoiceFacts:
    return InvoiceFacts(
        invoice_id=invoice.id,
        status=invoice.status,
        created_at=_as_utc(invoice.created_at),
        total_cents=invoice.total_cents,
    )


def on_invoice_state_changed(
    db: Session,
    invoice_id: str,
    new_state: str,
    *,
    user_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> IngestOutcome:
    if new_state not in INVOICE_STATES:
        raise ValidationFailure(f"unknown invoice state: {new_state}")
    invoice = _owned(db.get(Invoice, invoice_id), "invoice", invoice_id, user_id)
    if invoice.status != new_state:
        # stale or reordered delivery; the stored state is authoritative
        logger.warning(
            "invoice %s state event %s does not match stored state %s", invoice_id, new_state, invoice.status
        )

    current = _as_utc(now or utcnow())
    outcome = apply_mutation(
        db,
        user_id=invoice.user_id,
        mutation=evaluate_invoice(
            invoice_facts(invoice),
            now=current,
            threshold=timedelta(hours=config.invoice_not_sent_hours()),
            trigger=f"invoice_{invoice.status}",
        ),
        project_id=invoice.project_id,
        client_name=invoice.client_name,
        client_email=invoice.client_email,
        currency=invoice.currency,
        now=now,
    )

    # sources billed on this invoice no longer count as unbilled
    fixed = outcome.fixed
    lines = db.execute(
        select(InvoiceLineItem.source_type, InvoiceLineItem.source_id).where(
            InvoiceLineItem.invoice_id == invoice.id,
            InvoiceLineItem.source_id.is_not(None),
        )
    ).all()
    for source_type, source_id in lines:
        alert_type = _LINE_SOURCE_ALERTS.get(source_type or "")
        if not alert_type:
            continue
        fixed += alert_service.fix_alerts_for_source(
            db,
            user_id=invoice.user_id,
            alert_type=alert_type,
            source_id=source_id,
            trigger=f"invoice_{invoice.status}",
            now=now,
        )
    return IngestOutcome(opened=outcome.opened, fixed=fixed, skipped_reason=outcome.skipped_reason)
