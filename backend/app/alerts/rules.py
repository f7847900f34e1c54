from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Literal, Optional


MutationOp = Literal["open", "fix"]

CONFIDENCE = {
    "RECEIPT_UNBILLED": 90,
    "SCOPE_APPROVED_NO_INVOICE": 85,
    "VOICE_LOG_NO_INVOICE": 75,
    "INVOICE_NOT_SENT": 80,
}

SOURCE_TYPE = {
    "RECEIPT_UNBILLED": "RECEIPT",
    "SCOPE_APPROVED_NO_INVOICE": "SCOPE",
    "VOICE_LOG_NO_INVOICE": "TRANSCRIPT",
    "INVOICE_NOT_SENT": "INVOICE",
}


@dataclass(frozen=True)
class AlertMutation:
    op: MutationOp
    alert_type: str
    source_id: str
    trigger: str
    estimated_amount_cents: int = 0

    @property
    def source_type(self) -> str:
        return SOURCE_TYPE[self.alert_type]

    @property
    def confidence(self) -> int:
        return CONFIDENCE[self.alert_type]


@dataclass(frozen=True)
class ReceiptFacts:
    receipt_id: str
    billable: bool
    linked_invoice_id: Optional[str]
    total_cents: int


@dataclass(frozen=True)
class ScopeFacts:
    scope_id: str
    status: str
    estimated_cost_cents: int
    invoiced: bool


@dataclass(frozen=True)
class VoiceLogFacts:
    voice_log_id: str
    estimated_amount_cents: int
    invoiced: bool


@dataclass(frozen=True)
class InvoiceFacts:
    invoice_id: str
    status: str
    created_at: datetime
    total_cents: int


def _open(alert_type: str, source_id: str, trigger: str, amount: int) -> AlertMutation:
    return AlertMutation(
        op="open",
        alert_type=alert_type,
        source_id=source_id,
        trigger=trigger,
        estimated_amount_cents=max(int(amount or 0), 0),
    )


def _fix(alert_type: str, source_id: str, trigger: str) -> AlertMutation:
    return AlertMutation(op="fix", alert_type=alert_type, source_id=source_id, trigger=trigger)


def evaluate_receipt(facts: ReceiptFacts, *, trigger: str = "receipt_created") -> Optional[AlertMutation]:
    if facts.billable and not facts.linked_invoice_id:
        return _open("RECEIPT_UNBILLED", facts.receipt_id, trigger, facts.total_cents)
    return _fix("RECEIPT_UNBILLED", facts.receipt_id, trigger)


def evaluate_scope(facts: ScopeFacts, *, trigger: str = "scope_approved") -> Optional[AlertMutation]:
    if facts.invoiced:
        return _fix("SCOPE_APPROVED_NO_INVOICE", facts.scope_id, trigger)
    if facts.status != "approved":
        return None
    return _open("SCOPE_APPROVED_NO_INVOICE", facts.scope_id, trigger, facts.estimated_cost_cents)


def evaluate_voice_log(facts: VoiceLogFacts, *, trigger: str = "voice_log_created") -> Optional[AlertMutation]:
    if facts.invoiced:
        return _fix("VOICE_LOG_NO_INVOICE", facts.voice_log_id, trigger)
    if facts.estimated_amount_cents <= 0:
        return None
    return _open("VOICE_LOG_NO_INVOICE", facts.voice_log_id, trigger, facts.estimated_amount_cents)


def evaluate_invoice(
    facts: InvoiceFacts,
    *,
    now: datetime,
    threshold: timedelta,
    trigger: str = "invoice_state_changed",
) -> Optional[AlertMutation]:
    """Durational rule: a draft older than ``threshold`` is money not yet asked for."""
    if facts.status in {"sent", "paid"}:
        return _fix("INVOICE_NOT_SENT", facts.invoice_id, trigger)
    if facts.status != "draft":
        return None
    if facts.created_at > now - threshold:
        return None
    return _open("INVOICE_NOT_SENT", facts.invoice_id, trigger, facts.total_cents)
