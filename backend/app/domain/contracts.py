from __future__ import annotations

from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter


AlertType = Literal[
    "RECEIPT_UNBILLED",
    "SCOPE_APPROVED_NO_INVOICE",
    "VOICE_LOG_NO_INVOICE",
    "INVOICE_NOT_SENT",
]
AlertStatus = Literal["open", "fixed", "resolved"]
ResolveReason = Literal["included_in_contract", "warranty", "personal", "customer_refused", "other"]
Channel = Literal["email", "sms", "whatsapp"]
InvoiceState = Literal["draft", "sent", "paid"]


# -------------------------
# Fix actions (closed per alert type)
# -------------------------

class AttachToInvoiceAction(BaseModel):
    kind: Literal["attach_to_invoice"] = "attach_to_invoice"
    target_invoice_id: str


class CreateInvoiceAction(BaseModel):
    kind: Literal["create_invoice"] = "create_invoice"
    client_name: Optional[str] = None
    client_email: Optional[str] = None


class SendInvoiceAction(BaseModel):
    kind: Literal["send_invoice"] = "send_invoice"
    channel: Channel = "email"


FixAction = Annotated[
    Union[AttachToInvoiceAction, CreateInvoiceAction, SendInvoiceAction],
    Field(discriminator="kind"),
]

FIX_ACTIONS_BY_TYPE: dict[str, frozenset[str]] = {
    "RECEIPT_UNBILLED": frozenset({"attach_to_invoice", "create_invoice"}),
    "SCOPE_APPROVED_NO_INVOICE": frozenset({"attach_to_invoice", "create_invoice"}),
    "VOICE_LOG_NO_INVOICE": frozenset({"attach_to_invoice", "create_invoice"}),
    "INVOICE_NOT_SENT": frozenset({"send_invoice"}),
}


# -------------------------
# Alert event metadata
# -------------------------

class AlertCreatedMeta(BaseModel):
    kind: Literal["created"] = "created"
    trigger: str
    estimated_amount_cents: int
    confidence: int


class AlertFixedMeta(BaseModel):
    kind: Literal["fixed"] = "fixed"
    # user_action: contractor ran a fix; precondition_cleared: a domain event made it moot
    via: Literal["user_action", "precondition_cleared"]
    action: Optional[str] = None
    invoice_id: Optional[str] = None
    trigger: Optional[str] = None


class AlertResolvedMeta(BaseModel):
    kind: Literal["resolved"] = "resolved"
    reason: ResolveReason
    note: Optional[str] = None


AlertEventMetadata = Annotated[
    Union[AlertCreatedMeta, AlertFixedMeta, AlertResolvedMeta],
    Field(discriminator="kind"),
]

alert_event_metadata_adapter: TypeAdapter = TypeAdapter(AlertEventMetadata)


# -------------------------
# Inbound domain events
# -------------------------

class ReceiptCreatedEvent(BaseModel):
    receipt_id: str


class ScopeApprovedEvent(BaseModel):
    scope_id: str


class InvoiceStateChangedEvent(BaseModel):
    invoice_id: str
    new_state: InvoiceState


class VoiceLogCreatedEvent(BaseModel):
    voice_log_id: str
