from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from backend.app.domain.errors import NotFound, ValidationFailure
from backend.app.models import Invoice, InvoiceLineItem, Project, Receipt, User, utcnow


logger = logging.getLogger(__name__)


def require_invoice(db: Session, invoice_id: str, *, user_id: Optional[str] = None) -> Invoice:
    invoice = db.get(Invoice, invoice_id)
    if not invoice or (user_id is not None and invoice.user_id != user_id):
        raise NotFound("invoice", invoice_id)
    return invoice


def _recompute_total(db: Session, invoice_id: str) -> None:
    total = db.execute(
        select(func.coalesce(func.sum(InvoiceLineItem.amount_cents), 0)).where(
            InvoiceLineItem.invoice_id == invoice_id
        )
    ).scalar_one()
    db.execute(
        update(Invoice)
        .where(Invoice.id == invoice_id)
        .values(total_cents=int(total or 0), updated_at=utcnow())
        .execution_options(synchronize_session="fetch")
    )


def find_line_for_source(db: Session, *, source_type: str, source_id: str) -> Optional[InvoiceLineItem]:
    return db.execute(
        select(InvoiceLineItem).where(
            InvoiceLineItem.source_type == source_type,
            InvoiceLineItem.source_id == source_id,
        )
    ).scalars().first()


def add_line_item(
    db: Session,
    *,
    invoice: Invoice,
    description: str,
    amount_cents: int,
    source_type: Optional[str] = None,
    source_id: Optional[str] = None,
) -> InvoiceLineItem:
    """Append a line. A source (receipt, scope, transcript) is billed on at most one line."""
    if invoice.status == "paid":
        raise ValidationFailure("cannot add lines to a paid invoice")
    if amount_cents < 0:
        raise ValidationFailure("amount_cents must be >= 0")

    if source_type and source_id:
        existing = find_line_for_source(db, source_type=source_type, source_id=source_id)
        if existing:
            return existing

    line = InvoiceLineItem(
        invoice_id=invoice.id,
        description=description,
        amount_cents=int(amount_cents),
        source_type=source_type,
        source_id=source_id,
    )
    try:
        with db.begin_nested():
            db.add(line)
            db.flush()
    except IntegrityError:
        existing = find_line_for_source(db, source_type=source_type, source_id=source_id)
        if existing is None:
            raise
        return existing

    _recompute_total(db, invoice.id)
    return line


def _open_draft_for_project(db: Session, project: Project) -> Invoice:
    draft = db.execute(
        select(Invoice)
        .where(Invoice.project_id == project.id, Invoice.status == "draft")
        .order_by(Invoice.created_at.desc(), Invoice.id.desc())
    ).scalars().first()
    if draft:
        return draft
    draft = Invoice(
        user_id=project.user_id,
        project_id=project.id,
        client_name=project.client_name,
        client_email=project.client_email,
        status="draft",
    )
    db.add(draft)
    db.flush()
    return draft


def create_invoice_line_item(
    db: Session,
    *,
    project_id: str,
    description: str,
    amount_cents: int,
    source_type: Optional[str] = None,
    source_id: Optional[str] = None,
) -> str:
    project = db.get(Project, project_id)
    if not project:
        raise NotFound("project", project_id)
    invoice = _open_draft_for_project(db, project)
    line = add_line_item(
        db,
        invoice=invoice,
        description=description,
        amount_cents=amount_cents,
        source_type=source_type,
        source_id=source_id,
    )
    return line.id


def create_invoice(
    db: Session,
    *,
    user_id: str,
    project_id: Optional[str],
    client_name: Optional[str] = None,
    client_email: Optional[str] = None,
    currency: str = "USD",
) -> Invoice:
    project = db.get(Project, project_id) if project_id else None
    invoice = Invoice(
        user_id=user_id,
        project_id=project.id if project else None,
        client_name=client_name or (project.client_name if project else None),
        client_email=client_email or (project.client_email if project else None),
        currency=currency,
        status="draft",
    )
    db.add(invoice)
    db.flush()
    return invoice


def link_receipt(db: Session, *, receipt_id: str, invoice_id: str) -> None:
    db.execute(
        update(Receipt)
        .where(Receipt.id == receipt_id)
        .values(linked_invoice_id=invoice_id)
        .execution_options(synchronize_session="fetch")
    )


def mark_invoice_sent(db: Session, *, invoice_id: str, now: Optional[datetime] = None) -> bool:
    """draft -> sent. Returns True only for the caller that moved it."""
    result = db.execute(
        update(Invoice)
        .where(Invoice.id == invoice_id, Invoice.status == "draft")
        .values(status="sent", sent_at=now or utcnow(), updated_at=now or utcnow())
        .execution_options(synchronize_session="fetch")
    )
    return result.rowcount == 1


def mark_invoice_paid(
    db: Session,
    *,
    invoice_id: str,
    provider_payment_id: Optional[str],
    now: Optional[datetime] = None,
) -> bool:
    """Set-paid, never increment. Replays after the first call change nothing."""
    stamp = now or utcnow()
    result = db.execute(
        update(Invoice)
        .where(Invoice.id == invoice_id, Invoice.status != "paid")
        .values(
            status="paid",
            paid_at=stamp,
            provider_payment_id=provider_payment_id,
            updated_at=stamp,
        )
        .execution_options(synchronize_session="fetch")
    )
    changed = result.rowcount == 1
    if changed:
        logger.info("invoice %s marked paid (payment=%s)", invoice_id, provider_payment_id)
    return changed


def apply_subscription(
    db: Session,
    *,
    user_id: str,
    provider: str,
    plan: Optional[str],
    status: str,
    external_id: Optional[str] = None,
    expires_at: Optional[datetime] = None,
) -> bool:
    user = db.get(User, user_id)
    if not user:
        raise NotFound("user", user_id)
    values: dict = {
        "subscription_status": status,
        "subscription_provider": provider,
        "updated_at": utcnow(),
    }
    if plan is not None:
        values["current_plan"] = plan
    if external_id is not None:
        values["subscription_external_id"] = external_id
    if expires_at is not None:
        values["subscription_expires_at"] = expires_at
    db.execute(
        update(User).where(User.id == user_id).values(**values).execution_options(synchronize_session="fetch")
    )
    logger.info("subscription for user %s set to plan=%s status=%s via %s", user_id, plan, status, provider)
    return True


def find_user_by_subscription(db: Session, *, provider: str, external_id: str) -> Optional[User]:
    return db.execute(
        select(User).where(
            User.subscription_provider == provider,
            User.subscription_external_id == external_id,
        )
    ).scalars().first()
