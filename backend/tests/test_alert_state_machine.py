from datetime import datetime, timedelta, timezone

import pytest

from backend.app.db import SessionLocal
from backend.app.domain.contracts import AttachToInvoiceAction, CreateInvoiceAction, SendInvoiceAction
from backend.app.domain.errors import InvalidState, NotFound, ValidationFailure
from backend.app.integrations.notifications import STUB_TRANSPORTS
from backend.app.models import Alert, AlertEvent, Invoice, InvoiceLineItem, Project, Receipt, User
from backend.app.services import alert_service, billing_service, ingest_service


STALE_DRAFT_AT = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


def _create_user(db, plan="solo"):
    user = User(email=f"{plan}-owner@example.com", name="Owner", current_plan=plan)
    db.add(user)
    db.flush()
    return user


def _create_project(db, user):
    project = Project(
        user_id=user.id,
        name="Kitchen remodel",
        client_name="Dana Client",
        client_email="dana@example.com",
        client_phone="(415) 555-0100",
    )
    db.add(project)
    db.flush()
    return project


def _create_receipt(db, user, project, total_cents=60_000):
    receipt = Receipt(
        user_id=user.id,
        project_id=project.id,
        vendor="Home Depot",
        total_cents=total_cents,
        billable=True,
    )
    db.add(receipt)
    db.flush()
    return receipt


def _create_draft(db, user, project):
    invoice = Invoice(
        user_id=user.id,
        project_id=project.id,
        client_name=project.client_name,
        client_email=project.client_email,
        status="draft",
    )
    db.add(invoice)
    db.flush()
    return invoice


def _open_receipt_alert(db):
    user = _create_user(db)
    project = _create_project(db, user)
    receipt = _create_receipt(db, user, project)
    invoice = _create_draft(db, user, project)
    ingest_service.on_receipt_created(db, receipt.id)
    db.commit()
    alert = db.query(Alert).filter(Alert.source_id == receipt.id).one()
    return user, receipt, invoice, alert


def test_open_alert_is_idempotent_per_source(sqlite_session):
    user, receipt, _, alert = _open_receipt_alert(sqlite_session)

    again = ingest_service.on_receipt_created(sqlite_session, receipt.id)
    sqlite_session.commit()

    assert again.opened == 0
    assert again.skipped_reason == "already_open"
    assert sqlite_session.query(Alert).filter(Alert.user_id == user.id).count() == 1
    assert alert.status == "open"
    assert alert.confidence == 90
    assert alert.client_name == "Dana Client"


def test_fix_attach_links_receipt_and_bills_it_once(sqlite_session):
    user, receipt, invoice, alert = _open_receipt_alert(sqlite_session)

    fixed = alert_service.fix_alert(
        sqlite_session,
        user_id=user.id,
        alert_id=alert.id,
        action=AttachToInvoiceAction(target_invoice_id=invoice.id),
    )
    sqlite_session.commit()

    sqlite_session.refresh(receipt)
    sqlite_session.refresh(invoice)
    assert fixed.status == "fixed"
    assert fixed.fixed_at is not None
    assert fixed.reason_resolved is None
    assert receipt.linked_invoice_id == invoice.id
    lines = sqlite_session.query(InvoiceLineItem).filter(InvoiceLineItem.source_id == receipt.id).all()
    assert len(lines) == 1
    assert lines[0].source_type == "RECEIPT"
    assert invoice.total_cents == 60_000


def test_fix_create_invoice_starts_a_new_draft(sqlite_session):
    user, receipt, existing, alert = _open_receipt_alert(sqlite_session)

    alert_service.fix_alert(
        sqlite_session,
        user_id=user.id,
        alert_id=alert.id,
        action=CreateInvoiceAction(client_name="Dana C."),
    )
    sqlite_session.commit()

    line = sqlite_session.query(InvoiceLineItem).filter(InvoiceLineItem.source_id == receipt.id).one()
    assert line.invoice_id != existing.id
    new_invoice = sqlite_session.get(Invoice, line.invoice_id)
    assert new_invoice.status == "draft"
    assert new_invoice.client_name == "Dana C."


def test_fix_rejects_action_not_offered_for_alert_type(sqlite_session):
    user, _, _, alert = _open_receipt_alert(sqlite_session)

    with pytest.raises(ValidationFailure):
        alert_service.fix_alert(
            sqlite_session, user_id=user.id, alert_id=alert.id, action=SendInvoiceAction()
        )
    sqlite_session.rollback()
    assert sqlite_session.get(Alert, alert.id).status == "open"


def test_resolve_requires_known_reason(sqlite_session):
    user, _, _, alert = _open_receipt_alert(sqlite_session)

    with pytest.raises(ValidationFailure):
        alert_service.resolve_alert(sqlite_session, user_id=user.id, alert_id=alert.id, reason="because")

    resolved = alert_service.resolve_alert(
        sqlite_session, user_id=user.id, alert_id=alert.id, reason="warranty", note="covered"
    )
    sqlite_session.commit()
    assert resolved.status == "resolved"
    assert resolved.reason_resolved == "warranty"
    assert resolved.resolution_note == "covered"


def test_terminal_alert_cannot_transition_again(sqlite_session):
    user, _, invoice, alert = _open_receipt_alert(sqlite_session)
    alert_service.fix_alert(
        sqlite_session,
        user_id=user.id,
        alert_id=alert.id,
        action=AttachToInvoiceAction(target_invoice_id=invoice.id),
    )
    sqlite_session.commit()

    with pytest.raises(InvalidState) as excinfo:
        alert_service.resolve_alert(sqlite_session, user_id=user.id, alert_id=alert.id, reason="personal")
    assert excinfo.value.current_status == "fixed"


def test_alert_of_another_user_is_not_found(sqlite_session):
    _, _, _, alert = _open_receipt_alert(sqlite_session)
    stranger = _create_user(sqlite_session, plan="professional")
    sqlite_session.commit()

    with pytest.raises(NotFound):
        alert_service.resolve_alert(sqlite_session, user_id=stranger.id, alert_id=alert.id, reason="other")


def test_concurrent_fix_and_resolve_have_one_winner(sqlite_session):
    user, receipt, invoice, alert = _open_receipt_alert(sqlite_session)

    other = SessionLocal()
    try:
        # both sessions see the alert open
        assert other.get(Alert, alert.id).status == "open"
        assert sqlite_session.get(Alert, alert.id).status == "open"

        alert_service.resolve_alert(other, user_id=user.id, alert_id=alert.id, reason="included_in_contract")
        other.commit()

        with pytest.raises(InvalidState) as excinfo:
            alert_service.fix_alert(
                sqlite_session,
                user_id=user.id,
                alert_id=alert.id,
                action=AttachToInvoiceAction(target_invoice_id=invoice.id),
            )
        sqlite_session.rollback()
    finally:
        other.close()

    assert excinfo.value.current_status == "resolved"
    final = sqlite_session.get(Alert, alert.id)
    sqlite_session.refresh(final)
    sqlite_session.refresh(receipt)
    assert final.status == "resolved"
    assert receipt.linked_invoice_id is None
    assert sqlite_session.query(InvoiceLineItem).filter(InvoiceLineItem.source_id == receipt.id).count() == 0


def test_event_trail_records_every_transition(sqlite_session):
    user, receipt, invoice, alert = _open_receipt_alert(sqlite_session)
    alert_service.fix_alert(
        sqlite_session,
        user_id=user.id,
        alert_id=alert.id,
        action=AttachToInvoiceAction(target_invoice_id=invoice.id),
    )
    sqlite_session.commit()

    events = alert_service.list_alert_events(sqlite_session, user_id=user.id, alert_id=alert.id)
    assert [event.action for event in events] == ["created", "fixed"]
    assert events[0].actor == "system"
    assert events[0].metadata_json["trigger"] == "receipt_created"
    assert events[1].actor == user.id
    assert events[1].metadata_json["via"] == "user_action"
    assert events[1].metadata_json["invoice_id"] == invoice.id


def test_new_alert_may_open_after_previous_one_closed(sqlite_session):
    user, receipt, _, alert = _open_receipt_alert(sqlite_session)
    alert_service.resolve_alert(sqlite_session, user_id=user.id, alert_id=alert.id, reason="other")
    sqlite_session.commit()

    outcome = ingest_service.on_receipt_created(sqlite_session, receipt.id, trigger="receipt_updated")
    sqlite_session.commit()

    assert outcome.opened == 1
    statuses = sorted(
        row.status for row in sqlite_session.query(Alert).filter(Alert.source_id == receipt.id).all()
    )
    assert statuses == ["open", "resolved"]
    assert sqlite_session.query(AlertEvent).count() == 3


def _open_invoice_not_sent_alert(db):
    user = _create_user(db)
    project = _create_project(db, user)
    invoice = _create_draft(db, user, project)
    invoice.total_cents = 30_000
    invoice.created_at = STALE_DRAFT_AT
    db.flush()
    ingest_service.on_invoice_state_changed(db, invoice.id, "draft", now=STALE_DRAFT_AT + timedelta(hours=25))
    db.commit()
    alert = db.query(Alert).filter(Alert.source_id == invoice.id).one()
    return user, invoice, alert


def test_fix_send_invoice_emails_client_once(sqlite_session):
    user, invoice, alert = _open_invoice_not_sent_alert(sqlite_session)

    alert_service.fix_alert(sqlite_session, user_id=user.id, alert_id=alert.id, action=SendInvoiceAction())
    sqlite_session.commit()

    sqlite_session.refresh(invoice)
    assert invoice.status == "sent"
    assert [msg["recipient"] for msg in STUB_TRANSPORTS["email"].sent] == ["dana@example.com"]


def test_fix_send_invoice_skips_email_when_already_sent(sqlite_session):
    user, invoice, alert = _open_invoice_not_sent_alert(sqlite_session)
    billing_service.mark_invoice_sent(sqlite_session, invoice_id=invoice.id)
    sqlite_session.commit()

    fixed = alert_service.fix_alert(
        sqlite_session, user_id=user.id, alert_id=alert.id, action=SendInvoiceAction()
    )
    sqlite_session.commit()

    assert fixed.status == "fixed"
    assert STUB_TRANSPORTS["email"].sent == []
