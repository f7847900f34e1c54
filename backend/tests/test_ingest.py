from datetime import datetime, timedelta, timezone

import pytest

from backend.app.domain.contracts import AttachToInvoiceAction
from backend.app.domain.errors import NotFound, ValidationFailure
from backend.app.models import Alert, Invoice, InvoiceLineItem, Project, Receipt, User, VoiceLog
from backend.app.services import alert_service, billing_service, ingest_service


NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


def _seed(db, plan="professional"):
    user = User(email="crew@example.com", name="Crew Lead", current_plan=plan)
    db.add(user)
    db.flush()
    project = Project(user_id=user.id, name="Bathroom", client_name="Sam", client_email="sam@example.com")
    db.add(project)
    db.flush()
    return user, project


def test_six_hundred_dollar_receipt_goes_critical_then_clears(sqlite_session):
    user, project = _seed(sqlite_session)
    receipt = Receipt(user_id=user.id, project_id=project.id, vendor="Lumber Co", total_cents=60_000)
    invoice = Invoice(user_id=user.id, project_id=project.id, status="draft")
    sqlite_session.add_all([receipt, invoice])
    sqlite_session.flush()

    outcome = ingest_service.on_receipt_created(sqlite_session, receipt.id)
    sqlite_session.commit()

    assert outcome.opened == 1
    summary = alert_service.alert_summary(sqlite_session, user_id=user.id)
    assert summary.count == 1
    assert summary.total_cents == 60_000
    assert summary.severity == "critical"

    alert = alert_service.list_alerts(sqlite_session, user_id=user.id)[0]
    alert_service.fix_alert(
        sqlite_session,
        user_id=user.id,
        alert_id=alert.id,
        action=AttachToInvoiceAction(target_invoice_id=invoice.id),
    )
    sqlite_session.commit()

    summary = alert_service.alert_summary(sqlite_session, user_id=user.id)
    assert summary.count == 0
    assert summary.total_cents == 0
    assert summary.severity == "warning"
    assert alert_service.list_unbilled_receipts(sqlite_session, user_id=user.id) == []


def test_free_plan_does_not_open_alerts(sqlite_session):
    user, project = _seed(sqlite_session, plan="free")
    receipt = Receipt(user_id=user.id, project_id=project.id, total_cents=12_000)
    sqlite_session.add(receipt)
    sqlite_session.flush()

    outcome = ingest_service.on_receipt_created(sqlite_session, receipt.id)
    sqlite_session.commit()

    assert outcome.opened == 0
    assert outcome.skipped_reason == "plan_not_eligible"
    assert sqlite_session.query(Alert).count() == 0


def test_plan_gate_can_be_disabled(sqlite_session, monkeypatch):
    monkeypatch.setenv("ALERTS_PAID_PLANS_ONLY", "0")
    user, project = _seed(sqlite_session, plan="free")
    receipt = Receipt(user_id=user.id, project_id=project.id, total_cents=12_000)
    sqlite_session.add(receipt)
    sqlite_session.flush()

    assert ingest_service.on_receipt_created(sqlite_session, receipt.id).opened == 1


def test_duplicate_ingest_keeps_single_open_alert(sqlite_session):
    user, project = _seed(sqlite_session)
    receipt = Receipt(user_id=user.id, project_id=project.id, total_cents=8_000)
    sqlite_session.add(receipt)
    sqlite_session.flush()

    for _ in range(3):
        ingest_service.on_receipt_created(sqlite_session, receipt.id)
        sqlite_session.commit()

    assert sqlite_session.query(Alert).filter(Alert.status == "open").count() == 1


def test_receipt_linked_elsewhere_fixes_alert(sqlite_session):
    user, project = _seed(sqlite_session)
    receipt = Receipt(user_id=user.id, project_id=project.id, total_cents=8_000)
    invoice = Invoice(user_id=user.id, project_id=project.id, status="draft")
    sqlite_session.add_all([receipt, invoice])
    sqlite_session.flush()
    ingest_service.on_receipt_created(sqlite_session, receipt.id)
    sqlite_session.commit()

    billing_service.link_receipt(sqlite_session, receipt_id=receipt.id, invoice_id=invoice.id)
    outcome = ingest_service.on_receipt_created(sqlite_session, receipt.id, trigger="receipt_linked")
    sqlite_session.commit()

    assert outcome.fixed == 1
    alert = sqlite_session.query(Alert).one()
    assert alert.status == "fixed"
    assert alert.fixed_at is not None


def test_voice_log_opens_and_clears_when_billed(sqlite_session):
    user, project = _seed(sqlite_session)
    log = VoiceLog(
        user_id=user.id,
        project_id=project.id,
        transcript="Replaced two GFCI outlets, about ninety bucks",
        estimated_amount_cents=9_000,
    )
    sqlite_session.add(log)
    sqlite_session.flush()

    assert ingest_service.on_voice_log_created(sqlite_session, log.id).opened == 1
    sqlite_session.commit()
    alert = sqlite_session.query(Alert).one()
    assert alert.type == "VOICE_LOG_NO_INVOICE"
    assert alert.source_type == "TRANSCRIPT"
    assert alert.confidence == 75

    line_id = billing_service.create_invoice_line_item(
        sqlite_session,
        project_id=project.id,
        description=log.transcript,
        amount_cents=log.estimated_amount_cents,
        source_type="TRANSCRIPT",
        source_id=log.id,
    )
    line = sqlite_session.get(InvoiceLineItem, line_id)
    outcome = ingest_service.on_invoice_state_changed(sqlite_session, line.invoice_id, "draft", now=NOW)
    sqlite_session.commit()

    assert outcome.fixed == 1
    sqlite_session.refresh(alert)
    assert alert.status == "fixed"


def test_stale_draft_opens_invoice_not_sent_and_send_fixes_it(sqlite_session):
    user, project = _seed(sqlite_session)
    invoice = Invoice(
        user_id=user.id,
        project_id=project.id,
        status="draft",
        total_cents=25_000,
        created_at=NOW - timedelta(hours=30),
    )
    sqlite_session.add(invoice)
    sqlite_session.flush()

    assert ingest_service.on_invoice_state_changed(sqlite_session, invoice.id, "draft", now=NOW).opened == 1
    sqlite_session.commit()

    billing_service.mark_invoice_sent(sqlite_session, invoice_id=invoice.id, now=NOW)
    outcome = ingest_service.on_invoice_state_changed(sqlite_session, invoice.id, "sent", now=NOW)
    sqlite_session.commit()

    assert outcome.fixed == 1
    alert = sqlite_session.query(Alert).filter(Alert.type == "INVOICE_NOT_SENT").one()
    assert alert.status == "fixed"


def test_fresh_draft_is_not_flagged(sqlite_session):
    user, project = _seed(sqlite_session)
    invoice = Invoice(user_id=user.id, project_id=project.id, status="draft", created_at=NOW - timedelta(hours=2))
    sqlite_session.add(invoice)
    sqlite_session.flush()

    outcome = ingest_service.on_invoice_state_changed(sqlite_session, invoice.id, "draft", now=NOW)
    assert outcome.opened == 0
    assert sqlite_session.query(Alert).count() == 0


def test_unknown_invoice_state_and_foreign_records_are_rejected(sqlite_session):
    user, project = _seed(sqlite_session)
    invoice = Invoice(user_id=user.id, project_id=project.id, status="draft")
    sqlite_session.add(invoice)
    sqlite_session.flush()

    with pytest.raises(ValidationFailure):
        ingest_service.on_invoice_state_changed(sqlite_session, invoice.id, "void")
    with pytest.raises(NotFound):
        ingest_service.on_invoice_state_changed(sqlite_session, invoice.id, "draft", user_id="someone-else")
