from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

from backend.app.alerts import (
    InvoiceFacts,
    ReceiptFacts,
    ScopeFacts,
    VoiceLogFacts,
    evaluate_invoice,
    evaluate_receipt,
    evaluate_scope,
    evaluate_voice_log,
    severity_for_total,
    summarize,
)


NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


def _alert(amount: int, alert_type: str = "RECEIPT_UNBILLED", status: str = "open"):
    return SimpleNamespace(estimated_amount_cents=amount, type=alert_type, status=status)


def test_billable_unlinked_receipt_opens_alert():
    mutation = evaluate_receipt(
        ReceiptFacts(receipt_id="r1", billable=True, linked_invoice_id=None, total_cents=60_000)
    )
    assert mutation.op == "open"
    assert mutation.alert_type == "RECEIPT_UNBILLED"
    assert mutation.source_type == "RECEIPT"
    assert mutation.estimated_amount_cents == 60_000
    assert mutation.confidence == 90


def test_linked_or_personal_receipt_fixes():
    linked = evaluate_receipt(ReceiptFacts("r1", True, "inv-1", 60_000), trigger="receipt_linked")
    personal = evaluate_receipt(ReceiptFacts("r2", False, None, 1_000))
    assert linked.op == "fix"
    assert linked.trigger == "receipt_linked"
    assert personal.op == "fix"


def test_scope_rule_only_opens_for_approved_uninvoiced_scope():
    assert evaluate_scope(ScopeFacts("s1", "approved", 25_000, invoiced=False)).op == "open"
    assert evaluate_scope(ScopeFacts("s1", "approved", 25_000, invoiced=True)).op == "fix"
    assert evaluate_scope(ScopeFacts("s1", "declined", 25_000, invoiced=False)) is None
    assert evaluate_scope(ScopeFacts("s1", "approved", 25_000, invoiced=False)).confidence == 85


def test_voice_log_rule_ignores_zero_amount():
    assert evaluate_voice_log(VoiceLogFacts("v1", 0, invoiced=False)) is None
    assert evaluate_voice_log(VoiceLogFacts("v1", 9_000, invoiced=False)).op == "open"
    assert evaluate_voice_log(VoiceLogFacts("v1", 9_000, invoiced=True)).op == "fix"


def test_invoice_rule_is_durational():
    threshold = timedelta(hours=24)
    fresh = InvoiceFacts("i1", "draft", NOW - timedelta(hours=23), 10_000)
    stale = InvoiceFacts("i1", "draft", NOW - timedelta(hours=24), 10_000)
    sent = InvoiceFacts("i1", "sent", NOW - timedelta(days=3), 10_000)

    assert evaluate_invoice(fresh, now=NOW, threshold=threshold) is None
    opened = evaluate_invoice(stale, now=NOW, threshold=threshold)
    assert opened.op == "open"
    assert opened.alert_type == "INVOICE_NOT_SENT"
    assert evaluate_invoice(sent, now=NOW, threshold=threshold).op == "fix"


def test_severity_flips_above_five_hundred_dollars():
    assert severity_for_total(50_000, critical_above_cents=50_000) == "warning"
    assert severity_for_total(50_001, critical_above_cents=50_000) == "critical"


def test_severity_is_monotonic_in_open_total():
    order = {"warning": 0, "critical": 1}
    previous = 0
    for total in range(0, 120_000, 2_500):
        rank = order[severity_for_total(total, critical_above_cents=50_000)]
        assert rank >= previous
        previous = rank


def test_summary_counts_only_open_alerts():
    summary = summarize(
        [
            _alert(60_000),
            _alert(5_000, "INVOICE_NOT_SENT"),
            _alert(90_000, status="resolved"),
        ],
        critical_above_cents=50_000,
    )
    assert summary.count == 2
    assert summary.total_cents == 65_000
    assert summary.severity == "critical"
    assert summary.by_type == {"RECEIPT_UNBILLED": 1, "INVOICE_NOT_SENT": 1}


def test_resolving_the_big_alert_drops_severity():
    remaining = summarize([_alert(60_000, status="resolved"), _alert(5_000)], critical_above_cents=50_000)
    assert remaining.severity == "warning"
