"""Pure money-alert detection rules and severity scoring."""

from backend.app.alerts.rules import (  # noqa: F401
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
from backend.app.alerts.severity import AlertSummary, severity_for_total, summarize  # noqa: F401
