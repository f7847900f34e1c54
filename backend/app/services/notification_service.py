from __future__ import annotations

import logging
import re
from typing import Optional

from backend.app.integrations.notifications import get_transport


logger = logging.getLogger(__name__)

SMS_MAX_CHARS = 160
WHATSAPP_MAX_CHARS = 1024

TEMPLATES: dict[str, tuple[str, str]] = {
    "approval_request": (
        "Approval needed: {description}",
        "Hi {client_name}, {contractor_name} needs your approval for extra work: {description} "
        "(estimated {amount}). Review it here: {approval_url} . This link expires in 24 hours.",
    ),
    "approval_reminder": (
        "Reminder: client approval still pending for {description}",
        "Your client approval request for {description} ({amount}) expires at {expires_at} and "
        "{client_name} has not responded yet. Follow up or resend the link: {approval_url}",
    ),
    "approval_expired": (
        "Approval request expired: {description}",
        "The approval request for {description} ({amount}) expired before the client responded.",
    ),
    "approval_decision": (
        "Client {decision} your request: {description}",
        "{client_name} {decision} the extra work '{description}' ({amount}).{feedback}",
    ),
    "invoice_sent": (
        "Your invoice",
        "Hi {client_name}, your invoice for {amount} is ready.",
    ),
}


class _SafeVars(dict):
    def __missing__(self, key: str) -> str:
        return ""


def idempotency_key(*parts: object) -> str:
    return ":".join(str(part) for part in parts if part is not None)


def format_cents(amount_cents: int, currency: str = "USD") -> str:
    symbol = "$" if currency.upper() == "USD" else f"{currency.upper()} "
    return f"{symbol}{amount_cents / 100:,.2f}"


def normalize_phone(raw: Optional[str]) -> Optional[str]:
    """E.164 normalization for North American numbers; other inputs must already carry a '+'."""
    if not raw:
        return None
    stripped = raw.strip()
    digits = re.sub(r"\D", "", stripped)
    if stripped.startswith("+") and 8 <= len(digits) <= 15:
        return f"+{digits}"
    if len(digits) == 10:
        return f"+1{digits}"
    if len(digits) == 11 and digits.startswith("1"):
        return f"+{digits}"
    return None


def render(template_id: str, variables: dict) -> tuple[str, str]:
    subject, body = TEMPLATES[template_id]
    safe = _SafeVars(variables)
    return subject.format_map(safe), body.format_map(safe)


def _truncate(channel: str, body: str) -> str:
    limit = {"sms": SMS_MAX_CHARS, "whatsapp": WHATSAPP_MAX_CHARS}.get(channel)
    if limit is None or len(body) <= limit:
        return body
    return body[: limit - 3] + "..."


def send_notification(
    channel: str,
    recipient: Optional[str],
    template_id: str,
    variables: dict,
    *,
    idempotency_key: Optional[str] = None,
) -> bool:
    """Best-effort delivery. Returns False on any failure and never raises."""
    if template_id not in TEMPLATES:
        logger.error("unknown notification template %s", template_id)
        return False
    target = normalize_phone(recipient) if channel in {"sms", "whatsapp"} else (recipient or "").strip()
    if not target:
        logger.warning("no usable %s recipient for template %s", channel, template_id)
        return False

    subject, body = render(template_id, variables)
    try:
        transport = get_transport(channel)
        transport.send(
            recipient=target,
            subject=subject,
            body=_truncate(channel, body),
            idempotency_key=idempotency_key,
        )
    except Exception:
        logger.exception("notification %s via %s failed (key=%s)", template_id, channel, idempotency_key)
        return False
    logger.info("notification %s sent via %s (key=%s)", template_id, channel, idempotency_key)
    return True
