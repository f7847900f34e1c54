from __future__ import annotations

import os
from typing import Optional


PAID_PLANS = frozenset({"solo", "professional"})


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise RuntimeError(f"{name} must be an integer, got {raw!r}") from exc


def _flag_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def webhook_secret(provider: str) -> Optional[str]:
    key = {
        "stripe": "STRIPE_WEBHOOK_SECRET",
        "flutterwave": "FLUTTERWAVE_SECRET_HASH",
        "revenuecat": "REVENUECAT_WEBHOOK_SECRET",
    }.get(provider)
    if key is None:
        return None
    value = os.getenv(key)
    return value or None


def stripe_signature_tolerance_seconds() -> int:
    return _int_env("STRIPE_SIGNATURE_TOLERANCE_SECONDS", 300)


def frontend_url() -> str:
    return (os.getenv("FRONTEND_URL") or "http://localhost:5173").rstrip("/")


def approval_token_ttl_hours() -> int:
    return 24


def reminder_lead_hours() -> int:
    """A pending request expiring within this many hours is due its reminder."""
    return _int_env("APPROVAL_REMINDER_LEAD_HOURS", 12)


def invoice_not_sent_hours() -> int:
    return _int_env("INVOICE_NOT_SENT_HOURS", 24)


def unbilled_critical_cents() -> int:
    return _int_env("UNBILLED_CRITICAL_CENTS", 50_000)


def notification_max_attempts() -> int:
    return max(1, _int_env("NOTIFICATION_MAX_ATTEMPTS", 3))


def notifications_use_stub() -> bool:
    return _flag_env("NOTIFICATIONS_USE_STUB", False)


def alerts_paid_plans_only() -> bool:
    return _flag_env("ALERTS_PAID_PLANS_ONLY", True)


def scheduler_enabled() -> bool:
    return _flag_env("SCHEDULER_ENABLED", False)


def scheduler_interval_seconds() -> int:
    return max(1, _int_env("SCHEDULER_INTERVAL_SECONDS", 3600))


def notification_claim_lease_seconds() -> int:
    """How long an in-flight send owns its notification row before another worker may reclaim it."""
    return max(1, _int_env("NOTIFICATION_CLAIM_LEASE_SECONDS", 600))


def scheduler_operator_token() -> Optional[str]:
    value = os.getenv("SCHEDULER_OPERATOR_TOKEN")
    return value.strip() if value and value.strip() else None
