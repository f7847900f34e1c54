from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from backend.app.domain.errors import NotFound, TransientDependencyFailure, ValidationFailure
from backend.app.integrations import ProviderEvent, get_adapter
from backend.app.models import User
from backend.app.services import billing_service, event_ledger_service, ingest_service


logger = logging.getLogger(__name__)

REVENUECAT_ENTITLEMENTS = {"solo": "solo", "professional": "professional"}


class WebhookNotConfigured(RuntimeError):
    """Raised when the provider secret is missing; the engine fails closed."""


class WebhookSignatureInvalid(ValidationFailure):
    def __init__(self, provider: str, reason: str):
        self.provider = provider
        self.reason = reason
        super().__init__(f"webhook verification failed: {reason}")


@dataclass(frozen=True)
class WebhookOutcome:
    provider: str
    status: str
    already_processed: bool
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    detail: dict = field(default_factory=dict)


Handler = Callable[[Session, ProviderEvent, datetime], dict]


def _from_epoch(value, *, millis: bool = False) -> Optional[datetime]:
    if not isinstance(value, (int, float)):
        return None
    seconds = float(value) / 1000.0 if millis else float(value)
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def _settle_invoice(db: Session, *, invoice_id: str, payment_id: Optional[str], now: datetime) -> dict:
    billing_service.require_invoice(db, invoice_id)
    changed = billing_service.mark_invoice_paid(
        db, invoice_id=invoice_id, provider_payment_id=payment_id, now=now
    )
    outcome = ingest_service.on_invoice_state_changed(db, invoice_id, "paid", now=now)
    return {"invoice_id": invoice_id, "marked_paid": changed, "alerts_fixed": outcome.fixed}


def _subscription_user(db: Session, provider: str, external_id: Optional[str]) -> User:
    user = billing_service.find_user_by_subscription(db, provider=provider, external_id=external_id or "")
    if not user:
        raise NotFound("subscription", external_id)
    return user


# -------------------------
# Stripe
# -------------------------

def _stripe_object(event: ProviderEvent) -> dict:
    return (event.payload.get("data") or {}).get("object") or {}


def _stripe_payment_succeeded(db: Session, event: ProviderEvent, now: datetime) -> dict:
    obj = _stripe_object(event)
    invoice_id = (obj.get("metadata") or {}).get("invoice_id")
    if not invoice_id:
        return {"ignored": "no invoice reference"}
    return _settle_invoice(db, invoice_id=invoice_id, payment_id=obj.get("id"), now=now)


def _stripe_checkout_completed(db: Session, event: ProviderEvent, now: datetime) -> dict:
    obj = _stripe_object(event)
    metadata = obj.get("metadata") or {}
    detail: dict = {}
    if metadata.get("user_id") and metadata.get("plan"):
        billing_service.apply_subscription(
            db,
            user_id=metadata["user_id"],
            provider="stripe",
            plan=str(metadata["plan"]).lower(),
            status="active",
            external_id=obj.get("subscription"),
        )
        detail["plan"] = str(metadata["plan"]).lower()
    if metadata.get("invoice_id") and obj.get("payment_status") == "paid":
        detail.update(
            _settle_invoice(db, invoice_id=metadata["invoice_id"], payment_id=obj.get("payment_intent"), now=now)
        )
    return detail or {"ignored": "no plan or invoice reference"}


def _stripe_invoice_paid(db: Session, event: ProviderEvent, now: datetime) -> dict:
    obj = _stripe_object(event)
    user = _subscription_user(db, "stripe", obj.get("subscription"))
    lines = (obj.get("lines") or {}).get("data") or []
    period_end = ((lines[0].get("period") or {}).get("end") if lines else None) or obj.get("period_end")
    billing_service.apply_subscription(
        db,
        user_id=user.id,
        provider="stripe",
        plan=None,
        status="active",
        expires_at=_from_epoch(period_end),
    )
    return {"user_id": user.id, "renewed": True}


def _stripe_subscription_deleted(db: Session, event: ProviderEvent, now: datetime) -> dict:
    obj = _stripe_object(event)
    user = _subscription_user(db, "stripe", obj.get("id"))
    billing_service.apply_subscription(db, user_id=user.id, provider="stripe", plan="free", status="canceled")
    return {"user_id": user.id, "plan": "free"}


def _stripe_subscription_updated(db: Session, event: ProviderEvent, now: datetime) -> dict:
    obj = _stripe_object(event)
    user = _subscription_user(db, "stripe", obj.get("id"))
    plan = (obj.get("metadata") or {}).get("plan")
    billing_service.apply_subscription(
        db,
        user_id=user.id,
        provider="stripe",
        plan=str(plan).lower() if plan else None,
        status=str(obj.get("status") or "active"),
        expires_at=_from_epoch(obj.get("current_period_end")),
    )
    return {"user_id": user.id, "status": obj.get("status")}


# -------------------------
# Flutterwave
# -------------------------

def _flutterwave_charge_completed(db: Session, event: ProviderEvent, now: datetime) -> dict:
    data = event.payload.get("data") or {}
    if str(data.get("status") or "").lower() != "successful":
        return {"ignored": f"charge status {data.get('status')}"}
    tx_ref = str(data.get("tx_ref") or "")
    parts = tx_ref.split("_")
    # tellbill_<plan>_<user_id>_<ts> | invoice_<invoice_id>_<ts>
    if len(parts) >= 3 and parts[0] == "tellbill":
        billing_service.apply_subscription(
            db,
            user_id=parts[2],
            provider="flutterwave",
            plan=parts[1].lower(),
            status="active",
            external_id=str(data.get("id")),
        )
        return {"user_id": parts[2], "plan": parts[1].lower()}
    if len(parts) >= 2 and parts[0] == "invoice":
        return _settle_invoice(db, invoice_id=parts[1], payment_id=str(data.get("id")), now=now)
    raise ValidationFailure(f"unrecognized tx_ref: {tx_ref}")


def _flutterwave_charge_failed(db: Session, event: ProviderEvent, now: datetime) -> dict:
    data = event.payload.get("data") or {}
    logger.warning("flutterwave charge failed (tx_ref=%s)", data.get("tx_ref"))
    return {"payment_failed": data.get("tx_ref")}


# -------------------------
# RevenueCat
# -------------------------

def _revenuecat_plan(event: ProviderEvent) -> Optional[str]:
    for entitlement in event.payload.get("entitlement_ids") or []:
        plan = REVENUECAT_ENTITLEMENTS.get(str(entitlement).lower())
        if plan:
            return plan
    return None


def _revenuecat_active(db: Session, event: ProviderEvent, now: datetime) -> dict:
    user_id = str(event.payload.get("app_user_id") or "")
    plan = _revenuecat_plan(event)
    billing_service.apply_subscription(
        db,
        user_id=user_id,
        provider="revenuecat",
        plan=plan,
        status="active",
        external_id=event.payload.get("original_transaction_id"),
        expires_at=_from_epoch(event.payload.get("expiration_at_ms"), millis=True),
    )
    return {"user_id": user_id, "plan": plan}


def _revenuecat_cancellation(db: Session, event: ProviderEvent, now: datetime) -> dict:
    user_id = str(event.payload.get("app_user_id") or "")
    # access continues until EXPIRATION arrives
    billing_service.apply_subscription(db, user_id=user_id, provider="revenuecat", plan=None, status="canceled")
    return {"user_id": user_id, "status": "canceled"}


def _revenuecat_expiration(db: Session, event: ProviderEvent, now: datetime) -> dict:
    user_id = str(event.payload.get("app_user_id") or "")
    billing_service.apply_subscription(db, user_id=user_id, provider="revenuecat", plan="free", status="expired")
    return {"user_id": user_id, "plan": "free"}


HANDLERS: dict[tuple[str, str], Handler] = {
    ("stripe", "payment_intent.succeeded"): _stripe_payment_succeeded,
    ("stripe", "checkout.session.completed"): _stripe_checkout_completed,
    ("stripe", "invoice.payment_succeeded"): _stripe_invoice_paid,
    ("stripe", "customer.subscription.deleted"): _stripe_subscription_deleted,
    ("stripe", "customer.subscription.updated"): _stripe_subscription_updated,
    ("flutterwave", "charge.completed"): _flutterwave_charge_completed,
    ("flutterwave", "charge.failed"): _flutterwave_charge_failed,
    ("revenuecat", "INITIAL_PURCHASE"): _revenuecat_active,
    ("revenuecat", "RENEWAL"): _revenuecat_active,
    ("revenuecat", "CANCELLATION"): _revenuecat_cancellation,
    ("revenuecat", "EXPIRATION"): _revenuecat_expiration,
}


def handle_provider_event(
    db: Session,
    *,
    provider: str,
    raw_body: bytes,
    signature_header: Optional[str],
    provider_secret: Optional[str],
    now: Optional[datetime] = None,
) -> WebhookOutcome:
    """Verify, dedupe, apply, record. The caller commits.

    Signature is checked before the ledger is touched. The ledger row is
    written in the same unit of work as the state change it guards.
    """
    if not provider_secret:
        raise WebhookNotConfigured(f"{provider} webhook secret is not configured")
    adapter = get_adapter(provider)
    verification = adapter.verify_webhook(raw_body, signature_header, provider_secret)
    if not verification.ok:
        logger.warning("%s webhook rejected: %s", provider, verification.reason)
        raise WebhookSignatureInvalid(provider, verification.reason)

    try:
        event = adapter.parse_event(raw_body)
    except ValueError as exc:
        raise ValidationFailure(str(exc)) from exc

    if event_ledger_service.has_processed(db, provider=provider, event_id=event.event_id):
        logger.info("%s event %s already processed", provider, event.event_id)
        return WebhookOutcome(
            provider=provider,
            status="already_processed",
            already_processed=True,
            event_id=event.event_id,
            event_type=event.event_type,
        )

    stamp = now or datetime.now(timezone.utc)
    handler = HANDLERS.get((provider, event.event_type))
    savepoint = db.begin_nested()
    try:
        detail = handler(db, event, stamp) if handler else {"ignored": "unhandled event type"}
    except TransientDependencyFailure:
        savepoint.rollback()
        raise
    except OperationalError as exc:
        # database unavailable or locked; let the provider redeliver
        savepoint.rollback()
        raise TransientDependencyFailure(str(exc)) from exc
    except Exception as exc:
        savepoint.rollback()
        logger.exception("%s event %s (%s) failed; recording for review", provider, event.event_id, event.event_type)
        recorded = event_ledger_service.mark_processed(
            db,
            provider=provider,
            event_id=event.event_id,
            event_type=event.event_type,
            metadata={"error": str(exc)},
        )
        return WebhookOutcome(
            provider=provider,
            status="error_recorded" if recorded else "already_processed",
            already_processed=not recorded,
            event_id=event.event_id,
            event_type=event.event_type,
            detail={"error": str(exc)},
        )
    savepoint.commit()

    if not event_ledger_service.mark_processed(
        db,
        provider=provider,
        event_id=event.event_id,
        event_type=event.event_type,
        metadata=detail,
    ):
        # a concurrent delivery recorded it first; drop our copy of the changes
        db.rollback()
        return WebhookOutcome(
            provider=provider,
            status="already_processed",
            already_processed=True,
            event_id=event.event_id,
            event_type=event.event_type,
        )

    logger.info("%s event %s (%s) processed", provider, event.event_id, event.event_type)
    return WebhookOutcome(
        provider=provider,
        status="processed" if handler else "ignored",
        already_processed=False,
        event_id=event.event_id,
        event_type=event.event_type,
        detail=detail,
    )
