from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import and_, delete, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from backend.app import config
from backend.app.domain.errors import ApprovalExpired, InvalidState, NotFound, ValidationFailure
from backend.app.models import ApprovalNotification, ApprovalRequest, Project, User, utcnow
from backend.app.services import billing_service, ingest_service, notification_service


logger = logging.getLogger(__name__)

DECISIONS = {"approve": "approved", "decline": "declined"}

# notification_type -> (template, audience)
NOTIFICATION_PLAN = {
    "initial": ("approval_request", "client"),
    "reminder": ("approval_reminder", "contractor"),
    "expiry": ("approval_expired", "contractor"),
    "approved": ("approval_decision", "contractor"),
    "declined": ("approval_decision", "contractor"),
}


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def new_token() -> str:
    return secrets.token_urlsafe(32)


def approval_url(token: str) -> str:
    return f"{config.frontend_url()}/approve/{token}"


def effective_status(approval: ApprovalRequest, *, now: Optional[datetime] = None) -> str:
    """Status as the client sees it: a pending request past its deadline reads as expired."""
    current = _as_utc(now or utcnow())
    if approval.status == "pending" and _as_utc(approval.token_expires_at) <= current:
        return "expired"
    return approval.status


def require_approval(db: Session, *, user_id: str, approval_id: str) -> ApprovalRequest:
    approval = db.get(ApprovalRequest, approval_id)
    if not approval or approval.user_id != user_id:
        raise NotFound("approval", approval_id)
    return approval


def get_by_token(db: Session, token: str) -> ApprovalRequest:
    approval = db.execute(
        select(ApprovalRequest).where(ApprovalRequest.approval_token == token)
    ).scalars().first()
    if not approval:
        raise NotFound("approval")
    return approval


def list_approvals(db: Session, *, user_id: str, status: Optional[str] = None) -> list[ApprovalRequest]:
    stmt = select(ApprovalRequest).where(ApprovalRequest.user_id == user_id)
    if status:
        stmt = stmt.where(ApprovalRequest.status == status)
    stmt = stmt.order_by(ApprovalRequest.created_at.desc(), ApprovalRequest.id.asc())
    return list(db.execute(stmt).scalars().all())


def create_approval_request(
    db: Session,
    *,
    user_id: str,
    description: str,
    estimated_cost_cents: int,
    project_id: Optional[str] = None,
    photo_urls: Optional[list[str]] = None,
    client_email: Optional[str] = None,
    client_phone: Optional[str] = None,
    now: Optional[datetime] = None,
) -> ApprovalRequest:
    if not (description or "").strip():
        raise ValidationFailure("description is required")
    if estimated_cost_cents < 0:
        raise ValidationFailure("estimated_cost_cents must be >= 0")

    project = None
    if project_id:
        project = db.get(Project, project_id)
        if not project or project.user_id != user_id:
            raise NotFound("project", project_id)

    issued_at = _as_utc(now or utcnow())
    approval = ApprovalRequest(
        user_id=user_id,
        project_id=project_id,
        description=description.strip(),
        estimated_cost_cents=int(estimated_cost_cents),
        photo_urls=list(photo_urls or []),
        approval_token=new_token(),
        # fixed at issuance; resends never move it
        token_expires_at=issued_at + timedelta(hours=config.approval_token_ttl_hours()),
        status="pending",
        client_email=client_email or (project.client_email if project else None),
        client_phone=client_phone or (project.client_phone if project else None),
        created_at=issued_at,
        updated_at=issued_at,
    )
    db.add(approval)
    db.flush()
    logger.info("approval %s created for user %s (expires %s)", approval.id, user_id, approval.token_expires_at)
    return approval


# -------------------------
# Notifications
# -------------------------

def _recipient(db: Session, approval: ApprovalRequest, audience: str) -> tuple[str, Optional[str]]:
    if audience == "client":
        if approval.client_email:
            return "email", approval.client_email
        if approval.client_phone:
            return "sms", approval.client_phone
    contractor = db.get(User, approval.user_id)
    return "email", contractor.email if contractor else None


def _template_vars(db: Session, approval: ApprovalRequest, notification_type: str) -> dict:
    contractor = db.get(User, approval.user_id)
    project = db.get(Project, approval.project_id) if approval.project_id else None
    feedback = f" Feedback: {approval.feedback}" if approval.feedback else ""
    return {
        "description": approval.description,
        "amount": notification_service.format_cents(approval.estimated_cost_cents),
        "approval_url": approval_url(approval.approval_token),
        "client_name": (project.client_name if project else None) or approval.client_email or "there",
        "contractor_name": (contractor.name if contractor else None) or "Your contractor",
        "expires_at": _as_utc(approval.token_expires_at).strftime("%Y-%m-%d %H:%M UTC"),
        "decision": notification_type if notification_type in DECISIONS.values() else "",
        "feedback": feedback,
    }


def _stale_before(now: datetime) -> datetime:
    return _as_utc(now) - timedelta(seconds=config.notification_claim_lease_seconds())


def settled_notification(*, now: datetime):
    """SQL predicate for notification rows no worker should pick up."""
    return or_(
        ApprovalNotification.status == "sent",
        ApprovalNotification.attempts >= config.notification_max_attempts(),
        and_(
            ApprovalNotification.status == "pending",
            ApprovalNotification.attempts > 0,
            ApprovalNotification.claimed_at > _stale_before(now),
        ),
    )


def _claim_notification(
    db: Session,
    *,
    approval_id: str,
    notification_type: str,
    channel: str,
    recipient: Optional[str],
    now: datetime,
) -> Optional[ApprovalNotification]:
    """Take the single send slot for (request, type). None when sent, exhausted or claimed elsewhere.

    A pending row with attempts is an in-flight send. It is only reclaimed once its
    lease is stale, so a worker that died mid-send does not block the notice forever.
    """
    stmt = (
        select(ApprovalNotification)
        .where(
            ApprovalNotification.approval_request_id == approval_id,
            ApprovalNotification.notification_type == notification_type,
        )
        .execution_options(populate_existing=True)
    )
    row = db.execute(stmt).scalars().first()
    if row is None:
        try:
            with db.begin_nested():
                row = ApprovalNotification(
                    approval_request_id=approval_id,
                    notification_type=notification_type,
                    channel=channel,
                    recipient=recipient,
                    status="pending",
                    attempts=0,
                )
                db.add(row)
                db.flush()
        except IntegrityError:
            row = db.execute(stmt).scalars().first()
            if row is None:
                raise

    if row.status == "sent" or row.attempts >= config.notification_max_attempts():
        return None

    stale_before = _stale_before(now)
    if row.status == "pending" and row.attempts > 0 and row.claimed_at and _as_utc(row.claimed_at) > stale_before:
        return None

    seen_attempts = row.attempts
    result = db.execute(
        update(ApprovalNotification)
        .where(
            ApprovalNotification.id == row.id,
            ApprovalNotification.attempts == seen_attempts,
            or_(
                ApprovalNotification.status == "failed",
                ApprovalNotification.attempts == 0,
                ApprovalNotification.claimed_at.is_(None),
                ApprovalNotification.claimed_at <= stale_before,
            ),
        )
        .values(
            attempts=seen_attempts + 1,
            status="pending",
            claimed_at=_as_utc(now),
            channel=channel,
            recipient=recipient,
        )
        .execution_options(synchronize_session="fetch")
    )
    if result.rowcount != 1:
        return None
    return row


def dispatch_approval_notification(
    db: Session,
    approval: ApprovalRequest,
    notification_type: str,
    *,
    now: Optional[datetime] = None,
) -> str:
    """Send one notification of a given type at most once. Returns sent, failed or skipped.

    The claim is committed before the provider call, so no row lock is held across
    the network call. Other workers see the fresh claim and skip the row.
    """
    current = _as_utc(now or utcnow())
    template_id, audience = NOTIFICATION_PLAN[notification_type]
    channel, recipient = _recipient(db, approval, audience)
    row = _claim_notification(
        db,
        approval_id=approval.id,
        notification_type=notification_type,
        channel=channel,
        recipient=recipient,
        now=current,
    )
    if row is None:
        return "skipped"
    variables = _template_vars(db, approval, notification_type)
    attempt = row.attempts
    db.commit()

    ok = notification_service.send_notification(
        channel,
        recipient,
        template_id,
        variables,
        idempotency_key=notification_service.idempotency_key("approval", approval.id, notification_type),
    )
    db.execute(
        update(ApprovalNotification)
        .where(ApprovalNotification.id == row.id)
        # a stale reclaim bumps attempts; the late finisher must not overwrite it
        .where(ApprovalNotification.attempts == attempt)
        .values(
            status="sent" if ok else "failed",
            sent_at=current if ok else None,
            last_error=None if ok else f"{channel} delivery failed",
        )
        .execution_options(synchronize_session="fetch")
    )
    db.flush()
    if not ok:
        logger.warning("approval %s %s notification failed (attempt %s)", approval.id, notification_type, attempt)
    return "sent" if ok else "failed"


# -------------------------
# Contractor actions
# -------------------------

def _require_open(approval: ApprovalRequest, *, now: datetime) -> None:
    status = effective_status(approval, now=now)
    if status == "expired":
        raise ApprovalExpired(approval.id)
    if status != "pending":
        raise InvalidState("approval", approval.id, status)


def request_client_approval(
    db: Session,
    *,
    user_id: str,
    approval_id: str,
    now: Optional[datetime] = None,
) -> str:
    approval = require_approval(db, user_id=user_id, approval_id=approval_id)
    current = _as_utc(now or utcnow())
    _require_open(approval, now=current)
    if not (approval.client_email or approval.client_phone):
        raise ValidationFailure("client email or phone is required to request approval")
    return dispatch_approval_notification(db, approval, "initial", now=current)


def resend_approval_request(
    db: Session,
    *,
    user_id: str,
    approval_id: str,
    now: Optional[datetime] = None,
) -> bool:
    """Re-send the link. The deadline is unchanged."""
    approval = require_approval(db, user_id=user_id, approval_id=approval_id)
    current = _as_utc(now or utcnow())
    _require_open(approval, now=current)
    channel, recipient = _recipient(db, approval, "client")
    return notification_service.send_notification(
        channel,
        recipient,
        "approval_request",
        _template_vars(db, approval, "initial"),
        idempotency_key=notification_service.idempotency_key(
            "approval", approval.id, "resend", current.strftime("%Y%m%d%H%M")
        ),
    )


def cancel_approval_request(db: Session, *, user_id: str, approval_id: str) -> None:
    approval = require_approval(db, user_id=user_id, approval_id=approval_id)
    result = db.execute(
        delete(ApprovalRequest)
        .where(ApprovalRequest.id == approval.id, ApprovalRequest.status == "pending")
        .execution_options(synchronize_session="fetch")
    )
    if result.rowcount != 1:
        db.refresh(approval)
        raise InvalidState("approval", approval.id, approval.status, "only pending approvals can be cancelled")
    logger.info("approval %s cancelled by user %s", approval_id, user_id)


# -------------------------
# Client response
# -------------------------

def respond_to_approval(
    db: Session,
    *,
    token: str,
    decision: str,
    client_email: Optional[str] = None,
    feedback: Optional[str] = None,
    now: Optional[datetime] = None,
) -> ApprovalRequest:
    """Client approve/decline. Races the expiry sweep through the same pending guard."""
    target = DECISIONS.get(decision)
    if target is None:
        raise ValidationFailure(f"invalid decision: {decision}")
    approval = get_by_token(db, token)
    stamp = _as_utc(now or utcnow())

    values: dict = {"status": target, "updated_at": stamp}
    responder = (client_email or approval.client_email or "").strip().lower() or None
    if target == "approved":
        values.update(approved_at=stamp, approved_by=responder)
    if feedback:
        values.update(feedback=feedback.strip(), feedback_from=responder, feedback_at=stamp)

    result = db.execute(
        update(ApprovalRequest)
        .where(
            ApprovalRequest.id == approval.id,
            ApprovalRequest.status == "pending",
            ApprovalRequest.token_expires_at > stamp,
        )
        .values(**values)
        .execution_options(synchronize_session="fetch")
    )
    db.refresh(approval)
    if result.rowcount != 1:
        if approval.status in ("pending", "expired"):
            raise ApprovalExpired(approval.id)
        raise InvalidState("approval", approval.id, approval.status)

    logger.info("approval %s %s by %s", approval.id, target, responder)
    if target == "approved":
        if approval.project_id:
            approval.invoice_line_item_id = billing_service.create_invoice_line_item(
                db,
                project_id=approval.project_id,
                description=approval.description,
                amount_cents=approval.estimated_cost_cents,
                source_type="SCOPE",
                source_id=approval.id,
            )
            db.flush()
        ingest_service.on_scope_approved(db, approval.id, trigger="client_approved")

    dispatch_approval_notification(db, approval, target, now=stamp)
    return approval


# -------------------------
# Scheduler transitions
# -------------------------

def expire_if_due(db: Session, approval_id: str, *, now: datetime) -> bool:
    """pending -> expired once the deadline passed. True only for the caller that moved it."""
    stamp = _as_utc(now)
    result = db.execute(
        update(ApprovalRequest)
        .where(
            ApprovalRequest.id == approval_id,
            ApprovalRequest.status == "pending",
            ApprovalRequest.token_expires_at <= stamp,
        )
        .values(status="expired", expired_at=stamp, updated_at=stamp)
        .execution_options(synchronize_session="fetch")
    )
    return result.rowcount == 1
