from __future__ import annotations

import logging
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from sqlalchemy import exists, or_, select
from sqlalchemy.orm import Session

from backend.app import config
from backend.app.db import SessionLocal
from backend.app.models import Alert, ApprovalNotification, ApprovalRequest, Invoice, SchedulerRun
from backend.app.services import alert_service, approval_service, ingest_service


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SweepError:
    item_id: Optional[str]
    message: str


@dataclass(frozen=True)
class SweepResult:
    sweep: str
    scanned: int = 0
    changed: int = 0
    notifications_sent: int = 0
    notifications_failed: int = 0
    errors: list[dict] = field(default_factory=list)


@dataclass(frozen=True)
class SchedulerTickResult:
    run_id: str
    started_at: str
    finished_at: str
    sweeps: list[dict]


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _notification_done(notification_type: str, now: datetime):
    """Correlated EXISTS: a record of this type needs nothing more from this sweep."""
    return exists().where(
        ApprovalNotification.approval_request_id == ApprovalRequest.id,
        ApprovalNotification.notification_type == notification_type,
        approval_service.settled_notification(now=now),
    )


def _tally(outcome: str, sent: int, failed: int) -> tuple[int, int]:
    if outcome == "sent":
        return sent + 1, failed
    if outcome == "failed":
        return sent, failed + 1
    return sent, failed


def run_reminder_sweep(db: Session, *, now: Optional[datetime] = None) -> SweepResult:
    current = now or _now_utc()
    window_end = current + timedelta(hours=config.reminder_lead_hours())
    ids = db.execute(
        select(ApprovalRequest.id)
        .where(
            ApprovalRequest.status == "pending",
            ApprovalRequest.token_expires_at > current,
            ApprovalRequest.token_expires_at <= window_end,
            ~_notification_done("reminder", current),
        )
        .order_by(ApprovalRequest.token_expires_at.asc())
    ).scalars().all()

    sent = failed = 0
    errors: list[SweepError] = []
    for approval_id in ids:
        try:
            approval = db.get(ApprovalRequest, approval_id)
            if approval is None or approval.status != "pending":
                continue
            outcome = approval_service.dispatch_approval_notification(db, approval, "reminder", now=current)
            db.commit()
            sent, failed = _tally(outcome, sent, failed)
        except Exception as exc:
            db.rollback()
            logger.exception("reminder for approval %s failed", approval_id)
            errors.append(SweepError(item_id=approval_id, message=str(exc)))

    return SweepResult(
        sweep="reminders",
        scanned=len(ids),
        notifications_sent=sent,
        notifications_failed=failed,
        errors=[asdict(err) for err in errors],
    )


def run_expiry_sweep(db: Session, *, now: Optional[datetime] = None) -> SweepResult:
    current = now or _now_utc()
    due = db.execute(
        select(ApprovalRequest.id).where(
            ApprovalRequest.status == "pending",
            ApprovalRequest.token_expires_at <= current,
        )
    ).scalars().all()

    changed = 0
    errors: list[SweepError] = []
    for approval_id in due:
        try:
            if approval_service.expire_if_due(db, approval_id, now=current):
                changed += 1
            db.commit()
        except Exception as exc:
            db.rollback()
            logger.exception("expiring approval %s failed", approval_id)
            errors.append(SweepError(item_id=approval_id, message=str(exc)))

    # newly expired rows plus earlier ones whose notice has not gone out yet
    pending_notice = db.execute(
        select(ApprovalRequest.id).where(
            ApprovalRequest.status == "expired",
            ~_notification_done("expiry", current),
        )
    ).scalars().all()
    sent = failed = 0
    for approval_id in pending_notice:
        try:
            approval = db.get(ApprovalRequest, approval_id)
            outcome = approval_service.dispatch_approval_notification(db, approval, "expiry", now=current)
            db.commit()
            sent, failed = _tally(outcome, sent, failed)
        except Exception as exc:
            db.rollback()
            logger.exception("expiry notice for approval %s failed", approval_id)
            errors.append(SweepError(item_id=approval_id, message=str(exc)))

    return SweepResult(
        sweep="expirations",
        scanned=len(due),
        changed=changed,
        notifications_sent=sent,
        notifications_failed=failed,
        errors=[asdict(err) for err in errors],
    )


def run_invoice_alert_sweep(db: Session, *, now: Optional[datetime] = None) -> SweepResult:
    """Durational INVOICE_NOT_SENT: open for stale drafts, close when the draft went out or vanished."""
    current = now or _now_utc()
    cutoff = current - timedelta(hours=config.invoice_not_sent_hours())
    stale = db.execute(
        select(Invoice.id)
        .where(Invoice.status == "draft", Invoice.created_at <= cutoff)
        .order_by(Invoice.created_at.asc())
    ).scalars().all()

    changed = 0
    errors: list[SweepError] = []
    for invoice_id in stale:
        try:
            outcome = ingest_service.on_invoice_state_changed(db, invoice_id, "draft", now=current)
            db.commit()
            changed += outcome.opened
        except Exception as exc:
            db.rollback()
            logger.exception("invoice alert evaluation for %s failed", invoice_id)
            errors.append(SweepError(item_id=invoice_id, message=str(exc)))

    orphaned = db.execute(
        select(Alert.id, Alert.user_id, Alert.source_id)
        .outerjoin(Invoice, Invoice.id == Alert.source_id)
        .where(
            Alert.type == "INVOICE_NOT_SENT",
            Alert.status == "open",
            or_(Invoice.id.is_(None), Invoice.status != "draft"),
        )
    ).all()
    for alert_id, user_id, source_id in orphaned:
        try:
            changed += alert_service.fix_alerts_for_source(
                db,
                user_id=user_id,
                alert_type="INVOICE_NOT_SENT",
                source_id=source_id,
                trigger="invoice_sweep",
                now=current,
            )
            db.commit()
        except Exception as exc:
            db.rollback()
            logger.exception("reconciling alert %s failed", alert_id)
            errors.append(SweepError(item_id=alert_id, message=str(exc)))

    return SweepResult(
        sweep="invoice_alerts",
        scanned=len(stale) + len(orphaned),
        changed=changed,
        errors=[asdict(err) for err in errors],
    )


SWEEPS: tuple[tuple[str, Callable[..., SweepResult]], ...] = (
    ("reminders", run_reminder_sweep),
    ("expirations", run_expiry_sweep),
    ("invoice_alerts", run_invoice_alert_sweep),
)


def run_tick(
    *,
    now: Optional[datetime] = None,
    session_factory: Optional[Callable[[], Session]] = None,
) -> SchedulerTickResult:
    """One pass of every sweep. Each sweep gets its own session; one failing never stops the rest."""
    factory = session_factory or SessionLocal
    current = now or _now_utc()
    started_at = _now_utc()

    with factory() as db:
        run = SchedulerRun(started_at=started_at)
        db.add(run)
        db.commit()
        run_id = run.id

    results: list[dict] = []
    for name, sweep in SWEEPS:
        db = factory()
        try:
            result = sweep(db, now=current)
            db.commit()
        except Exception as exc:
            db.rollback()
            logger.exception("scheduler sweep %s failed", name)
            result = SweepResult(sweep=name, errors=[asdict(SweepError(item_id=None, message=str(exc)))])
        finally:
            db.close()
        results.append(asdict(result))

    finished_at = _now_utc()
    tick = SchedulerTickResult(
        run_id=run_id,
        started_at=started_at.isoformat(),
        finished_at=finished_at.isoformat(),
        sweeps=results,
    )
    with factory() as db:
        run = db.get(SchedulerRun, run_id)
        run.finished_at = finished_at
        run.result_json = asdict(tick)
        db.commit()
    return tick


def get_last_run(db: Session) -> Optional[SchedulerRun]:
    return (
        db.execute(
            select(SchedulerRun)
            .where(SchedulerRun.finished_at.is_not(None))
            .order_by(SchedulerRun.finished_at.desc(), SchedulerRun.id.desc())
        )
        .scalars()
        .first()
    )


class SchedulerLoop:
    """Background thread that runs a tick every interval and always reschedules."""

    def __init__(
        self,
        *,
        interval_seconds: Optional[int] = None,
        session_factory: Optional[Callable[[], Session]] = None,
    ):
        self.interval_seconds = interval_seconds or config.scheduler_interval_seconds()
        self._session_factory = session_factory
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="revenue-scheduler", daemon=True)
        self._thread.start()
        logger.info("scheduler started (interval=%ss)", self.interval_seconds)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
        self._thread = None

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                run_tick(session_factory=self._session_factory)
            except Exception:
                logger.exception("scheduler tick failed")
            self._stop.wait(self.interval_seconds)
