from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from backend.app.models import ProcessedWebhookEvent, utcnow


logger = logging.getLogger(__name__)


def has_processed(db: Session, *, provider: str, event_id: str) -> bool:
    existing = db.execute(
        select(ProcessedWebhookEvent.id).where(
            ProcessedWebhookEvent.provider == provider,
            ProcessedWebhookEvent.event_id == event_id,
        )
    ).scalar_one_or_none()
    return existing is not None


def mark_processed(
    db: Session,
    *,
    provider: str,
    event_id: str,
    event_type: str,
    metadata: Optional[dict] = None,
) -> bool:
    """Record an event as handled. Returns False when another delivery already recorded it.

    Runs in the caller's unit of work so the ledger row commits together with
    the state change it guards.
    """
    try:
        with db.begin_nested():
            db.add(
                ProcessedWebhookEvent(
                    provider=provider,
                    event_id=event_id,
                    event_type=event_type,
                    metadata_json=metadata,
                    processed_at=utcnow(),
                )
            )
            db.flush()
    except IntegrityError:
        logger.info("ledger: %s event %s already recorded", provider, event_id)
        return False
    return True


def get_processed(db: Session, *, provider: str, event_id: str) -> Optional[ProcessedWebhookEvent]:
    return db.execute(
        select(ProcessedWebhookEvent).where(
            ProcessedWebhookEvent.provider == provider,
            ProcessedWebhookEvent.event_id == event_id,
        )
    ).scalars().first()
