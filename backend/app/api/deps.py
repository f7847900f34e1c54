# backend/app/api/deps.py
from __future__ import annotations

import hmac
from datetime import datetime, timezone

from fastapi import Depends, HTTPException, Request
from sqlalchemy import select
from sqlalchemy.orm import Session

from backend.app import config
from backend.app.db import get_db
from backend.app.domain.errors import (
    ApprovalExpired,
    EngineError,
    InvalidState,
    NotFound,
    ValidationFailure,
)
from backend.app.models import User


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def get_current_user(
    request: Request,
    db: Session = Depends(get_db),
) -> User:
    """
    Dev/pilot auth dependency.

    Reads identity from headers:
      - X-User-Email (preferred; will auto-provision user record if missing)
      - X-User-Id    (fallback; must already exist)

    Client approval links never go through here; the token is the credential.
    """
    email = request.headers.get("X-User-Email")
    user_id = request.headers.get("X-User-Id")
    if not email and not user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Email or X-User-Id header")

    if email:
        normalized = email.strip().lower()
        if not normalized:
            raise HTTPException(status_code=401, detail="Invalid X-User-Email header")

        user = db.execute(select(User).where(User.email == normalized)).scalars().first()
        if not user:
            user = User(
                email=normalized,
                name=normalized.split("@")[0],
                created_at=utcnow(),
                updated_at=utcnow(),
            )
            db.add(user)
            db.commit()
            db.refresh(user)
        return user

    user = db.get(User, user_id)
    if not user:
        raise HTTPException(status_code=401, detail="Unknown X-User-Id")
    return user


def require_scheduler_operator(request: Request) -> None:
    """Operator gate for scheduler endpoints. Disabled (404) unless SCHEDULER_OPERATOR_TOKEN is set."""
    expected = config.scheduler_operator_token()
    if not expected:
        raise HTTPException(status_code=404, detail="Scheduler endpoints are disabled.")
    supplied = request.headers.get("X-Scheduler-Token") or ""
    if not hmac.compare_digest(supplied.encode("utf-8"), expected.encode("utf-8")):
        raise HTTPException(status_code=403, detail="Invalid scheduler operator token")


def http_error(exc: EngineError) -> HTTPException:
    """Map domain outcomes to HTTP. InvalidState is handled by callers as an idempotent 200."""
    if isinstance(exc, NotFound):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, ApprovalExpired):
        return HTTPException(status_code=410, detail=str(exc))
    if isinstance(exc, InvalidState):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, ValidationFailure):
        return HTTPException(status_code=400, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))
