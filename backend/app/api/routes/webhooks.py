from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from backend.app import config
from backend.app.db import get_db
from backend.app.domain.errors import TransientDependencyFailure, ValidationFailure
from backend.app.integrations import get_adapter
from backend.app.services.webhook_service import (
    WebhookNotConfigured,
    WebhookSignatureInvalid,
    handle_provider_event,
)


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


async def _handle(provider: str, request: Request, db: Session) -> dict:
    body = await request.body()
    adapter = get_adapter(provider)
    try:
        outcome = handle_provider_event(
            db,
            provider=provider,
            raw_body=body,
            signature_header=request.headers.get(adapter.signature_header),
            provider_secret=config.webhook_secret(provider),
        )
    except WebhookNotConfigured as exc:
        logger.error("%s", exc)
        raise HTTPException(status_code=500, detail="webhook secret not configured") from exc
    except WebhookSignatureInvalid as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except ValidationFailure as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except TransientDependencyFailure as exc:
        db.rollback()
        # non-2xx so the provider redelivers
        raise HTTPException(status_code=503, detail="temporarily unavailable") from exc
    db.commit()
    return {
        "ok": True,
        "provider": provider,
        "status": outcome.status,
        "already_processed": outcome.already_processed,
        "event_id": outcome.event_id,
        "event_type": outcome.event_type,
    }


@router.post("/stripe")
async def stripe_webhook(request: Request, db: Session = Depends(get_db)):
    return await _handle("stripe", request, db)


@router.post("/flutterwave")
async def flutterwave_webhook(request: Request, db: Session = Depends(get_db)):
    return await _handle("flutterwave", request, db)


@router.post("/revenuecat")
async def revenuecat_webhook(request: Request, db: Session = Depends(get_db)):
    return await _handle("revenuecat", request, db)
