from __future__ import annotations

from datetime import datetime
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from backend.app.api.deps import get_current_user, http_error
from backend.app.db import get_db
from backend.app.domain.errors import ApprovalExpired, EngineError, InvalidState
from backend.app.models import User
from backend.app.services import approval_service


router = APIRouter(prefix="/api/approvals", tags=["approvals"])


class ApprovalOut(BaseModel):
    id: str
    user_id: str
    project_id: Optional[str]
    description: str
    estimated_cost_cents: int
    photo_urls: list[str]
    status: str
    client_email: Optional[str]
    client_phone: Optional[str]
    token_expires_at: datetime
    approved_at: Optional[datetime]
    approved_by: Optional[str]
    feedback: Optional[str]
    feedback_at: Optional[datetime]
    invoice_line_item_id: Optional[str]
    created_at: datetime

    class Config:
        from_attributes = True


class ApprovalCreateIn(BaseModel):
    description: str
    estimated_cost_cents: int = Field(ge=0)
    project_id: Optional[str] = None
    photo_urls: list[str] = Field(default_factory=list)
    client_email: Optional[str] = None
    client_phone: Optional[str] = None
    send_now: bool = True


class ApprovalCreateOut(BaseModel):
    approval: ApprovalOut
    approval_url: str
    notification: Optional[str] = None


class ClientApprovalOut(BaseModel):
    """What the client sees behind the link. No ownership fields."""

    description: str
    estimated_cost_cents: int
    photo_urls: list[str]
    status: str
    token_expires_at: datetime


class ApprovalRespondIn(BaseModel):
    decision: Literal["approve", "decline"]
    client_email: Optional[str] = None
    feedback: Optional[str] = None


class ApprovalRespondOut(BaseModel):
    status: str
    already_handled: bool = False


def _client_view(approval, status: str) -> ClientApprovalOut:
    return ClientApprovalOut(
        description=approval.description,
        estimated_cost_cents=approval.estimated_cost_cents,
        photo_urls=list(approval.photo_urls or []),
        status=status,
        token_expires_at=approval.token_expires_at,
    )


@router.get("", response_model=list[ApprovalOut])
def list_approvals(
    status: Optional[str] = Query(default=None),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return approval_service.list_approvals(db, user_id=user.id, status=status)


@router.post("", response_model=ApprovalCreateOut)
def create_approval(
    req: ApprovalCreateIn,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    try:
        approval = approval_service.create_approval_request(
            db,
            user_id=user.id,
            description=req.description,
            estimated_cost_cents=req.estimated_cost_cents,
            project_id=req.project_id,
            photo_urls=req.photo_urls,
            client_email=req.client_email,
            client_phone=req.client_phone,
        )
        notification = None
        if req.send_now and (approval.client_email or approval.client_phone):
            notification = approval_service.request_client_approval(db, user_id=user.id, approval_id=approval.id)
    except EngineError as exc:
        db.rollback()
        raise http_error(exc) from exc
    db.commit()
    db.refresh(approval)
    return {
        "approval": ApprovalOut.model_validate(approval),
        "approval_url": approval_service.approval_url(approval.approval_token),
        "notification": notification,
    }


@router.post("/{approval_id}/request")
def request_approval(
    approval_id: str,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    try:
        outcome = approval_service.request_client_approval(db, user_id=user.id, approval_id=approval_id)
    except EngineError as exc:
        db.rollback()
        raise http_error(exc) from exc
    db.commit()
    return {"ok": True, "notification": outcome}


@router.post("/{approval_id}/resend")
def resend_approval(
    approval_id: str,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    try:
        sent = approval_service.resend_approval_request(db, user_id=user.id, approval_id=approval_id)
    except EngineError as exc:
        raise http_error(exc) from exc
    return {"ok": True, "sent": sent}


@router.delete("/{approval_id}")
def cancel_approval(
    approval_id: str,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    try:
        approval_service.cancel_approval_request(db, user_id=user.id, approval_id=approval_id)
    except EngineError as exc:
        db.rollback()
        raise http_error(exc) from exc
    db.commit()
    return {"ok": True}


# -------------------------
# Client (token-gated, no user auth)
# -------------------------

@router.get("/token/{token}", response_model=ClientApprovalOut)
def get_client_approval(token: str, db: Session = Depends(get_db)):
    try:
        approval = approval_service.get_by_token(db, token)
    except EngineError as exc:
        raise http_error(exc) from exc
    return _client_view(approval, approval_service.effective_status(approval))


@router.post("/token/{token}/respond", response_model=ApprovalRespondOut)
def respond_to_approval(token: str, req: ApprovalRespondIn, db: Session = Depends(get_db)):
    try:
        approval = approval_service.respond_to_approval(
            db,
            token=token,
            decision=req.decision,
            client_email=req.client_email,
            feedback=req.feedback,
        )
    except ApprovalExpired as exc:
        db.rollback()
        raise http_error(exc) from exc
    except InvalidState as exc:
        db.rollback()
        return {"status": exc.current_status, "already_handled": True}
    except EngineError as exc:
        db.rollback()
        raise http_error(exc) from exc
    db.commit()
    return {"status": approval.status, "already_handled": False}
