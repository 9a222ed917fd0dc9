"""Approvals inbox route."""

from fastapi import APIRouter, Request

from stockroom.core.rate_limit import limiter
from stockroom.core.rbac import CurrentUser
from stockroom.db.session import DbSession
from stockroom.schemas.approval import ApprovalInbox
from stockroom.services.approval_service import ApprovalService

router = APIRouter()


@router.get("/", response_model=ApprovalInbox)
@limiter.limit("60/minute")
def approvals_inbox(request: Request, db: DbSession, current_user: CurrentUser):
    """Submitted purchase orders and parked large adjustments."""
    return ApprovalService(db, current_user).inbox()
