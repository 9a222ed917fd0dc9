"""Activity log routes."""

from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Query, Request

from stockroom.core.permissions import Permission
from stockroom.core.rate_limit import limiter
from stockroom.core.rbac import require_permission
from stockroom.core.responses import paginated_response
from stockroom.db.session import DbSession
from stockroom.models.user import User
from stockroom.schemas.activity_log import ActivityLogResponse
from stockroom.services.activity_log_service import ActivityLogService

router = APIRouter()


@router.get("/")
@limiter.limit("60/minute")
def list_activity_logs(
    request: Request,
    db: DbSession,
    current_user: Annotated[User, Depends(require_permission(Permission.AUDIT_LOG_VIEW_OWN))],
    action: Optional[str] = None,
    entity: Optional[str] = None,
    user_id: Optional[int] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
):
    """List activity entries, newest first.

    Without ``audit_log.view_all`` only the caller's own entries are returned.
    """
    logs, total = ActivityLogService(db).list_logs(
        current_user, action=action, entity=entity, user_id=user_id, skip=skip, limit=limit
    )
    return paginated_response([ActivityLogResponse.model_validate(entry) for entry in logs], total, skip, limit)
