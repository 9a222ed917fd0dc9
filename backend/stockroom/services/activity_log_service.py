"""Activity log service.

``log_activity`` is called by every mutating service operation. It adds
the entry to the caller's session so the log row commits (or rolls back)
together with the business change it describes.
"""

import logging
from typing import Any, Optional

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from sqlalchemy.orm import Session

from stockroom.core.config import settings
from stockroom.core.permissions import Permission, can_user
from stockroom.models.activity_log import ActivityLog
from stockroom.models.user import User

logger = logging.getLogger("activity")


def log_activity(
    db: Session,
    action: str,
    actor_user_id: Optional[int],
    entity: str,
    entity_id: Any = None,
    changes: Optional[dict[str, Any]] = None,
    ip_address: Optional[str] = None,
) -> Optional[ActivityLog]:
    """Write an activity log entry inside the caller's transaction.

    The caller's pending rows are flushed first and their errors propagate.
    The entry itself is written under a savepoint; if that fails the
    failure is logged and the caller's transaction is left intact.
    """
    db.flush()
    try:
        entry = ActivityLog(
            user_id=actor_user_id,
            action=action,
            entity=entity,
            entity_id=str(entity_id) if entity_id is not None else None,
            changes=jsonable_encoder(changes or {}),
            ip_address=ip_address,
        )
        with db.begin_nested():
            db.add(entry)
        return entry
    except Exception:
        logger.exception(f"Failed to write activity log entry {action} for {entity}")
        return None


def get_request_ip_address(request: Optional[Request]) -> Optional[str]:
    """Best-effort client IP.

    With ``TRUSTED_PROXY_HOPS`` = N > 0 the N-th address from the right of
    ``X-Forwarded-For`` is used. Otherwise ``X-Real-IP``, then the socket peer.
    """
    if request is None:
        return None

    hops = settings.trusted_proxy_hops
    if hops > 0:
        forwarded = request.headers.get("X-Forwarded-For", "")
        addresses = [part.strip() for part in forwarded.split(",") if part.strip()]
        if len(addresses) >= hops:
            return addresses[-hops]

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()

    if request.client:
        return request.client.host
    return None


class ActivityLogService:
    """Read side of the activity log."""

    def __init__(self, db: Session):
        self.db = db

    def list_logs(
        self,
        actor: User,
        action: Optional[str] = None,
        entity: Optional[str] = None,
        user_id: Optional[int] = None,
        skip: int = 0,
        limit: int = 100,
    ) -> tuple[list[ActivityLog], int]:
        """List entries visible to ``actor``, newest first.

        Users without ``audit_log.view_all`` only ever see their own entries,
        whatever ``user_id`` filter they pass.
        """
        query = self.db.query(ActivityLog)

        if can_user(actor, Permission.AUDIT_LOG_VIEW_ALL):
            if user_id is not None:
                query = query.filter(ActivityLog.user_id == user_id)
        else:
            query = query.filter(ActivityLog.user_id == actor.id)

        if action:
            query = query.filter(ActivityLog.action.contains(action))
        if entity:
            query = query.filter(ActivityLog.entity == entity)

        total = query.count()
        logs = (
            query.order_by(ActivityLog.created_at.desc(), ActivityLog.id.desc())
            .offset(skip)
            .limit(limit)
            .all()
        )
        return logs, total
