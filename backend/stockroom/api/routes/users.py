"""User administration routes."""

from typing import Optional

from fastapi import APIRouter, Query, Request

from stockroom.core.rate_limit import limiter
from stockroom.core.rbac import CurrentUser
from stockroom.core.responses import paginated_response
from stockroom.db.session import DbSession
from stockroom.schemas.user import UserCreate, UserResponse, UserUpdate
from stockroom.services.activity_log_service import get_request_ip_address
from stockroom.services.user_service import UserService

router = APIRouter()


def _service(request: Request, db, current_user) -> UserService:
    return UserService(db, current_user, get_request_ip_address(request))


@router.get("/")
@limiter.limit("60/minute")
def list_users(
    request: Request,
    db: DbSession,
    current_user: CurrentUser,
    search: Optional[str] = None,
    role: Optional[str] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
):
    """List user accounts."""
    users, total = _service(request, db, current_user).list(search=search, role=role, skip=skip, limit=limit)
    items = [UserResponse.model_validate(u) for u in users]
    return paginated_response(items, total, skip, limit)


@router.post("/", response_model=UserResponse, status_code=201)
@limiter.limit("30/minute")
def create_user(request: Request, data: UserCreate, db: DbSession, current_user: CurrentUser):
    """Create a user account with a role."""
    return _service(request, db, current_user).create(
        email=data.email, password=data.password, role=data.role.value, name=data.name
    )


@router.get("/{user_id}", response_model=UserResponse)
@limiter.limit("60/minute")
def get_user(request: Request, user_id: int, db: DbSession, current_user: CurrentUser):
    return _service(request, db, current_user).view(user_id)


@router.put("/{user_id}", response_model=UserResponse)
@limiter.limit("30/minute")
def update_user(request: Request, user_id: int, data: UserUpdate, db: DbSession, current_user: CurrentUser):
    """Update name, role or active flag."""
    return _service(request, db, current_user).update(user_id, data.model_dump(mode="json", exclude_unset=True))


@router.delete("/{user_id}", response_model=UserResponse)
@limiter.limit("30/minute")
def deactivate_user(request: Request, user_id: int, db: DbSession, current_user: CurrentUser):
    """Deactivate a user account. Accounts are never hard deleted."""
    return _service(request, db, current_user).deactivate(user_id)
