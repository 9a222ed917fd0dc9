"""Storage location routes."""

from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Request

from stockroom.core.permissions import Permission
from stockroom.core.rate_limit import limiter
from stockroom.core.rbac import CurrentUser, require_permission
from stockroom.core.responses import list_response
from stockroom.db.session import DbSession
from stockroom.models.user import User
from stockroom.schemas.warehouse import LocationCreate, LocationResponse, LocationUpdate
from stockroom.services.activity_log_service import get_request_ip_address
from stockroom.services.warehouse_service import WarehouseService

router = APIRouter()


@router.get("/")
@limiter.limit("60/minute")
def list_locations(
    request: Request,
    db: DbSession,
    current_user: CurrentUser,
    warehouse_id: Optional[int] = None,
    type: Optional[str] = None,
    active_only: bool = False,
):
    """List locations, optionally for one warehouse."""
    locations = WarehouseService(db, current_user).list_locations(
        warehouse_id=warehouse_id, type=type, active_only=active_only
    )
    return list_response([LocationResponse.model_validate(loc) for loc in locations])


@router.post("/", response_model=LocationResponse, status_code=201)
@limiter.limit("30/minute")
def create_location(request: Request, data: LocationCreate, db: DbSession, current_user: CurrentUser):
    """Create a new location."""
    service = WarehouseService(db, current_user, get_request_ip_address(request))
    return service.create_location(data.model_dump(mode="json"))


@router.get("/{location_id}", response_model=LocationResponse)
@limiter.limit("60/minute")
def get_location(
    request: Request,
    location_id: int,
    db: DbSession,
    current_user: Annotated[User, Depends(require_permission(Permission.LOCATIONS_VIEW))],
):
    return WarehouseService(db, current_user).get_location(location_id)


@router.put("/{location_id}", response_model=LocationResponse)
@limiter.limit("30/minute")
def update_location(request: Request, location_id: int, data: LocationUpdate, db: DbSession, current_user: CurrentUser):
    """Update a location. Changing its type needs ``locations.set_type``."""
    service = WarehouseService(db, current_user, get_request_ip_address(request))
    return service.update_location(location_id, data.model_dump(mode="json", exclude_unset=True))
