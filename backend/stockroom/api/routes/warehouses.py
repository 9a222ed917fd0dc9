"""Warehouse routes."""

from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Request

from stockroom.core.permissions import Permission
from stockroom.core.rate_limit import limiter
from stockroom.core.rbac import CurrentUser, require_permission
from stockroom.core.responses import list_response
from stockroom.db.session import DbSession
from stockroom.models.user import User
from stockroom.schemas.warehouse import WarehouseCreate, WarehouseResponse, WarehouseUpdate
from stockroom.services.activity_log_service import get_request_ip_address
from stockroom.services.warehouse_service import WarehouseService

router = APIRouter()


@router.get("/")
@limiter.limit("60/minute")
def list_warehouses(
    request: Request,
    db: DbSession,
    current_user: CurrentUser,
    search: Optional[str] = None,
    active_only: bool = False,
):
    """List all warehouses."""
    warehouses = WarehouseService(db, current_user).list_warehouses(search=search, active_only=active_only)
    return list_response([WarehouseResponse.model_validate(w) for w in warehouses])


@router.post("/", response_model=WarehouseResponse, status_code=201)
@limiter.limit("30/minute")
def create_warehouse(request: Request, data: WarehouseCreate, db: DbSession, current_user: CurrentUser):
    service = WarehouseService(db, current_user, get_request_ip_address(request))
    return service.create_warehouse(data.model_dump())


@router.get("/{warehouse_id}", response_model=WarehouseResponse)
@limiter.limit("60/minute")
def get_warehouse(
    request: Request,
    warehouse_id: int,
    db: DbSession,
    current_user: Annotated[User, Depends(require_permission(Permission.WAREHOUSES_VIEW_DETAIL))],
):
    return WarehouseService(db, current_user).get_warehouse(warehouse_id)


@router.put("/{warehouse_id}", response_model=WarehouseResponse)
@limiter.limit("30/minute")
def update_warehouse(
    request: Request, warehouse_id: int, data: WarehouseUpdate, db: DbSession, current_user: CurrentUser
):
    service = WarehouseService(db, current_user, get_request_ip_address(request))
    return service.update_warehouse(warehouse_id, data.model_dump(exclude_unset=True))


@router.delete("/{warehouse_id}", status_code=204)
@limiter.limit("30/minute")
def delete_warehouse(request: Request, warehouse_id: int, db: DbSession, current_user: CurrentUser):
    """Soft delete an empty warehouse."""
    WarehouseService(db, current_user, get_request_ip_address(request)).delete_warehouse(warehouse_id)
