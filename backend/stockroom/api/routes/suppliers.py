"""Supplier routes."""

from typing import Optional

from fastapi import APIRouter, Query, Request

from stockroom.core.rate_limit import limiter
from stockroom.core.rbac import CurrentUser
from stockroom.core.responses import paginated_response
from stockroom.db.session import DbSession
from stockroom.schemas.partner import SupplierCreate, SupplierResponse, SupplierUpdate
from stockroom.services.activity_log_service import get_request_ip_address
from stockroom.services.partner_service import SupplierService

router = APIRouter()


# ==================== CORE CRUD ====================

@router.get("/")
@limiter.limit("60/minute")
def list_suppliers(
    request: Request,
    db: DbSession,
    current_user: CurrentUser,
    search: Optional[str] = None,
    active_only: bool = False,
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=500),
):
    """List all suppliers."""
    suppliers, total = SupplierService(db, current_user).list(
        search=search, active_only=active_only, skip=skip, limit=limit
    )
    return paginated_response([SupplierResponse.model_validate(s) for s in suppliers], total, skip, limit)


@router.post("/", response_model=SupplierResponse, status_code=201)
@limiter.limit("30/minute")
def create_supplier(request: Request, data: SupplierCreate, db: DbSession, current_user: CurrentUser):
    """Create a new supplier."""
    return SupplierService(db, current_user, get_request_ip_address(request)).create(data.model_dump())


@router.get("/{supplier_id}", response_model=SupplierResponse)
@limiter.limit("60/minute")
def get_supplier(request: Request, supplier_id: int, db: DbSession, current_user: CurrentUser):
    """Get a specific supplier."""
    service = SupplierService(db, current_user)
    service.require(service.view_permission)
    return service.get(supplier_id)


@router.put("/{supplier_id}", response_model=SupplierResponse)
@limiter.limit("30/minute")
def update_supplier(request: Request, supplier_id: int, data: SupplierUpdate, db: DbSession, current_user: CurrentUser):
    """Update a supplier."""
    service = SupplierService(db, current_user, get_request_ip_address(request))
    return service.update(supplier_id, data.model_dump(exclude_unset=True))


@router.delete("/{supplier_id}", response_model=SupplierResponse)
@limiter.limit("30/minute")
def delete_supplier(request: Request, supplier_id: int, db: DbSession, current_user: CurrentUser):
    """Deactivate a supplier. The row stays for historical purchase orders."""
    return SupplierService(db, current_user, get_request_ip_address(request)).deactivate(supplier_id)
