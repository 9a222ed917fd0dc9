"""Customer routes."""

from typing import Optional

from fastapi import APIRouter, Query, Request

from stockroom.core.rate_limit import limiter
from stockroom.core.rbac import CurrentUser
from stockroom.core.responses import paginated_response
from stockroom.db.session import DbSession
from stockroom.schemas.partner import CustomerCreate, CustomerResponse, CustomerUpdate
from stockroom.services.activity_log_service import get_request_ip_address
from stockroom.services.partner_service import CustomerService

router = APIRouter()


# ==================== CORE CRUD ====================

@router.get("/")
@limiter.limit("60/minute")
def list_customers(
    request: Request,
    db: DbSession,
    current_user: CurrentUser,
    search: Optional[str] = None,
    active_only: bool = False,
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=500),
):
    """List all customers."""
    customers, total = CustomerService(db, current_user).list(
        search=search, active_only=active_only, skip=skip, limit=limit
    )
    return paginated_response([CustomerResponse.model_validate(s) for s in customers], total, skip, limit)


@router.post("/", response_model=CustomerResponse, status_code=201)
@limiter.limit("30/minute")
def create_customer(request: Request, data: CustomerCreate, db: DbSession, current_user: CurrentUser):
    """Create a new customer."""
    return CustomerService(db, current_user, get_request_ip_address(request)).create(data.model_dump())


@router.get("/{customer_id}", response_model=CustomerResponse)
@limiter.limit("60/minute")
def get_customer(request: Request, customer_id: int, db: DbSession, current_user: CurrentUser):
    """Get a specific customer."""
    service = CustomerService(db, current_user)
    service.require(service.view_permission)
    return service.get(customer_id)


@router.put("/{customer_id}", response_model=CustomerResponse)
@limiter.limit("30/minute")
def update_customer(request: Request, customer_id: int, data: CustomerUpdate, db: DbSession, current_user: CurrentUser):
    """Update a customer. Changing the credit limit needs ``customers.set_credit_limit``."""
    service = CustomerService(db, current_user, get_request_ip_address(request))
    return service.update(customer_id, data.model_dump(exclude_unset=True))


@router.delete("/{customer_id}", response_model=CustomerResponse)
@limiter.limit("30/minute")
def delete_customer(request: Request, customer_id: int, db: DbSession, current_user: CurrentUser):
    """Deactivate a customer. The row stays for historical sales orders."""
    return CustomerService(db, current_user, get_request_ip_address(request)).deactivate(customer_id)
