"""Sales order routes."""

from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Query, Request

from stockroom.core.permissions import Permission
from stockroom.core.rate_limit import limiter
from stockroom.core.rbac import CurrentUser, require_permission
from stockroom.core.responses import paginated_response
from stockroom.db.session import DbSession
from stockroom.models.user import User
from stockroom.schemas.sales_order import (
    CancelOrderRequest,
    DeliverOrderRequest,
    SalesOrderCreate,
    SalesOrderResponse,
    ShipOrderRequest,
    ShipOrderResult,
)
from stockroom.services.activity_log_service import get_request_ip_address
from stockroom.services.sales_order_service import SalesOrderService

router = APIRouter()


def _service(request: Request, db, current_user) -> SalesOrderService:
    return SalesOrderService(db, current_user, get_request_ip_address(request))


def _order_fields(data: SalesOrderCreate) -> dict:
    return {
        "customer_id": data.customer_id,
        "items": [item.model_dump() for item in data.items],
        "tax_amount": data.tax_amount,
        "shipping_cost": data.shipping_cost,
        "required_date": data.required_date,
        "shipping_address": data.shipping_address,
        "notes": data.notes,
    }


@router.get("/")
@limiter.limit("60/minute")
def list_sales_orders(
    request: Request,
    db: DbSession,
    current_user: Annotated[User, Depends(require_permission(Permission.SALES_ORDERS_VIEW_LIST))],
    status: Optional[str] = None,
    customer_id: Optional[int] = None,
    search: Optional[str] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=500),
):
    orders, total = _service(request, db, current_user).list_orders(
        status=status, customer_id=customer_id, search=search, skip=skip, limit=limit
    )
    return paginated_response([SalesOrderResponse.model_validate(o) for o in orders], total, skip, limit)


@router.post("/", response_model=SalesOrderResponse, status_code=201)
@limiter.limit("30/minute")
def create_sales_order(request: Request, data: SalesOrderCreate, db: DbSession, current_user: CurrentUser):
    """Create a draft sales order. Orders over the customer's credit limit need a manager."""
    return _service(request, db, current_user).create_order(**_order_fields(data))


@router.get("/{order_id}", response_model=SalesOrderResponse)
@limiter.limit("60/minute")
def get_sales_order(
    request: Request,
    order_id: int,
    db: DbSession,
    current_user: Annotated[User, Depends(require_permission(Permission.SALES_ORDERS_VIEW_DETAIL))],
):
    return _service(request, db, current_user).get_order(order_id)


@router.put("/{order_id}", response_model=SalesOrderResponse)
@limiter.limit("30/minute")
def update_sales_order(
    request: Request, order_id: int, data: SalesOrderCreate, db: DbSession, current_user: CurrentUser
):
    return _service(request, db, current_user).update_draft(order_id, **_order_fields(data))


@router.delete("/{order_id}", status_code=204)
@limiter.limit("30/minute")
def delete_sales_order(request: Request, order_id: int, db: DbSession, current_user: CurrentUser):
    _service(request, db, current_user).delete_draft(order_id)


# ==================== LIFECYCLE ====================

@router.post("/{order_id}/confirm", response_model=SalesOrderResponse)
@limiter.limit("30/minute")
def confirm_sales_order(request: Request, order_id: int, db: DbSession, current_user: CurrentUser):
    """Confirm a draft and reserve its stock first-expired-first-out."""
    return _service(request, db, current_user).confirm_order(order_id)


@router.post("/{order_id}/ship", response_model=ShipOrderResult, status_code=201)
@limiter.limit("30/minute")
def ship_sales_order(request: Request, order_id: int, data: ShipOrderRequest, db: DbSession, current_user: CurrentUser):
    result = _service(request, db, current_user).ship_order(
        order_id,
        [item.model_dump() for item in data.items],
        carrier=data.carrier,
        tracking_number=data.tracking_number,
        shipped_date=data.shipped_date,
        notes=data.notes,
    )
    return {
        "shipment": result["shipment"],
        "order": result["order"],
        "transaction_number": result["transaction"].transaction_number,
    }


@router.post("/{order_id}/cancel", response_model=SalesOrderResponse)
@limiter.limit("30/minute")
def cancel_sales_order(
    request: Request, order_id: int, data: CancelOrderRequest, db: DbSession, current_user: CurrentUser
):
    """Cancel a draft or confirmed order, releasing its reservations."""
    return _service(request, db, current_user).cancel_order(order_id, data.reason)


@router.post("/{order_id}/deliver", response_model=SalesOrderResponse)
@limiter.limit("30/minute")
def mark_sales_order_delivered(
    request: Request, order_id: int, data: DeliverOrderRequest, db: DbSession, current_user: CurrentUser
):
    return _service(request, db, current_user).mark_delivered(order_id, data.delivered_at)
