"""Purchase order routes.

Lifecycle: DRAFT -> SUBMITTED -> APPROVED -> PARTIALLY_RECEIVED -> RECEIVED,
with CANCELLED reachable until anything has been received.
"""

from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Query, Request

from stockroom.core.permissions import Permission
from stockroom.core.rate_limit import limiter
from stockroom.core.rbac import CurrentUser, require_permission
from stockroom.core.responses import paginated_response
from stockroom.db.session import DbSession
from stockroom.models.user import User
from stockroom.schemas.inventory import GoodsReceiptResponse
from stockroom.schemas.purchase_order import (
    PurchaseOrderCreate,
    PurchaseOrderReason,
    PurchaseOrderResponse,
    ReceiveGoodsRequest,
)
from stockroom.services.activity_log_service import get_request_ip_address
from stockroom.services.purchase_order_service import PurchaseOrderService

router = APIRouter()


def _service(request: Request, db, current_user) -> PurchaseOrderService:
    return PurchaseOrderService(db, current_user, get_request_ip_address(request))


@router.get("/")
@limiter.limit("60/minute")
def list_purchase_orders(
    request: Request,
    db: DbSession,
    current_user: Annotated[User, Depends(require_permission(Permission.PURCHASE_ORDERS_VIEW_LIST))],
    status: Optional[str] = None,
    supplier_id: Optional[int] = None,
    search: Optional[str] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=500),
):
    """List purchase orders, newest first."""
    orders, total = _service(request, db, current_user).list_orders(
        status=status, supplier_id=supplier_id, search=search, skip=skip, limit=limit
    )
    return paginated_response([PurchaseOrderResponse.model_validate(o) for o in orders], total, skip, limit)


@router.post("/", response_model=PurchaseOrderResponse, status_code=201)
@limiter.limit("30/minute")
def create_purchase_order(request: Request, data: PurchaseOrderCreate, db: DbSession, current_user: CurrentUser):
    """Create a draft purchase order."""
    return _service(request, db, current_user).create_order(
        supplier_id=data.supplier_id,
        items=[item.model_dump() for item in data.items],
        tax_amount=data.tax_amount,
        shipping_cost=data.shipping_cost,
        expected_date=data.expected_date,
        notes=data.notes,
    )


@router.get("/{order_id}", response_model=PurchaseOrderResponse)
@limiter.limit("60/minute")
def get_purchase_order(
    request: Request,
    order_id: int,
    db: DbSession,
    current_user: Annotated[User, Depends(require_permission(Permission.PURCHASE_ORDERS_VIEW_DETAIL))],
):
    return _service(request, db, current_user).get_order(order_id)


@router.put("/{order_id}", response_model=PurchaseOrderResponse)
@limiter.limit("30/minute")
def update_purchase_order(
    request: Request, order_id: int, data: PurchaseOrderCreate, db: DbSession, current_user: CurrentUser
):
    """Replace the lines and header of a draft."""
    return _service(request, db, current_user).update_draft(
        order_id,
        supplier_id=data.supplier_id,
        items=[item.model_dump() for item in data.items],
        tax_amount=data.tax_amount,
        shipping_cost=data.shipping_cost,
        expected_date=data.expected_date,
        notes=data.notes,
    )


# ==================== TRANSITIONS ====================

@router.post("/{order_id}/submit", response_model=PurchaseOrderResponse)
@limiter.limit("30/minute")
def submit_purchase_order(request: Request, order_id: int, db: DbSession, current_user: CurrentUser):
    return _service(request, db, current_user).submit_order(order_id)


@router.post("/{order_id}/approve", response_model=PurchaseOrderResponse)
@limiter.limit("30/minute")
def approve_purchase_order(request: Request, order_id: int, db: DbSession, current_user: CurrentUser):
    return _service(request, db, current_user).approve_order(order_id)


@router.post("/{order_id}/reject", response_model=PurchaseOrderResponse)
@limiter.limit("30/minute")
def reject_purchase_order(
    request: Request, order_id: int, data: PurchaseOrderReason, db: DbSession, current_user: CurrentUser
):
    """Send a submitted order back to draft."""
    return _service(request, db, current_user).reject_order(order_id, data.reason)


@router.post("/{order_id}/mark-ordered", response_model=PurchaseOrderResponse)
@limiter.limit("30/minute")
def mark_purchase_order_ordered(request: Request, order_id: int, db: DbSession, current_user: CurrentUser):
    return _service(request, db, current_user).mark_ordered(order_id)


@router.post("/{order_id}/cancel", response_model=PurchaseOrderResponse)
@limiter.limit("30/minute")
def cancel_purchase_order(
    request: Request, order_id: int, data: PurchaseOrderReason, db: DbSession, current_user: CurrentUser
):
    return _service(request, db, current_user).cancel_order(order_id, data.reason)


# ==================== RECEIVING ====================

@router.post("/{order_id}/receive", response_model=GoodsReceiptResponse, status_code=201)
@limiter.limit("30/minute")
def receive_purchase_order(
    request: Request, order_id: int, data: ReceiveGoodsRequest, db: DbSession, current_user: CurrentUser
):
    """Receive goods against an approved order."""
    return _service(request, db, current_user).receive_goods(
        order_id,
        [item.model_dump() for item in data.items],
        received_date=data.received_date,
        notes=data.notes,
        idempotency_key=data.idempotency_key,
    )
