"""Goods receipt routes."""

from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Query, Request

from stockroom.core.permissions import Permission
from stockroom.core.rate_limit import limiter
from stockroom.core.rbac import CurrentUser, require_permission
from stockroom.core.responses import paginated_response
from stockroom.db.session import DbSession
from stockroom.models.user import User
from stockroom.schemas.inventory import GoodsReceiptCreate, GoodsReceiptResponse
from stockroom.schemas.purchase_order import VoidReceiptRequest
from stockroom.services.activity_log_service import get_request_ip_address
from stockroom.services.purchase_order_service import PurchaseOrderService
from stockroom.services.stock_ledger_service import StockLedgerService

router = APIRouter()

ViewReceipts = Annotated[User, Depends(require_permission(Permission.GOODS_RECEIPTS_VIEW_LIST))]


@router.get("/")
@limiter.limit("60/minute")
def list_goods_receipts(
    request: Request,
    db: DbSession,
    current_user: ViewReceipts,
    purchase_order_id: Optional[int] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=500),
):
    receipts, total = PurchaseOrderService(db, current_user).list_goods_receipts(
        purchase_order_id=purchase_order_id, skip=skip, limit=limit
    )
    return paginated_response([GoodsReceiptResponse.model_validate(r) for r in receipts], total, skip, limit)


@router.post("/", response_model=GoodsReceiptResponse, status_code=201)
@limiter.limit("30/minute")
def receive_goods(request: Request, data: GoodsReceiptCreate, db: DbSession, current_user: CurrentUser):
    """Book a delivery that has no purchase order."""
    service = StockLedgerService(db, current_user, get_request_ip_address(request))
    return service.receive_goods(
        data.warehouse_id,
        [item.model_dump() for item in data.items],
        notes=data.notes,
    )


@router.get("/{receipt_id}", response_model=GoodsReceiptResponse)
@limiter.limit("60/minute")
def get_goods_receipt(request: Request, receipt_id: int, db: DbSession, current_user: ViewReceipts):
    return PurchaseOrderService(db, current_user).get_goods_receipt(receipt_id)


@router.post("/{receipt_id}/void", response_model=GoodsReceiptResponse)
@limiter.limit("30/minute")
def void_goods_receipt(
    request: Request, receipt_id: int, data: VoidReceiptRequest, db: DbSession, current_user: CurrentUser
):
    """Reverse a receipt: take its stock back out and roll back the order's received quantities."""
    service = PurchaseOrderService(db, current_user, get_request_ip_address(request))
    return service.void_goods_receipt(receipt_id, data.reason)
