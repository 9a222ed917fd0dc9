"""Inventory routes: stock buckets, adjustments, transfers, quarantine and expiry.

Every mutation goes through ``StockLedgerService``; the handlers only
translate HTTP input and serialize the result.
"""

from datetime import datetime
from decimal import Decimal
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Query, Request

from stockroom.core.config import settings
from stockroom.core.permissions import Permission
from stockroom.core.rate_limit import limiter
from stockroom.core.rbac import CurrentUser, require_permission
from stockroom.core.responses import list_response, paginated_response
from stockroom.db.session import DbSession
from stockroom.models.user import User
from stockroom.schemas.inventory import (
    AdjustmentResult,
    ApprovalNotes,
    BatchTraceResponse,
    CycleCountRequest,
    ExpiryAlert,
    ExpiryStatusRequest,
    InitialStockCreate,
    InventoryAdjustmentResponse,
    PutawaySuggestion,
    QuarantineRequest,
    QuarantineResult,
    RejectionRequest,
    ReservationRequest,
    SerialHistoryResponse,
    StockAdjustRequest,
    StockItemResponse,
    StockMovementResponse,
    TransferRequest,
    TransferResult,
)
from stockroom.services.activity_log_service import get_request_ip_address
from stockroom.services.stock_ledger_service import StockLedgerService, get_stock_item_or_404

router = APIRouter()


def _ledger(request: Request, db, current_user) -> StockLedgerService:
    return StockLedgerService(db, current_user, get_request_ip_address(request))


# ==================== STOCK ====================

@router.get("/stock")
@limiter.limit("60/minute")
def list_stock(
    request: Request,
    db: DbSession,
    current_user: Annotated[User, Depends(require_permission(Permission.INVENTORY_STOCK_OVERVIEW))],
    product_id: Optional[int] = None,
    warehouse_id: Optional[int] = None,
    location_id: Optional[int] = None,
    status: Optional[str] = None,
    search: Optional[str] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=500),
):
    """List stock buckets with optional filters."""
    items, total = _ledger(request, db, current_user).list_stock(
        product_id=product_id,
        warehouse_id=warehouse_id,
        location_id=location_id,
        status=status,
        search=search,
        skip=skip,
        limit=limit,
    )
    return paginated_response([StockItemResponse.model_validate(i) for i in items], total, skip, limit)


@router.get("/stock/{stock_item_id}", response_model=StockItemResponse)
@limiter.limit("60/minute")
def get_stock_item(
    request: Request,
    stock_item_id: int,
    db: DbSession,
    current_user: Annotated[User, Depends(require_permission(Permission.INVENTORY_STOCK_OVERVIEW))],
):
    return get_stock_item_or_404(db, stock_item_id)


@router.post("/stock/initial", response_model=StockItemResponse, status_code=201)
@limiter.limit("30/minute")
def create_initial_stock(request: Request, data: InitialStockCreate, db: DbSession, current_user: CurrentUser):
    """Open a bucket with an opening balance."""
    return _ledger(request, db, current_user).create_initial_stock(**data.model_dump())


@router.post("/stock/{stock_item_id}/adjust", response_model=AdjustmentResult)
@limiter.limit("30/minute")
def adjust_stock(
    request: Request, stock_item_id: int, data: StockAdjustRequest, db: DbSession, current_user: CurrentUser
):
    """Set a bucket to a counted quantity.

    Large differences from users who cannot approve them come back with
    ``requires_approval`` and leave the bucket untouched.
    """
    return _ledger(request, db, current_user).adjust_stock(
        stock_item_id, data.counted_quantity, data.reason, data.notes
    )


@router.post("/stock/{stock_item_id}/cycle-count", response_model=AdjustmentResult)
@limiter.limit("30/minute")
def cycle_count(request: Request, stock_item_id: int, data: CycleCountRequest, db: DbSession, current_user: CurrentUser):
    return _ledger(request, db, current_user).cycle_count(stock_item_id, data.counted_quantity, data.notes)


@router.post("/stock/{stock_item_id}/reserve", response_model=StockItemResponse)
@limiter.limit("30/minute")
def reserve_stock(request: Request, stock_item_id: int, data: ReservationRequest, db: DbSession, current_user: CurrentUser):
    return _ledger(request, db, current_user).reserve_stock(stock_item_id, data.quantity, data.reference_number)


@router.post("/stock/{stock_item_id}/release", response_model=StockItemResponse)
@limiter.limit("30/minute")
def release_reservation(
    request: Request, stock_item_id: int, data: ReservationRequest, db: DbSession, current_user: CurrentUser
):
    return _ledger(request, db, current_user).release_reservation(stock_item_id, data.quantity, data.reference_number)


@router.post("/stock/{stock_item_id}/transfer", response_model=TransferResult)
@limiter.limit("30/minute")
def transfer_stock(request: Request, stock_item_id: int, data: TransferRequest, db: DbSession, current_user: CurrentUser):
    """Move available quantity to another warehouse or location."""
    return _ledger(request, db, current_user).transfer_stock(
        stock_item_id,
        to_warehouse_id=data.to_warehouse_id,
        quantity=data.quantity,
        to_location_id=data.to_location_id,
        notes=data.notes,
    )


@router.post("/stock/{stock_item_id}/quarantine", response_model=QuarantineResult)
@limiter.limit("30/minute")
def quarantine_stock(
    request: Request, stock_item_id: int, data: QuarantineRequest, db: DbSession, current_user: CurrentUser
):
    return _ledger(request, db, current_user).quarantine_stock(
        stock_item_id, data.reason, data.quarantine_location_id
    )


@router.post("/stock/{stock_item_id}/expiry-status", response_model=StockItemResponse)
@limiter.limit("30/minute")
def update_expiry_status(
    request: Request, stock_item_id: int, data: ExpiryStatusRequest, db: DbSession, current_user: CurrentUser
):
    """QUARANTINE, DISPOSE or RELEASE an expiring bucket."""
    return _ledger(request, db, current_user).update_expiry_status(stock_item_id, data.operation, data.notes)


# ==================== EXPIRY ====================

@router.get("/expiry-alerts")
@limiter.limit("60/minute")
def get_expiry_alerts(
    request: Request,
    db: DbSession,
    current_user: Annotated[User, Depends(require_permission(Permission.INVENTORY_REPORT_EXPIRY_VIEW))],
    days_ahead: int = settings.expiry_alert_default_days,
    warehouse_id: Optional[int] = None,
):
    """AVAILABLE stock expiring within ``days_ahead`` days, most urgent first."""
    alerts = _ledger(request, db, current_user).get_expiry_alerts(days_ahead=days_ahead, warehouse_id=warehouse_id)
    return list_response([ExpiryAlert.model_validate(a, from_attributes=True) for a in alerts])


# ==================== HISTORY ====================

@router.get("/movements")
@limiter.limit("60/minute")
def list_movements(
    request: Request,
    db: DbSession,
    current_user: Annotated[User, Depends(require_permission(Permission.INVENTORY_HISTORY_MOVEMENT_VIEW))],
    product_id: Optional[int] = None,
    warehouse_id: Optional[int] = None,
    movement_type: Optional[str] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=500),
):
    """Stock movement history, newest first."""
    movements, total = _ledger(request, db, current_user).movement_history(
        product_id=product_id,
        warehouse_id=warehouse_id,
        movement_type=movement_type,
        date_from=date_from,
        date_to=date_to,
        skip=skip,
        limit=limit,
    )
    return paginated_response([StockMovementResponse.model_validate(m) for m in movements], total, skip, limit)


@router.get("/adjustments")
@limiter.limit("60/minute")
def list_adjustments(
    request: Request,
    db: DbSession,
    current_user: Annotated[User, Depends(require_permission(Permission.INVENTORY_HISTORY_ADJUSTMENT_VIEW))],
    product_id: Optional[int] = None,
    warehouse_id: Optional[int] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=500),
):
    adjustments, total = _ledger(request, db, current_user).list_adjustments(
        product_id=product_id, warehouse_id=warehouse_id, skip=skip, limit=limit
    )
    return paginated_response(
        [InventoryAdjustmentResponse.model_validate(a) for a in adjustments], total, skip, limit
    )


# ==================== APPROVALS ====================

@router.post("/adjustments/{adjustment_id}/approve", response_model=InventoryAdjustmentResponse)
@limiter.limit("30/minute")
def approve_adjustment(
    request: Request, adjustment_id: int, data: ApprovalNotes, db: DbSession, current_user: CurrentUser
):
    return _ledger(request, db, current_user).approve_adjustment(adjustment_id, data.approval_notes)


@router.post("/adjustments/{adjustment_id}/reject", response_model=InventoryAdjustmentResponse)
@limiter.limit("30/minute")
def reject_adjustment(
    request: Request, adjustment_id: int, data: RejectionRequest, db: DbSession, current_user: CurrentUser
):
    return _ledger(request, db, current_user).reject_adjustment(adjustment_id, data.reason)


@router.post("/adjustment-requests/{request_id}/approve", response_model=InventoryAdjustmentResponse)
@limiter.limit("30/minute")
def approve_adjustment_request(
    request: Request, request_id: int, data: ApprovalNotes, db: DbSession, current_user: CurrentUser
):
    """Apply a parked large adjustment against the current bucket quantity."""
    return _ledger(request, db, current_user).approve_adjustment_request(request_id, data.approval_notes)


@router.post("/adjustment-requests/{request_id}/reject")
@limiter.limit("30/minute")
def reject_adjustment_request(
    request: Request, request_id: int, data: RejectionRequest, db: DbSession, current_user: CurrentUser
):
    return _ledger(request, db, current_user).reject_adjustment_request(request_id, data.reason)


# ==================== TRACEABILITY ====================

@router.get("/batches/{product_id}/{batch_number}", response_model=BatchTraceResponse)
@limiter.limit("60/minute")
def batch_traceability(
    request: Request,
    product_id: int,
    batch_number: str,
    db: DbSession,
    current_user: Annotated[User, Depends(require_permission(Permission.BATCHES_VIEW_DETAILS_HISTORY))],
):
    """Where a batch came from, where it went and what is left."""
    return _ledger(request, db, current_user).batch_traceability(product_id, batch_number)


@router.get("/serials/{serial_number}", response_model=SerialHistoryResponse)
@limiter.limit("60/minute")
def serial_history(
    request: Request,
    serial_number: str,
    db: DbSession,
    current_user: Annotated[User, Depends(require_permission(Permission.SERIALS_VIEW_HISTORY))],
):
    return _ledger(request, db, current_user).serial_history(serial_number)


@router.get("/putaway-suggestions")
@limiter.limit("60/minute")
def putaway_suggestions(
    request: Request,
    db: DbSession,
    current_user: Annotated[User, Depends(require_permission(Permission.INVENTORY_STOCK_BY_LOCATION))],
    product_id: int,
    warehouse_id: int,
    quantity: Decimal,
):
    """The least loaded standard locations for incoming stock."""
    suggestions = _ledger(request, db, current_user).putaway_suggestions(product_id, warehouse_id, quantity)
    return list_response([PutawaySuggestion.model_validate(s, from_attributes=True) for s in suggestions])
