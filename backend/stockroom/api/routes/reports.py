"""Inventory report routes."""

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Query, Request

from stockroom.core.rate_limit import limiter
from stockroom.core.rbac import CurrentUser
from stockroom.db.session import DbSession
from stockroom.services.activity_log_service import get_request_ip_address
from stockroom.services.report_service import ReportService

router = APIRouter()


@router.get("/valuation")
@limiter.limit("60/minute")
def inventory_valuation(
    request: Request,
    db: DbSession,
    current_user: CurrentUser,
    warehouse_id: Optional[int] = None,
    category_id: Optional[int] = None,
    include_zero_quantity: bool = False,
):
    """Value of AVAILABLE stock at bucket unit cost."""
    return ReportService(db, current_user).valuation(
        warehouse_id=warehouse_id, category_id=category_id, include_zero_quantity=include_zero_quantity
    )


@router.get("/movements")
@limiter.limit("60/minute")
def stock_movement_report(
    request: Request,
    db: DbSession,
    current_user: CurrentUser,
    date_from: datetime,
    date_to: datetime,
    movement_types: Optional[List[str]] = Query(None),
    product_id: Optional[int] = None,
    warehouse_id: Optional[int] = None,
):
    return ReportService(db, current_user).movement_report(
        date_from, date_to, movement_types=movement_types, product_id=product_id, warehouse_id=warehouse_id
    )


@router.get("/aging")
@limiter.limit("60/minute")
def aging_report(request: Request, db: DbSession, current_user: CurrentUser):
    """Days since each product last moved, bracketed, with dead stock value."""
    return ReportService(db, current_user).aging()


@router.get("/purchasing")
@limiter.limit("60/minute")
def purchasing_report(
    request: Request, db: DbSession, current_user: CurrentUser, days: int = Query(30, ge=1, le=365)
):
    """Purchase orders by status, recent spend and supplier performance over the last ``days``."""
    return ReportService(db, current_user).purchasing_report(days)


@router.get("/dashboard")
@limiter.limit("60/minute")
def dashboard(request: Request, db: DbSession, current_user: CurrentUser):
    return ReportService(db, current_user).dashboard()


@router.post("/snapshots", status_code=201)
@limiter.limit("30/minute")
def create_stock_snapshot(request: Request, db: DbSession, current_user: CurrentUser):
    """Record today's AVAILABLE stock per product and warehouse for the dashboard trend."""
    return ReportService(db, current_user, get_request_ip_address(request)).create_stock_snapshot()
