"""First-expired-first-out stock picking.

``allocate_fefo`` only reads; callers apply the returned allocations.
"""

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import case
from sqlalchemy.orm import Session

from stockroom.models.stock import StockItem, StockStatus
from stockroom.services.base import format_quantity, to_decimal, today
from stockroom.services.errors import InsufficientStockError


@dataclass
class Allocation:
    stock_item: StockItem
    quantity: Decimal

    @property
    def stock_item_id(self) -> int:
        return self.stock_item.id


def _take(buckets, remaining: Decimal, allocations: List[Allocation]) -> Decimal:
    for bucket in buckets:
        if remaining <= 0:
            break
        available = bucket.available_quantity
        if available <= 0:
            continue
        take = min(available, remaining)
        allocations.append(Allocation(stock_item=bucket, quantity=take))
        remaining -= take
    return remaining


def allocate_fefo(
    db: Session,
    product_id: int,
    warehouse_id: int,
    quantity,
    exclude_expired_before: Optional[date] = None,
) -> List[Allocation]:
    """Pick AVAILABLE buckets of a product in one warehouse.

    Pass 1 takes expiry-dated buckets that expire after ``exclude_expired_before``
    (default today), earliest expiry first. Pass 2 takes buckets without an
    expiry date, oldest first.

    Raises:
        InsufficientStockError: if both passes together cannot cover ``quantity``.
    """
    needed = to_decimal(quantity)
    cutoff = exclude_expired_before or today()
    allocations: List[Allocation] = []

    dated = (
        db.query(StockItem)
        .filter(
            StockItem.product_id == product_id,
            StockItem.warehouse_id == warehouse_id,
            StockItem.status == StockStatus.AVAILABLE.value,
            StockItem.expiry_date.isnot(None),
            StockItem.expiry_date > cutoff,
        )
        .order_by(StockItem.expiry_date.asc(), StockItem.id.asc())
        .all()
    )
    remaining = _take(dated, needed, allocations)

    if remaining > 0:
        undated = (
            db.query(StockItem)
            .filter(
                StockItem.product_id == product_id,
                StockItem.warehouse_id == warehouse_id,
                StockItem.status == StockStatus.AVAILABLE.value,
                StockItem.expiry_date.is_(None),
            )
            .order_by(StockItem.created_at.asc(), StockItem.id.asc())
            .all()
        )
        remaining = _take(undated, remaining, allocations)

    if remaining > 0:
        allocated = needed - remaining
        raise InsufficientStockError(
            f"Insufficient available stock. Could only allocate {format_quantity(allocated)} "
            f"of {format_quantity(needed)} units after applying FEFO.",
            product_id=product_id,
            requested=needed,
            allocated=allocated,
        )

    return allocations


def reservation_candidates(db: Session, product_id: int) -> List[StockItem]:
    """AVAILABLE buckets of a product in every warehouse, in reservation order.

    Earliest expiry first with undated stock last, then oldest bucket first.
    """
    return (
        db.query(StockItem)
        .filter(
            StockItem.product_id == product_id,
            StockItem.status == StockStatus.AVAILABLE.value,
            StockItem.quantity > StockItem.reserved_quantity,
        )
        .order_by(
            case((StockItem.expiry_date.is_(None), 1), else_=0),
            StockItem.expiry_date.asc(),
            StockItem.created_at.asc(),
            StockItem.id.asc(),
        )
        .all()
    )
