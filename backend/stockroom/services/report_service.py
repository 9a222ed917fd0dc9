"""Report Service - valuation, movements, aging, purchasing, dashboard KPIs and snapshots.

All money figures are minor units. Reports only read, except
``create_stock_snapshot``.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import func, or_
from sqlalchemy.orm import joinedload

from stockroom.core.permissions import Permission
from stockroom.models.product import Product
from stockroom.models.purchase_order import POStatus, PurchaseOrder
from stockroom.models.sales_order import SalesOrder, SalesOrderStatus
from stockroom.models.stock import MovementType, StockItem, StockMovement, StockSnapshot, StockStatus
from stockroom.models.supplier import Supplier
from stockroom.models.warehouse import Warehouse
from stockroom.services.base import ZERO, InventoryService, as_utc, round_minor, to_decimal, today, utcnow
from stockroom.services.errors import BusinessRuleError

logger = logging.getLogger(__name__)

AGING_MOVEMENT_TYPES = (
    MovementType.SALES_SHIPMENT.value,
    MovementType.TRANSFER.value,
    MovementType.ADJUSTMENT.value,
)
NEVER_MOVED = "NEVER_MOVED"
DEAD_STOCK_BRACKET = "365+ days (Dead Stock)"
SPEND_STATUSES = (
    POStatus.APPROVED.value,
    POStatus.PARTIALLY_RECEIVED.value,
    POStatus.RECEIVED.value,
)
OPEN_PO_STATUSES = (POStatus.DRAFT.value, POStatus.SUBMITTED.value, POStatus.APPROVED.value)
RECEIVED_PO_STATUSES = (POStatus.PARTIALLY_RECEIVED.value, POStatus.RECEIVED.value)


def aging_bracket(days_since_movement: Optional[int]) -> str:
    if days_since_movement is None:
        return NEVER_MOVED
    if days_since_movement <= 30:
        return "0-30 days"
    if days_since_movement <= 90:
        return "31-90 days"
    if days_since_movement <= 180:
        return "91-180 days"
    if days_since_movement <= 365:
        return "181-365 days"
    return DEAD_STOCK_BRACKET


def _warehouse_label(warehouse: Optional[Warehouse]) -> Optional[str]:
    if warehouse is None:
        return None
    return f"{warehouse.name} ({warehouse.code})"


class ReportService(InventoryService):
    """Service for inventory reports."""

    # ===== VALUATION =====

    def valuation(
        self,
        warehouse_id: Optional[int] = None,
        category_id: Optional[int] = None,
        include_zero_quantity: bool = False,
    ) -> Dict[str, Any]:
        self.require(
            Permission.REPORTS_INVENTORY_VALUATION_VIEW,
            "You do not have permission to generate valuation reports.",
        )
        query = (
            self.db.query(StockItem)
            .join(Product, StockItem.product_id == Product.id)
            .join(Warehouse, StockItem.warehouse_id == Warehouse.id)
            .options(
                joinedload(StockItem.product).joinedload(Product.category),
                joinedload(StockItem.warehouse),
                joinedload(StockItem.location),
            )
            .filter(StockItem.status == StockStatus.AVAILABLE.value)
        )
        if warehouse_id is not None:
            query = query.filter(StockItem.warehouse_id == warehouse_id)
        if category_id is not None:
            query = query.filter(Product.category_id == category_id)
        if not include_zero_quantity:
            query = query.filter(StockItem.quantity > 0)
        items = query.order_by(Product.name.asc(), Warehouse.name.asc(), StockItem.id.asc()).all()

        rows = []
        for item in items:
            quantity = to_decimal(item.quantity)
            reserved = to_decimal(item.reserved_quantity)
            available = quantity - reserved
            reorder_point = item.product.reorder_point or 0
            rows.append(
                {
                    "stock_item_id": item.id,
                    "sku": item.product.sku,
                    "product_name": item.product.name,
                    "category": item.product.category.name if item.product.category else "Uncategorized",
                    "warehouse": item.warehouse.name,
                    "location": item.location.code if item.location else None,
                    "batch_number": item.batch_number or None,
                    "expiry_date": item.expiry_date.isoformat() if item.expiry_date else None,
                    "quantity": quantity,
                    "reserved_quantity": reserved,
                    "available_quantity": available,
                    "unit": item.product.unit,
                    "unit_cost_minor": item.unit_cost or 0,
                    "total_value_minor": round_minor(quantity * (item.unit_cost or 0)),
                    "reorder_point": reorder_point,
                    "is_below_reorder": reorder_point > 0 and available <= reorder_point,
                }
            )

        summary = {
            "generated_at": utcnow(),
            "generated_by": self.actor.email,
            "items_below_reorder": sum(1 for row in rows if row["is_below_reorder"]),
            "total_quantity": sum((row["quantity"] for row in rows), ZERO),
            "total_unique_products": len({row["sku"] for row in rows}),
            "total_value_minor": sum(row["total_value_minor"] for row in rows),
        }
        return {"rows": rows, "summary": summary}

    # ===== MOVEMENTS =====

    def movement_report(
        self,
        date_from: datetime,
        date_to: datetime,
        movement_types: Optional[List[str]] = None,
        product_id: Optional[int] = None,
        warehouse_id: Optional[int] = None,
    ) -> Dict[str, Any]:
        self.require(
            Permission.REPORTS_STOCK_MOVEMENT_VIEW,
            "You do not have permission to generate movement reports.",
        )
        if date_from > date_to:
            raise BusinessRuleError("date_from must be before or equal to date_to")
        for movement_type in movement_types or []:
            if movement_type not in {t.value for t in MovementType}:
                raise BusinessRuleError(f"Unknown movement type: {movement_type}")

        query = (
            self.db.query(StockMovement)
            .options(
                joinedload(StockMovement.product),
                joinedload(StockMovement.from_warehouse),
                joinedload(StockMovement.to_warehouse),
                joinedload(StockMovement.inventory_transaction),
            )
            .filter(StockMovement.created_at >= date_from, StockMovement.created_at <= date_to)
        )
        if product_id is not None:
            query = query.filter(StockMovement.product_id == product_id)
        if movement_types:
            query = query.filter(StockMovement.type.in_(movement_types))
        if warehouse_id is not None:
            query = query.filter(
                or_(StockMovement.from_warehouse_id == warehouse_id, StockMovement.to_warehouse_id == warehouse_id)
            )
        movements = query.order_by(StockMovement.created_at.asc(), StockMovement.id.asc()).all()

        rows = []
        by_type: Dict[str, Any] = {}
        for movement in movements:
            quantity = to_decimal(movement.quantity)
            by_type[movement.type] = by_type.get(movement.type, ZERO) + quantity
            rows.append(
                {
                    "date": movement.created_at,
                    "transaction_number": (
                        movement.inventory_transaction.transaction_number if movement.inventory_transaction else None
                    ),
                    "movement_type": movement.type,
                    "source": _warehouse_label(movement.from_warehouse),
                    "destination": _warehouse_label(movement.to_warehouse),
                    "sku": movement.product.sku if movement.product else None,
                    "product": movement.product.name if movement.product else str(movement.product_id),
                    "quantity": quantity,
                    "batch_number": movement.batch_number or None,
                    "serial_number": movement.serial_number or None,
                    "reference": movement.reference_number or None,
                    "performed_by": movement.created_by,
                }
            )

        return {
            "date_from": date_from,
            "date_to": date_to,
            "rows": rows,
            "summary": {"by_type": by_type, "total_movements": len(rows)},
        }

    # ===== AGING =====

    def aging(self) -> Dict[str, Any]:
        """Available stock grouped by days since its product last moved out or around."""
        self.require(Permission.REPORTS_AGING_DEAD_STOCK_VIEW, "You do not have permission to view aging reports.")
        now = utcnow()

        last_moved = dict(
            self.db.query(StockMovement.product_id, func.max(StockMovement.created_at))
            .filter(StockMovement.type.in_(AGING_MOVEMENT_TYPES))
            .group_by(StockMovement.product_id)
            .all()
        )
        items = (
            self.db.query(StockItem)
            .options(joinedload(StockItem.product), joinedload(StockItem.warehouse))
            .filter(StockItem.status == StockStatus.AVAILABLE.value, StockItem.quantity > 0)
            .all()
        )

        rows = []
        for item in items:
            moved_at = as_utc(last_moved.get(item.product_id))
            days = (now - moved_at).days if moved_at is not None else None
            quantity = to_decimal(item.quantity)
            rows.append(
                {
                    "stock_item_id": item.id,
                    "sku": item.product.sku,
                    "product_name": item.product.name,
                    "warehouse": item.warehouse.name,
                    "quantity": quantity,
                    "unit": item.product.unit,
                    "last_moved_at": moved_at,
                    "days_since_movement": days,
                    "age_bracket": aging_bracket(days),
                    "is_dead_stock": days is None or days > 365,
                    "total_value_minor": round_minor(quantity * (item.unit_cost or 0)),
                }
            )
        rows.sort(key=lambda row: row["days_since_movement"] if row["days_since_movement"] is not None else 999_999, reverse=True)

        by_bracket: Dict[str, Dict[str, int]] = {}
        for row in rows:
            bucket = by_bracket.setdefault(row["age_bracket"], {"count": 0, "value_minor": 0})
            bucket["count"] += 1
            bucket["value_minor"] += row["total_value_minor"]

        return {
            "rows": rows,
            "summary": {
                "by_bracket": by_bracket,
                "total_dead_stock_value_minor": sum(r["total_value_minor"] for r in rows if r["is_dead_stock"]),
            },
        }

    # ===== DASHBOARD =====

    def dashboard(self) -> Dict[str, Any]:
        self.require(Permission.REPORTS_DASHBOARD_KPI_VIEW, "You do not have permission to view dashboard metrics.")
        now = utcnow()
        current_day = today()
        expiry_cutoff = current_day + timedelta(days=30)

        items = (
            self.db.query(StockItem)
            .options(joinedload(StockItem.product))
            .filter(StockItem.status == StockStatus.AVAILABLE.value)
            .all()
        )
        total_units = ZERO
        total_value = 0
        low_stock_alerts = 0
        expiring = 0
        for item in items:
            quantity = to_decimal(item.quantity)
            total_units += quantity
            total_value += round_minor(quantity * (item.unit_cost or 0))
            reorder_point = item.product.reorder_point or 0
            if reorder_point > 0 and item.available_quantity <= reorder_point:
                low_stock_alerts += 1
            if item.expiry_date is not None and current_day <= item.expiry_date <= expiry_cutoff and quantity > 0:
                expiring += 1

        pending_purchase_orders = (
            self.db.query(func.count(PurchaseOrder.id))
            .filter(PurchaseOrder.status == POStatus.SUBMITTED.value)
            .scalar()
        )
        pending_sales_orders = (
            self.db.query(func.count(SalesOrder.id))
            .filter(
                SalesOrder.status.in_(
                    [SalesOrderStatus.CONFIRMED.value, SalesOrderStatus.PARTIALLY_FULFILLED.value]
                )
            )
            .scalar()
        )
        recent_movements = (
            self.db.query(func.count(StockMovement.id))
            .filter(StockMovement.created_at >= now - timedelta(days=7))
            .scalar()
        )
        trend = (
            self.db.query(
                StockSnapshot.snapshot_date,
                func.sum(StockSnapshot.quantity),
                func.sum(StockSnapshot.value),
            )
            .filter(StockSnapshot.snapshot_date >= current_day - timedelta(days=30))
            .group_by(StockSnapshot.snapshot_date)
            .order_by(StockSnapshot.snapshot_date.asc())
            .all()
        )

        return {
            "total_units_in_stock": total_units,
            "total_stock_value_minor": total_value,
            "low_stock_alerts": low_stock_alerts,
            "expiring_in_30_days": expiring,
            "pending_purchase_orders": pending_purchase_orders or 0,
            "pending_sales_orders": pending_sales_orders or 0,
            "recent_movements_last_7_days": recent_movements or 0,
            "inventory_trend": [
                {
                    "date": snapshot_date,
                    "total_quantity": to_decimal(quantity),
                    "total_value_minor": int(value or 0),
                }
                for snapshot_date, quantity, value in trend
            ],
        }

    # ===== PURCHASING =====

    def purchasing_report(self, days: int = 30) -> Dict[str, Any]:
        """Purchase order counts by status, recent spend and the top ten suppliers by spend.

        Recent spend counts APPROVED, PARTIALLY_RECEIVED and RECEIVED orders
        dated within the window. Supplier spend ignores CANCELLED orders.
        """
        self.require(
            Permission.REPORTS_PURCHASE_ANALYTICS_VIEW, "You do not have permission to view purchasing analytics."
        )
        if days < 1 or days > 365:
            raise BusinessRuleError("Days must be between 1 and 365.")
        since = today() - timedelta(days=days)

        by_status = (
            self.db.query(PurchaseOrder.status, func.count(PurchaseOrder.id))
            .group_by(PurchaseOrder.status)
            .order_by(PurchaseOrder.status.asc())
            .all()
        )
        recent = (
            self.db.query(PurchaseOrder)
            .filter(
                PurchaseOrder.order_date >= since,
                PurchaseOrder.status.in_(SPEND_STATUSES),
            )
            .all()
        )

        window_orders = self.db.query(PurchaseOrder).filter(PurchaseOrder.order_date >= since).all()
        orders_by_supplier: Dict[int, List[PurchaseOrder]] = {}
        for order in window_orders:
            orders_by_supplier.setdefault(order.supplier_id, []).append(order)

        performance = []
        for supplier in self.db.query(Supplier).filter(Supplier.not_deleted()).order_by(Supplier.name.asc()):
            orders = orders_by_supplier.get(supplier.id, [])
            performance.append(
                {
                    "id": supplier.id,
                    "name": supplier.name,
                    "order_count": len(orders),
                    "open_orders": sum(1 for o in orders if o.status in OPEN_PO_STATUSES),
                    "received_orders": sum(1 for o in orders if o.status in RECEIVED_PO_STATUSES),
                    "total_spend_minor": sum(
                        o.total_amount for o in orders if o.status != POStatus.CANCELLED.value
                    ),
                }
            )
        # Stable sort keeps name order among equal spend
        performance.sort(key=lambda row: row["total_spend_minor"], reverse=True)

        return {
            "days": days,
            "recent_order_count": len(recent),
            "recent_spend_minor": sum(order.total_amount for order in recent),
            "status_breakdown": [{"status": status, "count": count} for status, count in by_status],
            "supplier_performance": performance[:10],
        }

    # ===== SNAPSHOTS =====

    def create_stock_snapshot(self) -> Dict[str, Any]:
        """Aggregate AVAILABLE stock per product and warehouse into today's snapshot rows.

        Re-running on the same day replaces that day's rows.
        """
        self.require(Permission.REPORTS_DASHBOARD_KPI_VIEW, "You do not have permission to create stock snapshots.")
        snapshot_date = today()

        aggregated: Dict[tuple, Dict[str, Any]] = {}
        items = self.db.query(StockItem).filter(StockItem.status == StockStatus.AVAILABLE.value).all()
        for item in items:
            key = (item.product_id, item.warehouse_id)
            entry = aggregated.setdefault(key, {"quantity": ZERO, "value": ZERO})
            quantity = to_decimal(item.quantity)
            entry["quantity"] += quantity
            entry["value"] += quantity * (item.unit_cost or 0)

        with self.atomic():
            existing = self.db.query(StockSnapshot).filter(StockSnapshot.snapshot_date == snapshot_date).all()
            for row in existing:
                self.db.delete(row)
            self.db.flush()
            for (product_id, warehouse_id), entry in aggregated.items():
                self.db.add(
                    StockSnapshot(
                        snapshot_date=snapshot_date,
                        product_id=product_id,
                        warehouse_id=warehouse_id,
                        quantity=entry["quantity"],
                        value=round_minor(entry["value"]),
                    )
                )
            self.db.flush()
            self.log(
                "STOCK_SNAPSHOT_CREATED",
                "StockSnapshot",
                None,
                {
                    "after": {
                        "records_created": len(aggregated),
                        "records_replaced": len(existing),
                        "snapshot_date": snapshot_date,
                    }
                },
            )

        logger.info(f"Stock snapshot for {snapshot_date} created with {len(aggregated)} rows")
        return {"records_created": len(aggregated), "snapshot_date": snapshot_date}
