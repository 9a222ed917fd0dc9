"""Stock Ledger Service - the single writer of stock buckets.

Every quantity change goes through this module (or the helpers it exports
to the order and kit services) so that:

- ``0 <= reserved_quantity <= quantity`` holds for every bucket;
- a serial number lives in at most one bucket;
- every change leaves an immutable ``StockMovement`` behind.

Mutating operations check their permission first, validate, run inside one
transaction and write an activity log entry before committing.
"""

import logging
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from stockroom.core import numbering
from stockroom.core.config import settings
from stockroom.core.permissions import Permission
from stockroom.models.activity_log import ActivityLog
from stockroom.models.product import Product
from stockroom.models.purchase_order import GoodsReceipt, GoodsReceiptItem
from stockroom.models.sales_order import Shipment, ShipmentItem
from stockroom.models.stock import (
    AdjustmentReason,
    InventoryAdjustment,
    InventoryTransaction,
    MovementType,
    StockItem,
    StockMovement,
    StockStatus,
    TransactionType,
)
from stockroom.models.warehouse import Location, LocationType, Warehouse
from stockroom.services.base import (
    ZERO,
    InventoryService,
    assert_positive_quantity,
    clean_optional,
    format_quantity,
    round_minor,
    to_decimal,
    today,
    utcnow,
    validate_tracking_fields,
)
from stockroom.services.errors import BusinessRuleError, NotFoundError

logger = logging.getLogger(__name__)

ADJUSTMENT_REQUEST_ENTITY = "InventoryAdjustmentRequest"
ADJUSTMENT_APPROVAL_REQUESTED = "ADJUSTMENT_APPROVAL_REQUESTED"
ADJUSTMENT_APPROVAL_APPROVED = "ADJUSTMENT_APPROVAL_APPROVED"
ADJUSTMENT_APPROVAL_REJECTED = "ADJUSTMENT_APPROVAL_REJECTED"

EXPIRY_OPERATIONS = {
    # operation: (target status, permission)
    "QUARANTINE": (StockStatus.QUARANTINE, Permission.INVENTORY_QUARANTINE_MOVE),
    "DISPOSE": (StockStatus.DAMAGED, Permission.INVENTORY_QUARANTINE_DISPOSE),
    "RELEASE": (StockStatus.AVAILABLE, Permission.INVENTORY_QUARANTINE_RELEASE),
}


# ===== SHARED LEDGER HELPERS =====


def get_stock_item_or_404(db: Session, stock_item_id: int, message: str = "Stock item not found.") -> StockItem:
    stock_item = db.get(StockItem, stock_item_id)
    if stock_item is None:
        raise NotFoundError(message)
    return stock_item


def get_active_warehouse(db: Session, warehouse_id: int, message: str = "Warehouse not found.") -> Warehouse:
    warehouse = db.get(Warehouse, warehouse_id)
    if warehouse is None or warehouse.is_deleted or not warehouse.is_active:
        raise NotFoundError(message)
    return warehouse


def get_location_in_warehouse(
    db: Session,
    location_id: Optional[int],
    warehouse_id: int,
    message: str = "Location not found in the selected warehouse.",
) -> Optional[Location]:
    """Active location belonging to ``warehouse_id``; None when no id is given."""
    if location_id is None:
        return None
    location = db.get(Location, location_id)
    if location is None or location.warehouse_id != warehouse_id or not location.is_active:
        raise NotFoundError(message)
    return location


def get_active_product(db: Session, product_id: int, message: str = "Product not found.") -> Product:
    product = db.get(Product, product_id)
    if product is None or product.is_deleted or not product.is_active:
        raise NotFoundError(message)
    return product


def assert_serial_available(db: Session, serial_number: Optional[str]) -> None:
    if not serial_number:
        return
    exists = db.query(StockItem.id).filter(StockItem.serial_number == serial_number).first()
    if exists:
        raise BusinessRuleError("Serial number already exists in stock.")


def new_transaction(
    db: Session,
    type: TransactionType,
    created_by: Optional[int],
    reference_type: Optional[str] = None,
    reference_id: Optional[int] = None,
    notes: Optional[str] = None,
    transaction_number: Optional[str] = None,
) -> InventoryTransaction:
    transaction = InventoryTransaction(
        transaction_number=transaction_number or numbering.inventory_transaction_number(),
        type=type.value,
        reference_type=reference_type,
        reference_id=reference_id,
        notes=notes,
        created_by=created_by,
    )
    db.add(transaction)
    db.flush()
    return transaction


def add_movement(
    db: Session,
    movement_number: str,
    type: MovementType,
    product_id: int,
    quantity,
    created_by: Optional[int],
    from_warehouse_id: Optional[int] = None,
    to_warehouse_id: Optional[int] = None,
    batch_number: Optional[str] = None,
    serial_number: Optional[str] = None,
    reference_number: Optional[str] = None,
    transaction: Optional[InventoryTransaction] = None,
    notes: Optional[str] = None,
) -> StockMovement:
    """Append a movement row. Quantity is always positive; direction is in the warehouses."""
    movement = StockMovement(
        movement_number=movement_number,
        type=type.value,
        product_id=product_id,
        from_warehouse_id=from_warehouse_id,
        to_warehouse_id=to_warehouse_id,
        quantity=abs(to_decimal(quantity)),
        batch_number=batch_number,
        serial_number=serial_number,
        reference_number=reference_number,
        inventory_transaction_id=transaction.id if transaction else None,
        notes=notes,
        created_by=created_by,
    )
    db.add(movement)
    return movement


def upsert_bucket(
    db: Session,
    product_id: int,
    warehouse_id: int,
    location_id: Optional[int],
    quantity,
    batch_number: Optional[str] = None,
    serial_number: Optional[str] = None,
    expiry_date: Optional[date] = None,
    unit_cost: Optional[int] = None,
    weighted_cost: bool = False,
) -> StockItem:
    """Add ``quantity`` to the AVAILABLE bucket with this key, creating it if needed.

    With ``weighted_cost`` the bucket's unit cost becomes the quantity-weighted
    average of old and new stock; otherwise a given ``unit_cost`` replaces it.
    """
    quantity = to_decimal(quantity)
    bucket = None
    if not serial_number:
        bucket = (
            db.query(StockItem)
            .filter(
                StockItem.product_id == product_id,
                StockItem.warehouse_id == warehouse_id,
                StockItem.location_id.is_(None) if location_id is None else StockItem.location_id == location_id,
                StockItem.batch_number.is_(None) if batch_number is None else StockItem.batch_number == batch_number,
                StockItem.serial_number.is_(None),
                StockItem.status == StockStatus.AVAILABLE.value,
            )
            .order_by(StockItem.id.asc())
            .first()
        )

    if bucket is None:
        bucket = StockItem(
            product_id=product_id,
            warehouse_id=warehouse_id,
            location_id=location_id,
            batch_number=batch_number,
            serial_number=serial_number,
            expiry_date=expiry_date,
            quantity=quantity,
            reserved_quantity=ZERO,
            unit_cost=unit_cost or 0,
            status=StockStatus.AVAILABLE.value,
        )
        db.add(bucket)
        db.flush()
        return bucket

    previous = to_decimal(bucket.quantity)
    if unit_cost is not None:
        if weighted_cost and previous + quantity > 0:
            bucket.unit_cost = round_minor(
                (previous * bucket.unit_cost + quantity * unit_cost) / (previous + quantity)
            )
        else:
            bucket.unit_cost = unit_cost
    bucket.quantity = previous + quantity
    if bucket.expiry_date is None and expiry_date is not None:
        bucket.expiry_date = expiry_date
    db.flush()
    return bucket


def _stock_item_changes(stock_item: StockItem) -> Dict[str, Any]:
    return {
        "stock_item_id": stock_item.id,
        "quantity": stock_item.quantity,
        "reserved_quantity": stock_item.reserved_quantity,
        "status": stock_item.status,
        "location_id": stock_item.location_id,
    }


class StockLedgerService(InventoryService):
    """Service for every stock-bucket mutation and the ledger queries."""

    # ===== CORE: INITIAL STOCK & ADJUSTMENTS =====

    def create_initial_stock(
        self,
        product_id: int,
        warehouse_id: int,
        quantity,
        location_id: Optional[int] = None,
        batch_number: Optional[str] = None,
        serial_number: Optional[str] = None,
        expiry_date: Optional[date] = None,
        unit_cost: Optional[int] = None,
        notes: Optional[str] = None,
    ) -> StockItem:
        """Open a new AVAILABLE bucket with an opening balance."""
        self.require(
            Permission.INVENTORY_INITIAL_STOCK_ENTRY,
            "You do not have permission to create initial stock entries.",
        )
        quantity = assert_positive_quantity(quantity, "Quantity")
        batch_number = clean_optional(batch_number)
        serial_number = clean_optional(serial_number)

        product = get_active_product(self.db, product_id)
        get_active_warehouse(self.db, warehouse_id)
        get_location_in_warehouse(self.db, location_id, warehouse_id)
        validate_tracking_fields(product, batch_number, expiry_date, serial_number, quantity)
        assert_serial_available(self.db, serial_number)

        with self.atomic():
            stock_item = StockItem(
                product_id=product_id,
                warehouse_id=warehouse_id,
                location_id=location_id,
                batch_number=batch_number,
                serial_number=serial_number,
                expiry_date=expiry_date,
                quantity=quantity,
                reserved_quantity=ZERO,
                unit_cost=unit_cost if unit_cost is not None else product.cost_price,
                status=StockStatus.AVAILABLE.value,
            )
            self.db.add(stock_item)
            transaction = new_transaction(
                self.db,
                TransactionType.ADJUSTMENT,
                self.actor.id,
                reference_type="InitialStock",
                notes=notes or "Initial stock entry",
            )
            add_movement(
                self.db,
                numbering.movement_number(transaction.transaction_number, 1),
                MovementType.ADJUSTMENT,
                product_id,
                quantity,
                self.actor.id,
                to_warehouse_id=warehouse_id,
                batch_number=batch_number,
                serial_number=serial_number,
                reference_number="INITIAL_STOCK",
                transaction=transaction,
                notes=notes or "Initial stock entry",
            )
            self.db.flush()
            self.log("INITIAL_STOCK_CREATED", "StockItem", stock_item.id, {"after": _stock_item_changes(stock_item)})

        logger.info(f"Initial stock {stock_item.id} created for product {product_id}: {quantity}")
        return stock_item

    def adjust_stock(
        self,
        stock_item_id: int,
        counted_quantity,
        reason: str,
        notes: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Set a bucket to a counted quantity.

        Differences above ``INVENTORY_ADJUSTMENT_APPROVAL_THRESHOLD`` from a user
        who cannot approve them are parked as approval requests instead.

        Returns:
            Dict with ``adjustment``, ``stock_item``, ``message``,
            ``requires_approval`` and ``request_id``.
        """
        reason = self._validate_reason(reason)
        counted = to_decimal(counted_quantity)
        if counted < 0:
            raise BusinessRuleError("Counted quantity cannot be negative.")

        stock_item = get_stock_item_or_404(self.db, stock_item_id)
        current = to_decimal(stock_item.quantity)
        difference = counted - current

        if difference == 0:
            return {
                "adjustment": None,
                "stock_item": stock_item,
                "message": "No adjustment required.",
                "requires_approval": False,
                "request_id": None,
            }

        if abs(difference) > settings.inventory_adjustment_approval_threshold:
            self.require(
                Permission.INVENTORY_ADJUST_LARGE,
                "This adjustment exceeds the configured threshold for your role.",
            )
            if not self.can(Permission.INVENTORY_ADJUST_APPROVE):
                return self._request_adjustment_approval(stock_item, counted, current, difference, reason, notes)
        else:
            self.require(Permission.INVENTORY_ADJUST_SMALL, "You do not have permission to adjust stock.")

        if counted < to_decimal(stock_item.reserved_quantity):
            raise BusinessRuleError("Counted quantity cannot be lower than reserved quantity.")

        with self.atomic():
            adjustment = self._apply_adjustment(
                stock_item,
                counted,
                reason,
                notes,
                created_by=self.actor.id,
                movement_notes=notes or f"Inventory adjustment: {reason}",
            )
            self.log(
                "STOCK_ADJUSTED",
                "InventoryAdjustment",
                adjustment.id,
                {
                    "before": {"quantity": current},
                    "after": {
                        "adjusted_quantity": counted,
                        "difference": difference,
                        "reason": reason,
                        "stock_item_id": stock_item.id,
                    },
                },
            )

        logger.info(f"Stock item {stock_item.id} adjusted {current} -> {counted} ({reason})")
        return {
            "adjustment": adjustment,
            "stock_item": stock_item,
            "message": "Stock adjusted.",
            "requires_approval": False,
            "request_id": None,
        }

    def _validate_reason(self, reason: str) -> str:
        try:
            return AdjustmentReason(reason).value
        except ValueError:
            raise BusinessRuleError("Invalid adjustment reason.")

    def _request_adjustment_approval(
        self, stock_item: StockItem, counted: Decimal, current: Decimal, difference: Decimal, reason: str, notes
    ) -> Dict[str, Any]:
        if counted < to_decimal(stock_item.reserved_quantity):
            raise BusinessRuleError("Counted quantity cannot be lower than reserved quantity.")

        with self.atomic():
            entry = self.log(
                ADJUSTMENT_APPROVAL_REQUESTED,
                ADJUSTMENT_REQUEST_ENTITY,
                f"ADJREQ-{int(utcnow().timestamp() * 1000)}-{stock_item.id}",
                {
                    "countedQuantity": counted,
                    "notes": notes,
                    "reason": reason,
                    "requestedDifference": difference,
                    "requestedPreviousQuantity": current,
                    "stockItemId": stock_item.id,
                },
            )
        if entry is None:
            raise BusinessRuleError("Could not record the adjustment approval request.")

        logger.info(f"Large adjustment on stock item {stock_item.id} submitted for approval (request {entry.id})")
        return {
            "adjustment": None,
            "stock_item": stock_item,
            "message": "Large adjustment submitted for approval.",
            "requires_approval": True,
            "request_id": entry.id,
        }

    def _apply_adjustment(
        self,
        stock_item: StockItem,
        counted: Decimal,
        reason: str,
        notes: Optional[str],
        created_by: Optional[int],
        movement_notes: str,
        approved_by: Optional[int] = None,
    ) -> InventoryAdjustment:
        previous = to_decimal(stock_item.quantity)
        difference = counted - previous
        adjustment_number = numbering.adjustment_number()

        stock_item.quantity = counted
        adjustment = InventoryAdjustment(
            adjustment_number=adjustment_number,
            stock_item_id=stock_item.id,
            product_id=stock_item.product_id,
            warehouse_id=stock_item.warehouse_id,
            batch_number=stock_item.batch_number,
            previous_quantity=previous,
            adjusted_quantity=counted,
            difference=difference,
            reason=reason,
            notes=notes,
            created_by=created_by,
            approved_by=approved_by,
            approved_at=utcnow() if approved_by else None,
        )
        self.db.add(adjustment)

        if difference != 0:
            add_movement(
                self.db,
                adjustment_number,
                MovementType.ADJUSTMENT,
                stock_item.product_id,
                abs(difference),
                self.actor.id,
                from_warehouse_id=stock_item.warehouse_id if difference < 0 else None,
                to_warehouse_id=stock_item.warehouse_id if difference > 0 else None,
                batch_number=stock_item.batch_number,
                serial_number=stock_item.serial_number,
                reference_number=adjustment_number,
                notes=movement_notes,
            )
        self.db.flush()
        return adjustment

    # ===== APPROVAL WORKFLOW =====

    def _get_open_request(self, request_id: int) -> ActivityLog:
        request_log = self.db.get(ActivityLog, request_id)
        if (
            request_log is None
            or request_log.action != ADJUSTMENT_APPROVAL_REQUESTED
            or request_log.entity != ADJUSTMENT_REQUEST_ENTITY
        ):
            raise NotFoundError("Adjustment approval request not found.")

        resolved = (
            self.db.query(ActivityLog.id)
            .filter(
                ActivityLog.entity == ADJUSTMENT_REQUEST_ENTITY,
                ActivityLog.action.in_([ADJUSTMENT_APPROVAL_APPROVED, ADJUSTMENT_APPROVAL_REJECTED]),
                ActivityLog.entity_id == str(request_id),
            )
            .first()
        )
        if resolved:
            raise BusinessRuleError("This request has already been resolved.")
        return request_log

    def approve_adjustment_request(self, request_id: int, approval_notes: Optional[str] = None) -> InventoryAdjustment:
        """Apply a parked large adjustment against the bucket's current quantity."""
        self.require(
            Permission.INVENTORY_ADJUST_APPROVE,
            "You do not have permission to approve adjustment requests.",
        )
        request_log = self._get_open_request(request_id)
        payload = request_log.changes or {}
        try:
            counted = to_decimal(payload["countedQuantity"])
            reason = self._validate_reason(payload["reason"])
            stock_item_id = int(payload["stockItemId"])
        except (KeyError, TypeError, ValueError, ArithmeticError):
            raise BusinessRuleError("Invalid approval request payload.")

        stock_item = get_stock_item_or_404(
            self.db, stock_item_id, "Stock item for this request no longer exists."
        )
        if counted < to_decimal(stock_item.reserved_quantity):
            raise BusinessRuleError("Counted quantity cannot be lower than reserved quantity.")

        notes = payload.get("notes") or approval_notes
        with self.atomic():
            adjustment = self._apply_adjustment(
                stock_item,
                counted,
                reason,
                notes,
                created_by=request_log.user_id,
                approved_by=self.actor.id,
                movement_notes=notes or f"Approved adjustment request: {reason}",
            )
            self.log(
                ADJUSTMENT_APPROVAL_APPROVED,
                ADJUSTMENT_REQUEST_ENTITY,
                request_id,
                {"adjustment_id": adjustment.id, "approval_notes": approval_notes, "request_id": request_id},
            )

        logger.info(f"Adjustment request {request_id} approved by user {self.actor.id}")
        return adjustment

    def reject_adjustment_request(self, request_id: int, reason: str) -> Dict[str, Any]:
        self.require(
            Permission.INVENTORY_ADJUST_REJECT,
            "You do not have permission to reject adjustment requests.",
        )
        reason = (reason or "").strip()
        if not 3 <= len(reason) <= 500:
            raise BusinessRuleError("Rejection reason must be between 3 and 500 characters.")
        self._get_open_request(request_id)

        with self.atomic():
            self.log(
                ADJUSTMENT_APPROVAL_REJECTED,
                ADJUSTMENT_REQUEST_ENTITY,
                request_id,
                {"reason": reason, "request_id": request_id},
            )

        logger.info(f"Adjustment request {request_id} rejected by user {self.actor.id}")
        return {"request_id": request_id}

    def approve_adjustment(self, adjustment_id: int, approval_notes: Optional[str] = None) -> InventoryAdjustment:
        """Sign off an already-applied adjustment."""
        self.require(Permission.INVENTORY_ADJUST_APPROVE, "You do not have permission to approve adjustments.")
        adjustment = self._get_unreviewed_adjustment(adjustment_id)

        with self.atomic():
            adjustment.approved_by = self.actor.id
            adjustment.approved_at = utcnow()
            self.log(
                "APPROVE_ADJUSTMENT",
                "InventoryAdjustment",
                adjustment.id,
                {
                    "adjustment_number": adjustment.adjustment_number,
                    "approval_notes": approval_notes,
                    "difference": adjustment.difference,
                },
            )
        return adjustment

    def reject_adjustment(self, adjustment_id: int, reason: str) -> InventoryAdjustment:
        self.require(Permission.INVENTORY_ADJUST_REJECT, "You do not have permission to reject adjustments.")
        reason = (reason or "").strip()
        if not 3 <= len(reason) <= 500:
            raise BusinessRuleError("Rejection reason must be between 3 and 500 characters.")
        adjustment = self._get_unreviewed_adjustment(adjustment_id)

        with self.atomic():
            adjustment.rejected_by = self.actor.id
            adjustment.rejected_at = utcnow()
            adjustment.rejection_reason = reason
            self.log(
                "REJECT_ADJUSTMENT",
                "InventoryAdjustment",
                adjustment.id,
                {"adjustment_number": adjustment.adjustment_number, "reason": reason},
            )
        return adjustment

    def _get_unreviewed_adjustment(self, adjustment_id: int) -> InventoryAdjustment:
        adjustment = self.db.get(InventoryAdjustment, adjustment_id)
        if adjustment is None:
            raise NotFoundError("Adjustment not found.")
        if adjustment.is_reviewed:
            raise BusinessRuleError("Adjustment has already been reviewed.")
        return adjustment

    def cycle_count(self, stock_item_id: int, counted_quantity, notes: Optional[str] = None) -> Dict[str, Any]:
        self.require(
            Permission.INVENTORY_CYCLE_COUNT_PERFORM,
            "You do not have permission to perform cycle count.",
        )
        self.require(
            Permission.INVENTORY_CYCLE_COUNT_SUBMIT_DISCREPANCY,
            "You do not have permission to submit cycle count discrepancies.",
        )
        return self.adjust_stock(
            stock_item_id,
            counted_quantity,
            AdjustmentReason.PHYSICAL_COUNT.value,
            notes or "Cycle count submission",
        )

    # ===== RESERVATIONS =====

    def reserve_stock(self, stock_item_id: int, quantity, reference_number: Optional[str] = None) -> StockItem:
        self.require(Permission.INVENTORY_ADJUST_SMALL, "You do not have permission to reserve stock.")
        quantity = assert_positive_quantity(quantity, "Reserve quantity")
        stock_item = get_stock_item_or_404(self.db, stock_item_id)

        if quantity > stock_item.available_quantity:
            raise BusinessRuleError("Reserve quantity exceeds available stock.")

        with self.atomic():
            stock_item.reserved_quantity = to_decimal(stock_item.reserved_quantity) + quantity
            self.db.flush()
            self.log(
                "STOCK_RESERVED",
                "StockItem",
                stock_item.id,
                {"after": _stock_item_changes(stock_item), "reference_number": reference_number},
            )
        return stock_item

    def release_reservation(self, stock_item_id: int, quantity, reference_number: Optional[str] = None) -> StockItem:
        self.require(Permission.INVENTORY_ADJUST_SMALL, "You do not have permission to release stock.")
        quantity = assert_positive_quantity(quantity, "Release quantity")
        stock_item = get_stock_item_or_404(self.db, stock_item_id)

        reserved = to_decimal(stock_item.reserved_quantity)
        if quantity > reserved:
            raise BusinessRuleError("Release quantity exceeds reserved stock.")

        with self.atomic():
            stock_item.reserved_quantity = reserved - quantity
            self.db.flush()
            self.log(
                "STOCK_RESERVATION_RELEASED",
                "StockItem",
                stock_item.id,
                {"after": _stock_item_changes(stock_item), "reference_number": reference_number},
            )
        return stock_item

    # ===== TRANSFERS & QUARANTINE =====

    def transfer_stock(
        self,
        stock_item_id: int,
        to_warehouse_id: int,
        quantity,
        to_location_id: Optional[int] = None,
        notes: Optional[str] = None,
    ) -> Dict[str, StockItem]:
        """Move available quantity from one bucket to another warehouse/location."""
        self.require(Permission.INVENTORY_TRANSFER_COMPLETE, "You do not have permission to transfer stock.")
        quantity = assert_positive_quantity(quantity, "Transfer quantity")

        source = get_stock_item_or_404(self.db, stock_item_id, "Source stock item not found.")
        get_active_warehouse(self.db, to_warehouse_id, "Destination warehouse not found.")
        get_location_in_warehouse(
            self.db, to_location_id, to_warehouse_id, "Destination location not found in target warehouse."
        )
        if source.warehouse_id == to_warehouse_id and source.location_id == to_location_id:
            raise BusinessRuleError("Source and destination are the same.")
        if quantity > source.available_quantity:
            raise BusinessRuleError("Transfer quantity exceeds available stock.")

        from_warehouse_id = source.warehouse_id
        with self.atomic():
            if source.serial_number:
                # A serialized unit moves with its bucket
                source.warehouse_id = to_warehouse_id
                source.location_id = to_location_id
                destination = source
            else:
                source.quantity = to_decimal(source.quantity) - quantity
                destination = self._find_destination_bucket(source, to_warehouse_id, to_location_id)
                if destination is None:
                    destination = StockItem(
                        product_id=source.product_id,
                        warehouse_id=to_warehouse_id,
                        location_id=to_location_id,
                        batch_number=source.batch_number,
                        serial_number=None,
                        expiry_date=source.expiry_date,
                        quantity=quantity,
                        reserved_quantity=ZERO,
                        unit_cost=source.unit_cost,
                        status=source.status,
                    )
                    self.db.add(destination)
                else:
                    destination.quantity = to_decimal(destination.quantity) + quantity

            transaction = new_transaction(
                self.db,
                TransactionType.TRANSFER,
                self.actor.id,
                reference_type="StockTransfer",
                reference_id=source.id,
                notes=notes or "Stock transfer",
            )
            add_movement(
                self.db,
                numbering.movement_number(transaction.transaction_number, 1),
                MovementType.TRANSFER,
                source.product_id,
                quantity,
                self.actor.id,
                from_warehouse_id=from_warehouse_id,
                to_warehouse_id=to_warehouse_id,
                batch_number=source.batch_number,
                serial_number=source.serial_number,
                reference_number=transaction.transaction_number,
                transaction=transaction,
                notes=notes or "Stock transfer",
            )
            self.db.flush()
            self.log(
                "STOCK_TRANSFERRED",
                "StockMovement",
                transaction.transaction_number,
                {
                    "after": {
                        "destination_stock_item_id": destination.id,
                        "moved_quantity": quantity,
                        "source_stock_item_id": source.id,
                    }
                },
            )

        logger.info(
            f"Transferred {quantity} of product {source.product_id} "
            f"from warehouse {from_warehouse_id} to {to_warehouse_id}"
        )
        return {"source": source, "destination": destination}

    def _find_destination_bucket(
        self, source: StockItem, warehouse_id: int, location_id: Optional[int]
    ) -> Optional[StockItem]:
        return (
            self.db.query(StockItem)
            .filter(
                StockItem.id != source.id,
                StockItem.product_id == source.product_id,
                StockItem.warehouse_id == warehouse_id,
                StockItem.location_id.is_(None) if location_id is None else StockItem.location_id == location_id,
                StockItem.batch_number.is_(None)
                if source.batch_number is None
                else StockItem.batch_number == source.batch_number,
                StockItem.serial_number.is_(None),
                StockItem.status == source.status,
            )
            .order_by(StockItem.id.asc())
            .first()
        )

    def quarantine_stock(
        self,
        stock_item_id: int,
        reason: str,
        quarantine_location_id: Optional[int] = None,
    ) -> Dict[str, Any]:
        self.require(Permission.INVENTORY_QUARANTINE_MOVE, "You do not have permission to quarantine stock.")
        reason = (reason or "").strip()
        if not reason:
            raise BusinessRuleError("Quarantine reason is required.")

        stock_item = get_stock_item_or_404(self.db, stock_item_id)
        if stock_item.status != StockStatus.AVAILABLE.value:
            raise BusinessRuleError(f'Stock is already in "{stock_item.status}" status.')
        reserved = to_decimal(stock_item.reserved_quantity)
        if reserved > 0:
            raise BusinessRuleError(
                f"Cannot quarantine stock with active reservations ({format_quantity(reserved)} units reserved)."
            )
        get_location_in_warehouse(
            self.db,
            quarantine_location_id,
            stock_item.warehouse_id,
            "Quarantine location not found in the stock item's warehouse.",
        )

        before = _stock_item_changes(stock_item)
        movement_number = numbering.unique_code("QTN")
        with self.atomic():
            if quarantine_location_id is not None:
                stock_item.location_id = quarantine_location_id
            stock_item.status = StockStatus.QUARANTINE.value
            if to_decimal(stock_item.quantity) > 0:
                add_movement(
                    self.db,
                    movement_number,
                    MovementType.ADJUSTMENT,
                    stock_item.product_id,
                    stock_item.quantity,
                    self.actor.id,
                    from_warehouse_id=stock_item.warehouse_id,
                    to_warehouse_id=stock_item.warehouse_id,
                    batch_number=stock_item.batch_number,
                    serial_number=stock_item.serial_number,
                    reference_number=movement_number,
                    notes=f"Quarantine: {reason}",
                )
            self.db.flush()
            self.log(
                "STOCK_QUARANTINED",
                "StockItem",
                stock_item.id,
                {"before": before, "after": _stock_item_changes(stock_item), "reason": reason},
            )

        return {"movement_number": movement_number, "stock_item": stock_item}

    # ===== EXPIRY =====

    def get_expiry_alerts(self, days_ahead: int = 30, warehouse_id: Optional[int] = None) -> List[Dict[str, Any]]:
        """AVAILABLE stock expiring within ``days_ahead`` days, most urgent first."""
        if not 1 <= days_ahead <= 365:
            raise BusinessRuleError("Days ahead must be between 1 and 365.")

        current_day = today()
        horizon = current_day + timedelta(days=days_ahead)
        query = self.db.query(StockItem).filter(
            StockItem.status == StockStatus.AVAILABLE.value,
            StockItem.expiry_date.isnot(None),
            StockItem.expiry_date <= horizon,
            StockItem.quantity > 0,
        )
        if warehouse_id is not None:
            query = query.filter(StockItem.warehouse_id == warehouse_id)

        alerts = []
        for item in query.order_by(StockItem.expiry_date.asc(), StockItem.id.asc()).all():
            days_until = (item.expiry_date - current_day).days
            alerts.append(
                {
                    "stock_item": item,
                    "days_until_expiry": days_until,
                    "urgency": expiry_urgency(days_until),
                }
            )
        return alerts

    def update_expiry_status(self, stock_item_id: int, operation: str, notes: Optional[str] = None) -> StockItem:
        """QUARANTINE, DISPOSE (to DAMAGED) or RELEASE (back to AVAILABLE) a bucket."""
        operation = (operation or "").upper()
        if operation not in EXPIRY_OPERATIONS:
            raise BusinessRuleError("Invalid expiry operation.")
        target_status, permission = EXPIRY_OPERATIONS[operation]
        self.require(permission, "You do not have permission for this operation.")

        stock_item = get_stock_item_or_404(self.db, stock_item_id)
        if target_status != StockStatus.AVAILABLE and to_decimal(stock_item.reserved_quantity) > 0:
            raise BusinessRuleError("Cannot change the status of stock with active reservations.")

        previous_status = stock_item.status
        with self.atomic():
            stock_item.status = target_status.value
            if to_decimal(stock_item.quantity) > 0:
                transaction = new_transaction(
                    self.db,
                    TransactionType.ADJUSTMENT,
                    self.actor.id,
                    reference_type="ExpiryOperation",
                    reference_id=stock_item.id,
                    notes=notes,
                )
                add_movement(
                    self.db,
                    numbering.movement_number(transaction.transaction_number, 1),
                    MovementType.ADJUSTMENT,
                    stock_item.product_id,
                    stock_item.quantity,
                    self.actor.id,
                    from_warehouse_id=stock_item.warehouse_id,
                    to_warehouse_id=stock_item.warehouse_id,
                    batch_number=stock_item.batch_number,
                    serial_number=stock_item.serial_number,
                    reference_number=operation,
                    transaction=transaction,
                    notes=notes or f"Expiry operation: {operation.lower()}",
                )
            self.db.flush()
            self.log(
                "EXPIRY_STOCK_STATUS_UPDATED",
                "StockItem",
                stock_item.id,
                {
                    "before": {"status": previous_status},
                    "after": {"operation": operation, "status": target_status.value},
                },
            )
        return stock_item

    # ===== GOODS RECEIPT (NO PURCHASE ORDER) =====

    def receive_goods(self, warehouse_id: int, items: List[Dict[str, Any]], notes: Optional[str] = None) -> GoodsReceipt:
        """Book a free-standing delivery into stock.

        Each item: ``product_id``, ``quantity`` and optionally ``location_id``,
        ``batch_number``, ``serial_number``, ``expiry_date`` and ``unit_cost``.
        """
        self.require(Permission.GOODS_RECEIPTS_CREATE, "You do not have permission to receive goods.")
        if not items:
            raise BusinessRuleError("At least one item is required.")
        get_active_warehouse(self.db, warehouse_id)

        prepared = []
        seen_serials = set()
        for item in items:
            quantity = assert_positive_quantity(item.get("quantity"), "Receive quantity")
            product = get_active_product(self.db, item["product_id"])
            location_id = item.get("location_id")
            get_location_in_warehouse(self.db, location_id, warehouse_id, "Location not found in selected warehouse.")
            batch_number = clean_optional(item.get("batch_number"))
            serial_number = clean_optional(item.get("serial_number"))
            expiry_date = item.get("expiry_date")
            validate_tracking_fields(product, batch_number, expiry_date, serial_number, quantity)
            if serial_number:
                if serial_number in seen_serials:
                    raise BusinessRuleError("Serial number already exists in stock.")
                seen_serials.add(serial_number)
                assert_serial_available(self.db, serial_number)
            prepared.append(
                {
                    "product": product,
                    "quantity": quantity,
                    "location_id": location_id,
                    "batch_number": batch_number,
                    "serial_number": serial_number,
                    "expiry_date": expiry_date,
                    "unit_cost": item.get("unit_cost"),
                }
            )

        with self.atomic():
            receipt = GoodsReceipt(
                receipt_number=numbering.goods_receipt_number(),
                purchase_order_id=None,
                received_date=utcnow(),
                notes=notes,
                created_by=self.actor.id,
            )
            self.db.add(receipt)
            self.db.flush()
            transaction = new_transaction(
                self.db,
                TransactionType.PURCHASE_RECEIPT,
                self.actor.id,
                reference_type="GoodsReceipt",
                reference_id=receipt.id,
                notes=notes or "Goods receipt posting",
            )
            for line_number, line in enumerate(prepared, start=1):
                post_receipt_line(
                    self.db,
                    receipt,
                    transaction,
                    line_number,
                    warehouse_id,
                    line,
                    self.actor.id,
                    notes=notes or "Goods received",
                )
            self.db.flush()
            self.log(
                "GOODS_RECEIPT_POSTED",
                "GoodsReceipt",
                receipt.id,
                {"after": {"items": len(prepared), "receipt_number": receipt.receipt_number, "warehouse_id": warehouse_id}},
            )

        logger.info(f"Goods receipt {receipt.receipt_number} posted with {len(prepared)} lines")
        return receipt

    # ===== QUERIES =====

    def list_stock(
        self,
        product_id: Optional[int] = None,
        warehouse_id: Optional[int] = None,
        location_id: Optional[int] = None,
        status: Optional[str] = None,
        search: Optional[str] = None,
        skip: int = 0,
        limit: int = 50,
    ):
        query = self.db.query(StockItem).join(Product, StockItem.product_id == Product.id)
        if product_id is not None:
            query = query.filter(StockItem.product_id == product_id)
        if warehouse_id is not None:
            query = query.filter(StockItem.warehouse_id == warehouse_id)
        if location_id is not None:
            query = query.filter(StockItem.location_id == location_id)
        if status:
            query = query.filter(StockItem.status == status)
        if search:
            pattern = f"%{search.strip()}%"
            query = query.filter(
                or_(
                    Product.name.ilike(pattern),
                    Product.sku.ilike(pattern),
                    StockItem.batch_number.ilike(pattern),
                    StockItem.serial_number.ilike(pattern),
                )
            )
        total = query.count()
        items = query.order_by(Product.name.asc(), StockItem.id.asc()).offset(skip).limit(limit).all()
        return items, total

    def movement_history(
        self,
        product_id: Optional[int] = None,
        warehouse_id: Optional[int] = None,
        movement_type: Optional[str] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        skip: int = 0,
        limit: int = 50,
    ):
        query = self.db.query(StockMovement)
        if product_id is not None:
            query = query.filter(StockMovement.product_id == product_id)
        if warehouse_id is not None:
            query = query.filter(
                or_(
                    StockMovement.from_warehouse_id == warehouse_id,
                    StockMovement.to_warehouse_id == warehouse_id,
                )
            )
        if movement_type:
            query = query.filter(StockMovement.type == movement_type)
        if date_from is not None:
            query = query.filter(StockMovement.created_at >= date_from)
        if date_to is not None:
            query = query.filter(StockMovement.created_at <= date_to)
        total = query.count()
        movements = (
            query.order_by(StockMovement.created_at.desc(), StockMovement.id.desc()).offset(skip).limit(limit).all()
        )
        return movements, total

    def list_adjustments(
        self,
        product_id: Optional[int] = None,
        warehouse_id: Optional[int] = None,
        skip: int = 0,
        limit: int = 50,
    ):
        query = self.db.query(InventoryAdjustment)
        if product_id is not None:
            query = query.filter(InventoryAdjustment.product_id == product_id)
        if warehouse_id is not None:
            query = query.filter(InventoryAdjustment.warehouse_id == warehouse_id)
        total = query.count()
        adjustments = (
            query.order_by(InventoryAdjustment.created_at.desc(), InventoryAdjustment.id.desc())
            .offset(skip)
            .limit(limit)
            .all()
        )
        return adjustments, total

    def batch_traceability(self, product_id: int, batch_number: str) -> Dict[str, Any]:
        """Where a batch came from, where it went and what is left of it."""
        receipts = (
            self.db.query(GoodsReceiptItem)
            .join(GoodsReceipt, GoodsReceiptItem.goods_receipt_id == GoodsReceipt.id)
            .filter(GoodsReceiptItem.product_id == product_id, GoodsReceiptItem.batch_number == batch_number)
            .order_by(GoodsReceipt.received_date.asc(), GoodsReceiptItem.id.asc())
            .all()
        )
        shipments = (
            self.db.query(ShipmentItem)
            .join(Shipment, ShipmentItem.shipment_id == Shipment.id)
            .filter(ShipmentItem.product_id == product_id, ShipmentItem.batch_number == batch_number)
            .order_by(Shipment.shipped_date.asc(), ShipmentItem.id.asc())
            .all()
        )
        current_stock = (
            self.db.query(StockItem)
            .filter(
                StockItem.product_id == product_id,
                StockItem.batch_number == batch_number,
                StockItem.quantity > 0,
            )
            .order_by(StockItem.id.asc())
            .all()
        )
        return {
            "batch_number": batch_number,
            "receipts": receipts,
            "shipments": shipments,
            "current_stock": current_stock,
            "summary": {
                "total_received": sum((to_decimal(r.quantity) for r in receipts), ZERO),
                "total_shipped": sum((to_decimal(s.quantity) for s in shipments), ZERO),
                "total_on_hand": sum((to_decimal(s.quantity) for s in current_stock), ZERO),
            },
        }

    def serial_history(self, serial_number: str) -> Dict[str, Any]:
        current = self.db.query(StockItem).filter(StockItem.serial_number == serial_number).first()
        movements = (
            self.db.query(StockMovement)
            .filter(StockMovement.serial_number == serial_number)
            .order_by(StockMovement.created_at.asc(), StockMovement.id.asc())
            .all()
        )
        return {
            "serial_number": serial_number,
            "current_location": current,
            "is_currently_in_stock": bool(current is not None and to_decimal(current.quantity) > 0),
            "movement_history": movements,
        }

    def putaway_suggestions(self, product_id: int, warehouse_id: int, quantity) -> List[Dict[str, Any]]:
        """The five least loaded STANDARD locations, scored by quantity + 10 per bucket."""
        quantity = assert_positive_quantity(quantity, "Quantity")
        locations = (
            self.db.query(Location)
            .filter(
                Location.warehouse_id == warehouse_id,
                Location.is_active.is_(True),
                Location.type == LocationType.STANDARD.value,
            )
            .order_by(Location.code.asc())
            .all()
        )
        loads = dict(
            (location_id, (to_decimal(total or 0), count))
            for location_id, total, count in self.db.query(
                StockItem.location_id, func.sum(StockItem.quantity), func.count(StockItem.id)
            )
            .filter(StockItem.warehouse_id == warehouse_id, StockItem.location_id.isnot(None))
            .group_by(StockItem.location_id)
            .all()
        )

        suggestions = []
        for location in locations:
            total, count = loads.get(location.id, (ZERO, 0))
            suggestions.append(
                {
                    "location": location,
                    "recommended_quantity": quantity,
                    "score": total + count * 10,
                }
            )
        suggestions = sorted(suggestions, key=lambda s: s["score"])
        return suggestions[:5]


def expiry_urgency(days_until_expiry: int) -> str:
    if days_until_expiry <= 0:
        return "EXPIRED"
    if days_until_expiry <= 14:
        return "CRITICAL"
    if days_until_expiry <= 30:
        return "WARNING"
    return "NOTICE"


def post_receipt_line(
    db: Session,
    receipt: GoodsReceipt,
    transaction: InventoryTransaction,
    line_number: int,
    warehouse_id: int,
    line: Dict[str, Any],
    created_by: Optional[int],
    notes: Optional[str] = None,
) -> StockItem:
    """Write one receipt line: the receipt item, the bucket and its movement."""
    product = line["product"]
    db.add(
        GoodsReceiptItem(
            goods_receipt_id=receipt.id,
            product_id=product.id,
            warehouse_id=warehouse_id,
            location_id=line.get("location_id"),
            quantity=line["quantity"],
            batch_number=line.get("batch_number"),
            serial_number=line.get("serial_number"),
            expiry_date=line.get("expiry_date"),
            unit_cost=line.get("unit_cost") or 0,
        )
    )
    bucket = upsert_bucket(
        db,
        product_id=product.id,
        warehouse_id=warehouse_id,
        location_id=line.get("location_id"),
        quantity=line["quantity"],
        batch_number=line.get("batch_number"),
        serial_number=line.get("serial_number"),
        expiry_date=line.get("expiry_date"),
        unit_cost=line.get("unit_cost"),
    )
    add_movement(
        db,
        numbering.movement_number(transaction.transaction_number, line_number),
        MovementType.PURCHASE_RECEIPT,
        product.id,
        line["quantity"],
        created_by,
        to_warehouse_id=warehouse_id,
        batch_number=line.get("batch_number"),
        serial_number=line.get("serial_number"),
        reference_number=receipt.receipt_number,
        transaction=transaction,
        notes=notes,
    )
    return bucket
