"""Purchase Order Service - drafting, approval, receiving and receipt voids.

Status flow::

    DRAFT -> SUBMITTED -> APPROVED -> PARTIALLY_RECEIVED -> RECEIVED
      ^          |           |
      +----------+           +--> CANCELLED (nothing received yet)
"""

import logging
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import selectinload

from stockroom.core import numbering
from stockroom.core.permissions import Permission
from stockroom.models.product import Product
from stockroom.models.purchase_order import (
    GoodsReceipt,
    POStatus,
    PurchaseOrder,
    PurchaseOrderItem,
)
from stockroom.models.stock import MovementType, StockItem, StockStatus, TransactionType
from stockroom.models.supplier import Supplier
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
from stockroom.services.stock_ledger_service import (
    add_movement,
    assert_serial_available,
    get_active_warehouse,
    get_location_in_warehouse,
    new_transaction,
    post_receipt_line,
)

logger = logging.getLogger(__name__)

VOID_MARKER = "[VOIDED]"
RECEIVABLE_STATUSES = {POStatus.APPROVED.value, POStatus.PARTIALLY_RECEIVED.value}


def build_line_totals(items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """line total = round(quantity * round(unit_price))."""
    lines = []
    for item in items:
        quantity = to_decimal(item["quantity"])
        unit_price = round_minor(item["unit_price"])
        lines.append(
            {
                "product_id": item["product_id"],
                "quantity": quantity,
                "unit_price": unit_price,
                "tax_rate": to_decimal(item.get("tax_rate") or 0),
                "total_price": round_minor(quantity * unit_price),
            }
        )
    return lines


def compute_order_totals(lines: List[Dict[str, Any]], tax_amount: Any = 0, shipping_cost: Any = 0) -> Dict[str, int]:
    subtotal = sum(line["total_price"] for line in lines)
    tax_amount = round_minor(tax_amount or 0)
    shipping_cost = round_minor(shipping_cost or 0)
    return {
        "subtotal": subtotal,
        "tax_amount": tax_amount,
        "shipping_cost": shipping_cost,
        "total_amount": subtotal + tax_amount + shipping_cost,
    }


def assert_status(order: PurchaseOrder, allowed: set, action: str) -> None:
    if order.status not in allowed:
        raise BusinessRuleError(f'Cannot {action} purchase order in "{order.status}" status.')


def _append_note(notes: Optional[str], line: str) -> str:
    return f"{notes}\n{line}" if notes else line


class PurchaseOrderService(InventoryService):
    """Service for purchase orders and goods receipts."""

    # ===== LOOKUPS =====

    def get_order(self, order_id: int) -> PurchaseOrder:
        order = (
            self.db.query(PurchaseOrder)
            .options(selectinload(PurchaseOrder.items), selectinload(PurchaseOrder.goods_receipts))
            .filter(PurchaseOrder.id == order_id)
            .first()
        )
        if order is None:
            raise NotFoundError("Purchase order not found.")
        return order

    def list_orders(
        self,
        status: Optional[str] = None,
        supplier_id: Optional[int] = None,
        search: Optional[str] = None,
        skip: int = 0,
        limit: int = 50,
    ):
        query = self.db.query(PurchaseOrder).join(Supplier, PurchaseOrder.supplier_id == Supplier.id)
        if status:
            query = query.filter(PurchaseOrder.status == status)
        if supplier_id is not None:
            query = query.filter(PurchaseOrder.supplier_id == supplier_id)
        if search:
            pattern = f"%{search.strip()}%"
            query = query.filter(or_(PurchaseOrder.order_number.ilike(pattern), Supplier.name.ilike(pattern)))
        total = query.count()
        orders = query.order_by(PurchaseOrder.created_at.desc(), PurchaseOrder.id.desc()).offset(skip).limit(limit).all()
        return orders, total

    def list_goods_receipts(self, purchase_order_id: Optional[int] = None, skip: int = 0, limit: int = 50):
        query = self.db.query(GoodsReceipt)
        if purchase_order_id is not None:
            query = query.filter(GoodsReceipt.purchase_order_id == purchase_order_id)
        total = query.count()
        receipts = query.order_by(GoodsReceipt.received_date.desc(), GoodsReceipt.id.desc()).offset(skip).limit(limit).all()
        return receipts, total

    def get_goods_receipt(self, receipt_id: int) -> GoodsReceipt:
        receipt = self.db.get(GoodsReceipt, receipt_id)
        if receipt is None:
            raise NotFoundError("Goods receipt not found.")
        return receipt

    def _get_active_supplier(self, supplier_id: int) -> Supplier:
        supplier = self.db.get(Supplier, supplier_id)
        if supplier is None or supplier.is_deleted or not supplier.is_active:
            raise BusinessRuleError("Selected supplier is invalid or inactive.")
        return supplier

    def _validate_items(self, items: List[Dict[str, Any]]) -> None:
        if not items:
            raise BusinessRuleError("At least one item is required.")
        seen = set()
        for item in items:
            if item["product_id"] in seen:
                raise BusinessRuleError("Each product can only appear once in a purchase order.")
            seen.add(item["product_id"])
            assert_positive_quantity(item.get("quantity"), "Quantity")
            if to_decimal(item.get("unit_price", 0)) < 0:
                raise BusinessRuleError("Unit price cannot be negative.")
            tax_rate = to_decimal(item.get("tax_rate") or 0)
            if tax_rate < 0 or tax_rate > 100:
                raise BusinessRuleError("Tax rate must be between 0 and 100.")
            product = self.db.get(Product, item["product_id"])
            if product is None or product.is_deleted or not product.is_active:
                raise BusinessRuleError(f"Product {item['product_id']} is invalid or inactive.")

    # ===== DRAFTS =====

    def create_order(
        self,
        supplier_id: int,
        items: List[Dict[str, Any]],
        tax_amount: Any = 0,
        shipping_cost: Any = 0,
        expected_date: Optional[date] = None,
        notes: Optional[str] = None,
    ) -> PurchaseOrder:
        self.require(Permission.PURCHASE_ORDERS_CREATE_DRAFT, "You do not have permission to create purchase orders.")
        supplier = self._get_active_supplier(supplier_id)
        self._validate_items(items)
        lines = build_line_totals(items)
        totals = compute_order_totals(lines, tax_amount, shipping_cost)

        with self.atomic():
            order = PurchaseOrder(
                order_number=numbering.purchase_order_number(),
                supplier_id=supplier.id,
                status=POStatus.DRAFT.value,
                order_date=today(),
                expected_date=expected_date,
                notes=notes,
                created_by=self.actor.id,
                **totals,
            )
            order.items = [PurchaseOrderItem(**line) for line in lines]
            self.db.add(order)
            self.db.flush()
            self.log(
                "PURCHASE_ORDER_CREATED",
                "PurchaseOrder",
                order.id,
                {
                    "after": {
                        "item_count": len(lines),
                        "order_number": order.order_number,
                        "status": order.status,
                        "supplier_id": order.supplier_id,
                        "total_amount": order.total_amount,
                    }
                },
            )

        logger.info(f"Purchase order {order.order_number} created for supplier {supplier.id}")
        return order

    def update_draft(
        self,
        order_id: int,
        supplier_id: int,
        items: List[Dict[str, Any]],
        tax_amount: Any = 0,
        shipping_cost: Any = 0,
        expected_date: Optional[date] = None,
        notes: Optional[str] = None,
    ) -> PurchaseOrder:
        self.require(Permission.PURCHASE_ORDERS_EDIT_DRAFT, "You do not have permission to edit purchase orders.")
        order = self.get_order(order_id)
        assert_status(order, {POStatus.DRAFT.value}, "edit")
        supplier = self._get_active_supplier(supplier_id)
        self._validate_items(items)
        lines = build_line_totals(items)
        totals = compute_order_totals(lines, tax_amount, shipping_cost)

        before_total = order.total_amount
        with self.atomic():
            order.supplier_id = supplier.id
            order.expected_date = expected_date
            order.notes = notes
            for key, value in totals.items():
                setattr(order, key, value)
            order.items.clear()
            self.db.flush()
            order.items.extend(PurchaseOrderItem(**line) for line in lines)
            self.db.flush()
            self.log(
                "PURCHASE_ORDER_UPDATED",
                "PurchaseOrder",
                order.id,
                {
                    "before": {"total_amount": before_total},
                    "after": {"item_count": len(lines), "total_amount": order.total_amount},
                },
            )
        return order

    # ===== STATUS TRANSITIONS =====

    def _transition(self, order: PurchaseOrder, new_status: POStatus, action: str, extra: Optional[dict] = None) -> PurchaseOrder:
        previous_status = order.status
        with self.atomic():
            order.status = new_status.value
            self.db.flush()
            changes = {
                "before": {"status": previous_status},
                "after": {"status": order.status},
                "order_number": order.order_number,
            }
            if extra:
                changes.update(extra)
            self.log(action, "PurchaseOrder", order.id, changes)
        logger.info(f"Purchase order {order.order_number}: {previous_status} -> {order.status}")
        return order

    def submit_order(self, order_id: int) -> PurchaseOrder:
        self.require(
            Permission.PURCHASE_ORDERS_SUBMIT_FOR_APPROVAL,
            "You do not have permission to submit purchase orders.",
        )
        order = self.get_order(order_id)
        assert_status(order, {POStatus.DRAFT.value}, "submit")
        return self._transition(order, POStatus.SUBMITTED, "PURCHASE_ORDER_SUBMITTED")

    def approve_order(self, order_id: int) -> PurchaseOrder:
        self.require(Permission.PURCHASE_ORDERS_APPROVE, "You do not have permission to approve purchase orders.")
        order = self.get_order(order_id)
        assert_status(order, {POStatus.SUBMITTED.value}, "approve")
        order.approved_by = self.actor.id
        order.approved_at = utcnow()
        return self._transition(order, POStatus.APPROVED, "PURCHASE_ORDER_APPROVED")

    def reject_order(self, order_id: int, reason: Optional[str] = None) -> PurchaseOrder:
        self.require(Permission.PURCHASE_ORDERS_REJECT, "You do not have permission to reject purchase orders.")
        order = self.get_order(order_id)
        assert_status(order, {POStatus.SUBMITTED.value}, "reject")
        reason = clean_optional(reason)
        if reason:
            order.notes = _append_note(order.notes, f"[REJECTED REASON] {reason}")
        return self._transition(order, POStatus.DRAFT, "PURCHASE_ORDER_REJECTED", {"reason": reason})

    def mark_ordered(self, order_id: int) -> PurchaseOrder:
        """Stamp that the order was placed with the supplier; the status is unchanged."""
        self.require(
            Permission.PURCHASE_ORDERS_MARK_ORDERED,
            "You do not have permission to mark purchase orders as ordered.",
        )
        order = self.get_order(order_id)
        assert_status(order, RECEIVABLE_STATUSES, "mark ordered")

        with self.atomic():
            marker = f"[ORDERED {utcnow().isoformat()} by {self.actor.id}]"
            order.notes = _append_note(order.notes, marker)
            self.db.flush()
            self.log(
                "PURCHASE_ORDER_MARKED_ORDERED",
                "PurchaseOrder",
                order.id,
                {"after": {"status": order.status}, "before": {"status": order.status}, "order_number": order.order_number},
            )
        return order

    def cancel_order(self, order_id: int, reason: Optional[str] = None) -> PurchaseOrder:
        self.require(Permission.PURCHASE_ORDERS_CANCEL, "You do not have permission to cancel purchase orders.")
        order = self.get_order(order_id)
        if order.status == POStatus.CANCELLED.value:
            raise BusinessRuleError("Purchase order is already cancelled.")
        if any(to_decimal(item.received_quantity) > 0 for item in order.items):
            raise BusinessRuleError("Cannot cancel a purchase order with received quantities.")
        reason = clean_optional(reason)
        if reason:
            order.notes = _append_note(order.notes, f"[CANCELLED REASON] {reason}")
        return self._transition(order, POStatus.CANCELLED, "PURCHASE_ORDER_CANCELLED", {"reason": reason})

    # ===== RECEIVING =====

    def receive_goods(
        self,
        order_id: int,
        items: List[Dict[str, Any]],
        received_date: Optional[datetime] = None,
        notes: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> GoodsReceipt:
        """Receive delivered lines of an approved purchase order.

        Each item: ``product_id``, ``warehouse_id``, ``quantity`` and optionally
        ``location_id``, ``batch_number``, ``serial_number`` and ``expiry_date``.
        Repeating a call with the same ``idempotency_key`` returns the receipt
        booked the first time.
        """
        self.require(Permission.PURCHASE_ORDERS_RECEIVE_GOODS, "You do not have permission to receive goods.")
        self.require(Permission.GOODS_RECEIPTS_CREATE, "You do not have permission to receive goods.")

        receipt_number = numbering.goods_receipt_number(idempotency_key)
        if idempotency_key:
            existing = self.db.query(GoodsReceipt).filter(GoodsReceipt.receipt_number == receipt_number).first()
            if existing is not None:
                logger.info(f"Goods receipt {receipt_number} already posted, returning it")
                return existing

        order = self.get_order(order_id)
        assert_status(order, RECEIVABLE_STATUSES, "receive goods for")
        if not items:
            raise BusinessRuleError("At least one item is required.")

        order_items = {item.product_id: item for item in order.items}
        incoming: Dict[int, Any] = {}
        prepared = []
        seen_serials = set()
        for item in items:
            warehouse_id = item["warehouse_id"]
            get_active_warehouse(self.db, warehouse_id, f"Warehouse {warehouse_id} is invalid or inactive.")
            location_id = item.get("location_id")
            get_location_in_warehouse(
                self.db,
                location_id,
                warehouse_id,
                f"Location {location_id} does not belong to warehouse {warehouse_id}.",
            )

            order_item = order_items.get(item["product_id"])
            if order_item is None:
                raise BusinessRuleError(f"Product {item['product_id']} does not exist on this purchase order.")
            quantity = assert_positive_quantity(item.get("quantity"), "Received quantity")
            incoming[order_item.id] = incoming.get(order_item.id, ZERO) + quantity
            remaining = order_item.remaining_quantity
            if incoming[order_item.id] > remaining:
                raise BusinessRuleError(
                    f'Cannot receive {format_quantity(quantity)} units for "{order_item.product.name}". '
                    f"Remaining quantity is {format_quantity(remaining)}."
                )

            batch_number = clean_optional(item.get("batch_number"))
            serial_number = clean_optional(item.get("serial_number"))
            expiry_date = item.get("expiry_date")
            validate_tracking_fields(order_item.product, batch_number, expiry_date, serial_number, quantity)
            if serial_number:
                if serial_number in seen_serials:
                    raise BusinessRuleError("Serial number already exists in stock.")
                seen_serials.add(serial_number)
                assert_serial_available(self.db, serial_number)

            prepared.append(
                (
                    order_item,
                    warehouse_id,
                    {
                        "product": order_item.product,
                        "quantity": quantity,
                        "location_id": location_id,
                        "batch_number": batch_number,
                        "serial_number": serial_number,
                        "expiry_date": expiry_date,
                        "unit_cost": order_item.unit_price,
                    },
                )
            )

        with self.atomic():
            receipt = GoodsReceipt(
                receipt_number=receipt_number,
                purchase_order_id=order.id,
                received_date=received_date or utcnow(),
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
                notes=f"Goods receipt {receipt_number}",
            )
            for line_number, (order_item, warehouse_id, line) in enumerate(prepared, start=1):
                post_receipt_line(
                    self.db,
                    receipt,
                    transaction,
                    line_number,
                    warehouse_id,
                    line,
                    self.actor.id,
                    notes=notes or "Purchase order receipt",
                )
                order_item.received_quantity = to_decimal(order_item.received_quantity) + line["quantity"]
            self.db.flush()

            outstanding = any(
                to_decimal(item.received_quantity) < to_decimal(item.quantity) for item in order.items
            )
            previous_status = order.status
            order.status = POStatus.PARTIALLY_RECEIVED.value if outstanding else POStatus.RECEIVED.value
            self.db.flush()
            self.log(
                "PURCHASE_ORDER_GOODS_RECEIVED",
                "GoodsReceipt",
                receipt.id,
                {
                    "before": {"status": previous_status},
                    "after": {
                        "item_count": len(prepared),
                        "purchase_order_id": order.id,
                        "receipt_number": receipt.receipt_number,
                        "status": order.status,
                    },
                },
            )

        logger.info(f"Goods receipt {receipt.receipt_number} posted for {order.order_number} -> {order.status}")
        return receipt

    def void_goods_receipt(self, receipt_id: int, reason: str) -> GoodsReceipt:
        """Reverse a receipt's stock and roll its purchase order back.

        Fails when any received bucket no longer holds the received quantity
        as unreserved stock.
        """
        self.require(Permission.GOODS_RECEIPTS_VOID_REVERSE, "You do not have permission to void goods receipts.")
        reason = (reason or "").strip()
        if len(reason) < 3 or len(reason) > 300:
            raise BusinessRuleError("Void reason must be between 3 and 300 characters.")
        receipt = self.get_goods_receipt(receipt_id)
        if receipt.is_voided:
            raise BusinessRuleError("This goods receipt has already been voided.")

        with self.atomic():
            transaction = new_transaction(
                self.db,
                TransactionType.ADJUSTMENT,
                self.actor.id,
                reference_type="GoodsReceiptVoid",
                reference_id=receipt.id,
                notes=f"Goods receipt void {receipt.receipt_number}",
            )
            for line_number, item in enumerate(receipt.items, start=1):
                bucket = self._find_receipt_bucket(item)
                quantity = to_decimal(item.quantity)
                if bucket is None or bucket.available_quantity < quantity:
                    raise BusinessRuleError("Cannot void receipt because stock has already been consumed or moved.")
                bucket.quantity = to_decimal(bucket.quantity) - quantity
                add_movement(
                    self.db,
                    numbering.movement_number(transaction.transaction_number, line_number),
                    MovementType.ADJUSTMENT,
                    item.product_id,
                    quantity,
                    self.actor.id,
                    from_warehouse_id=item.warehouse_id,
                    batch_number=item.batch_number,
                    serial_number=item.serial_number,
                    reference_number=receipt.receipt_number,
                    transaction=transaction,
                    notes=f"Void receipt {receipt.receipt_number}: {reason}",
                )

            order = receipt.purchase_order
            if order is not None:
                order_items = {line.product_id: line for line in order.items}
                for item in receipt.items:
                    line = order_items.get(item.product_id)
                    if line is None:
                        continue
                    line.received_quantity = max(ZERO, to_decimal(line.received_quantity) - to_decimal(item.quantity))
                any_received = any(to_decimal(line.received_quantity) > 0 for line in order.items)
                order.status = POStatus.PARTIALLY_RECEIVED.value if any_received else POStatus.APPROVED.value

            receipt.notes = f"{receipt.notes or ''}\n{VOID_MARKER} {utcnow().isoformat()} {reason}".strip()
            self.db.flush()
            self.log(
                "GOODS_RECEIPT_VOIDED",
                "GoodsReceipt",
                receipt.id,
                {"after": {"voided": True}, "reason": reason},
            )

        logger.info(f"Goods receipt {receipt.receipt_number} voided")
        return receipt

    def _find_receipt_bucket(self, item) -> Optional[StockItem]:
        query = self.db.query(StockItem).filter(
            StockItem.product_id == item.product_id,
            StockItem.warehouse_id == item.warehouse_id,
            StockItem.status == StockStatus.AVAILABLE.value,
        )
        if item.location_id is None:
            query = query.filter(StockItem.location_id.is_(None))
        else:
            query = query.filter(StockItem.location_id == item.location_id)
        if item.batch_number is None:
            query = query.filter(StockItem.batch_number.is_(None))
        else:
            query = query.filter(StockItem.batch_number == item.batch_number)
        if item.serial_number is None:
            query = query.filter(StockItem.serial_number.is_(None))
        else:
            query = query.filter(StockItem.serial_number == item.serial_number)
        return query.order_by(StockItem.id.asc()).first()
