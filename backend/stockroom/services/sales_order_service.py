"""Sales Order Service - draft, confirm (reserve), ship, cancel, deliver.

Status flow::

    DRAFT -> CONFIRMED -> PARTIALLY_FULFILLED -> FULFILLED -> DELIVERED
      |          |
      +----------+--> CANCELLED

Confirming reserves stock in FEFO order across all warehouses. Each
bucket is reserved with a guarded UPDATE that only succeeds if nobody else
touched ``reserved_quantity`` since it was read.
"""

import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import or_, update
from sqlalchemy.orm import selectinload

from stockroom.core import numbering
from stockroom.core.permissions import Permission
from stockroom.models.customer import Customer
from stockroom.models.product import Product
from stockroom.models.sales_order import (
    SalesOrder,
    SalesOrderItem,
    SalesOrderStatus,
    Shipment,
    ShipmentItem,
    ShipmentStatus,
)
from stockroom.models.stock import MovementType, StockItem, TransactionType
from stockroom.services.base import (
    InventoryService,
    assert_positive_quantity,
    format_quantity,
    round_minor,
    to_decimal,
    today,
    utcnow,
)
from stockroom.services.errors import BusinessRuleError, ConcurrencyError, NotFoundError
from stockroom.services.fefo import reservation_candidates
from stockroom.services.stock_ledger_service import add_movement, new_transaction

logger = logging.getLogger(__name__)

ALLOWED_SHIP_STATUSES = {SalesOrderStatus.CONFIRMED.value, SalesOrderStatus.PARTIALLY_FULFILLED.value}
CANCELLABLE_STATUSES = {SalesOrderStatus.DRAFT.value, SalesOrderStatus.CONFIRMED.value}
DELIVERABLE_STATUSES = {SalesOrderStatus.FULFILLED.value, SalesOrderStatus.SHIPPED.value}


# ===== TOTALS =====


def build_line_totals(items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Per-line totals in minor units.

    discount = round(q * p * d / 100); net = q * p - discount;
    tax = round(net * t / 100); total = net + tax.
    """
    lines = []
    for item in items:
        quantity = to_decimal(item["quantity"])
        unit_price = int(item["unit_price"])
        tax_rate = to_decimal(item.get("tax_rate") or 0)
        discount_percent = to_decimal(item.get("discount_percent") or 0)

        gross = quantity * unit_price
        discount = round_minor(gross * discount_percent / 100)
        net = gross - discount
        line_tax = round_minor(net * tax_rate / 100)
        lines.append(
            {
                "product_id": item["product_id"],
                "quantity": quantity,
                "unit_price": unit_price,
                "tax_rate": tax_rate,
                "discount_percent": discount_percent,
                "total_price": round_minor(net + line_tax),
            }
        )
    return lines


def compute_order_totals(lines: List[Dict[str, Any]], additional_tax: int = 0, shipping_cost: int = 0) -> Dict[str, int]:
    """Order header totals.

    The subtotal and computed tax are taken on the undiscounted line amounts;
    discounts only show in each line's ``total_price``.
    """
    subtotal = 0
    computed_tax = 0
    for line in lines:
        base = round_minor(to_decimal(line["quantity"]) * line["unit_price"])
        subtotal += base
        computed_tax += round_minor(base * to_decimal(line["tax_rate"]) / 100)
    tax_amount = computed_tax + int(additional_tax or 0)
    shipping_cost = int(shipping_cost or 0)
    return {
        "subtotal": subtotal,
        "tax_amount": tax_amount,
        "shipping_cost": shipping_cost,
        "total_amount": subtotal + tax_amount + shipping_cost,
    }


def next_status_after_shipment(all_shipped: bool, any_shipped: bool) -> str:
    if all_shipped:
        return SalesOrderStatus.FULFILLED.value
    if any_shipped:
        return SalesOrderStatus.PARTIALLY_FULFILLED.value
    return SalesOrderStatus.CONFIRMED.value


def _validate_items(items: List[Dict[str, Any]]) -> None:
    if not items:
        raise BusinessRuleError("At least one item is required.")
    for item in items:
        assert_positive_quantity(item.get("quantity"), "Quantity")
        if int(item.get("unit_price", 0)) < 0:
            raise BusinessRuleError("Unit price cannot be negative.")
        for field, label in (("tax_rate", "Tax rate"), ("discount_percent", "Discount")):
            value = to_decimal(item.get(field) or 0)
            if value < 0 or value > 100:
                raise BusinessRuleError(f"{label} must be between 0 and 100.")


class SalesOrderService(InventoryService):
    """Service for the sales order lifecycle."""

    # ===== LOOKUPS =====

    def get_order(self, order_id: int) -> SalesOrder:
        order = (
            self.db.query(SalesOrder)
            .options(selectinload(SalesOrder.items), selectinload(SalesOrder.shipments))
            .filter(SalesOrder.id == order_id)
            .first()
        )
        if order is None:
            raise NotFoundError("Sales order not found.")
        return order

    def list_orders(
        self,
        status: Optional[str] = None,
        customer_id: Optional[int] = None,
        search: Optional[str] = None,
        skip: int = 0,
        limit: int = 50,
    ):
        query = self.db.query(SalesOrder).join(Customer, SalesOrder.customer_id == Customer.id)
        if status:
            query = query.filter(SalesOrder.status == status)
        if customer_id is not None:
            query = query.filter(SalesOrder.customer_id == customer_id)
        if search:
            pattern = f"%{search.strip()}%"
            query = query.filter(or_(SalesOrder.order_number.ilike(pattern), Customer.name.ilike(pattern)))
        total = query.count()
        orders = query.order_by(SalesOrder.created_at.desc(), SalesOrder.id.desc()).offset(skip).limit(limit).all()
        return orders, total

    def _get_active_customer(self, customer_id: int) -> Customer:
        customer = self.db.get(Customer, customer_id)
        if customer is None or customer.is_deleted or not customer.is_active:
            raise BusinessRuleError("Selected customer is invalid or inactive.")
        return customer

    def _check_products(self, items: List[Dict[str, Any]]) -> None:
        for item in items:
            product = self.db.get(Product, item["product_id"])
            if product is None or product.is_deleted or not product.is_active:
                raise BusinessRuleError(f"Product {item['product_id']} is invalid or inactive.")

    def _check_credit_limit(self, customer: Customer, total_amount: int, message: str) -> None:
        if (
            customer.credit_limit is not None
            and total_amount > customer.credit_limit
            and not self.can(Permission.SALES_ORDERS_OVERRIDE_CREDIT_LIMIT)
        ):
            raise BusinessRuleError(message)

    # ===== DRAFTS =====

    def create_order(
        self,
        customer_id: int,
        items: List[Dict[str, Any]],
        tax_amount: int = 0,
        shipping_cost: int = 0,
        required_date: Optional[date] = None,
        shipping_address: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> SalesOrder:
        self.require(Permission.SALES_ORDERS_CREATE_DRAFT, "You do not have permission to create sales orders.")
        _validate_items(items)
        customer = self._get_active_customer(customer_id)
        self._check_products(items)

        lines = build_line_totals(items)
        totals = compute_order_totals(lines, tax_amount, shipping_cost)
        self._check_credit_limit(
            customer,
            totals["total_amount"],
            "Order total exceeds customer credit limit. You need override permission to continue.",
        )

        with self.atomic():
            order = SalesOrder(
                order_number=numbering.sales_order_number(),
                customer_id=customer.id,
                status=SalesOrderStatus.DRAFT.value,
                order_date=today(),
                required_date=required_date,
                shipping_address=shipping_address,
                notes=notes,
                created_by=self.actor.id,
                **totals,
            )
            order.items = [SalesOrderItem(**line) for line in lines]
            self.db.add(order)
            self.db.flush()
            self.log(
                "SALES_ORDER_CREATED",
                "SalesOrder",
                order.id,
                {
                    "after": {
                        "customer_id": order.customer_id,
                        "item_count": len(lines),
                        "order_number": order.order_number,
                        "status": order.status,
                        "total_amount": order.total_amount,
                    }
                },
            )

        logger.info(f"Sales order {order.order_number} created for customer {customer.id}")
        return order

    def update_draft(
        self,
        order_id: int,
        customer_id: int,
        items: List[Dict[str, Any]],
        tax_amount: int = 0,
        shipping_cost: int = 0,
        required_date: Optional[date] = None,
        shipping_address: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> SalesOrder:
        """Replace a draft's header fields and lines, recomputing totals."""
        self.require(Permission.SALES_ORDERS_EDIT_DRAFT, "You do not have permission to edit draft sales orders.")
        order = self.get_order(order_id)
        if order.status != SalesOrderStatus.DRAFT.value:
            raise BusinessRuleError("Only draft sales orders can be edited.")
        _validate_items(items)
        customer = self._get_active_customer(customer_id)
        self._check_products(items)

        lines = build_line_totals(items)
        totals = compute_order_totals(lines, tax_amount, shipping_cost)
        self._check_credit_limit(
            customer,
            totals["total_amount"],
            "Order total exceeds customer credit limit. You need override permission to continue.",
        )

        before_total = order.total_amount
        with self.atomic():
            order.customer_id = customer.id
            order.required_date = required_date
            order.shipping_address = shipping_address
            order.notes = notes
            for key, value in totals.items():
                setattr(order, key, value)
            order.items.clear()
            self.db.flush()
            order.items.extend(SalesOrderItem(**line) for line in lines)
            self.db.flush()
            self.log(
                "SALES_ORDER_DRAFT_UPDATED",
                "SalesOrder",
                order.id,
                {
                    "before": {"total_amount": before_total},
                    "after": {"item_count": len(lines), "total_amount": order.total_amount},
                },
            )
        return order

    def delete_draft(self, order_id: int) -> None:
        self.require(Permission.SALES_ORDERS_DELETE_DRAFT, "You do not have permission to delete draft orders.")
        order = self.get_order(order_id)
        if order.status != SalesOrderStatus.DRAFT.value:
            raise BusinessRuleError("Only draft orders can be deleted.")

        order_number = order.order_number
        with self.atomic():
            self.db.delete(order)
            self.db.flush()
            self.log("SALES_ORDER_DRAFT_DELETED", "SalesOrder", order_id, {"order_number": order_number})

    # ===== CONFIRMATION =====

    def confirm_order(self, order_id: int) -> SalesOrder:
        """Reserve stock for every line and move the order to CONFIRMED.

        Raises:
            ConcurrencyError: if a bucket's reservation changed under us.
            BusinessRuleError: if stock cannot cover a line.
        """
        self.require(Permission.SALES_ORDERS_CONFIRM, "You do not have permission to confirm sales orders.")
        order = self.get_order(order_id)
        if order.status != SalesOrderStatus.DRAFT.value:
            raise BusinessRuleError(f'Cannot confirm an order in "{order.status}" status.')
        customer = order.customer
        if customer is None or customer.is_deleted or not customer.is_active:
            raise BusinessRuleError("Customer is inactive.")
        self._check_credit_limit(
            customer,
            order.total_amount,
            "Order total exceeds customer credit limit. You need override permission to confirm this order.",
        )

        with self.atomic():
            for item in order.items:
                self._reserve_line(item)
            order.status = SalesOrderStatus.CONFIRMED.value
            self.db.flush()
            self.log(
                "SALES_ORDER_CONFIRMED",
                "SalesOrder",
                order.id,
                {"before": {"status": SalesOrderStatus.DRAFT.value}, "after": {"status": order.status}},
            )

        logger.info(f"Sales order {order.order_number} confirmed")
        return order

    def _reserve_line(self, item: SalesOrderItem) -> None:
        remaining = to_decimal(item.quantity)
        for bucket in reservation_candidates(self.db, item.product_id):
            if remaining <= 0:
                break
            observed = to_decimal(bucket.reserved_quantity)
            available = to_decimal(bucket.quantity) - observed
            if available <= 0:
                continue
            take = min(available, remaining)

            result = self.db.execute(
                update(StockItem)
                .where(StockItem.id == bucket.id, StockItem.reserved_quantity == observed)
                .values(reserved_quantity=observed + take)
            )
            if result.rowcount == 0:
                raise ConcurrencyError("Stock changed while confirming the order. Please retry.")
            remaining -= take

        if remaining > 0:
            name = item.product.name if item.product else item.product_id
            raise BusinessRuleError(
                f'Insufficient stock for "{name}". Unable to reserve {format_quantity(remaining)} more units.'
            )

    # ===== SHIPMENT =====

    def ship_order(
        self,
        order_id: int,
        items: List[Dict[str, Any]],
        carrier: Optional[str] = None,
        tracking_number: Optional[str] = None,
        shipped_date: Optional[datetime] = None,
        notes: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Ship reserved stock.

        Each item: ``sales_order_item_id``, ``stock_item_id``, ``quantity``.
        The chosen buckets must hold the reservation being shipped.
        """
        self.require(Permission.SALES_ORDERS_CREATE_SHIPMENT, "You do not have permission to create shipments.")
        order = self.get_order(order_id)
        if order.status not in ALLOWED_SHIP_STATUSES:
            raise BusinessRuleError(f'Cannot ship an order in "{order.status}" status.')
        if not items:
            raise BusinessRuleError("At least one item is required.")

        order_items = {line.id: line for line in order.items}
        shipped_at = shipped_date or utcnow()

        with self.atomic():
            shipment = Shipment(
                shipment_number=numbering.shipment_number(),
                sales_order_id=order.id,
                carrier=carrier,
                tracking_number=tracking_number,
                status=ShipmentStatus.SHIPPED.value,
                shipped_date=shipped_at,
                notes=notes,
                created_by=self.actor.id,
            )
            self.db.add(shipment)
            self.db.flush()
            transaction = new_transaction(
                self.db,
                TransactionType.SALES_SHIPMENT,
                self.actor.id,
                reference_type="Shipment",
                reference_id=shipment.id,
                notes=notes or f"Shipment {shipment.shipment_number} for {order.order_number}",
            )

            for line_number, ship_item in enumerate(items, start=1):
                order_item = order_items.get(ship_item.get("sales_order_item_id"))
                if order_item is None:
                    raise BusinessRuleError("A shipment line does not belong to this sales order.")
                quantity = assert_positive_quantity(ship_item.get("quantity"), "Shipment quantity")
                if quantity > order_item.remaining_quantity:
                    raise BusinessRuleError(
                        f"Shipment quantity exceeds remaining quantity for order line {order_item.id}."
                    )

                bucket = self.db.get(StockItem, ship_item.get("stock_item_id"))
                if bucket is None:
                    raise NotFoundError("Selected stock bucket was not found.")
                if bucket.product_id != order_item.product_id:
                    raise BusinessRuleError(
                        f"Selected stock bucket does not match product on order line {order_item.id}."
                    )
                if to_decimal(bucket.reserved_quantity) < quantity or to_decimal(bucket.quantity) < quantity:
                    raise BusinessRuleError(f"Insufficient reserved stock for order line {order_item.id}.")

                shipment.items.append(
                    ShipmentItem(
                        sales_order_item_id=order_item.id,
                        stock_item_id=bucket.id,
                        product_id=bucket.product_id,
                        quantity=quantity,
                        batch_number=bucket.batch_number,
                        serial_number=bucket.serial_number,
                    )
                )
                add_movement(
                    self.db,
                    numbering.movement_number(transaction.transaction_number, line_number),
                    MovementType.SALES_SHIPMENT,
                    bucket.product_id,
                    quantity,
                    self.actor.id,
                    from_warehouse_id=bucket.warehouse_id,
                    batch_number=bucket.batch_number,
                    serial_number=bucket.serial_number,
                    reference_number=order.order_number,
                    transaction=transaction,
                    notes=notes or f"Shipment for {order.order_number}",
                )
                bucket.quantity = to_decimal(bucket.quantity) - quantity
                bucket.reserved_quantity = to_decimal(bucket.reserved_quantity) - quantity
                order_item.shipped_quantity = to_decimal(order_item.shipped_quantity) + quantity
                self.db.flush()

            all_shipped = all(
                to_decimal(line.shipped_quantity) >= to_decimal(line.quantity) for line in order.items
            )
            any_shipped = any(to_decimal(line.shipped_quantity) > 0 for line in order.items)
            previous_status = order.status
            order.status = next_status_after_shipment(all_shipped, any_shipped)
            order.shipped_date = shipped_at if all_shipped else None
            self.db.flush()
            self.log(
                "SALES_ORDER_SHIPPED",
                "SalesOrder",
                order.id,
                {
                    "before": {"status": previous_status},
                    "after": {
                        "item_count": len(items),
                        "shipment_id": shipment.id,
                        "shipment_number": shipment.shipment_number,
                        "status": order.status,
                    },
                },
            )

        logger.info(f"Shipment {shipment.shipment_number} created for {order.order_number} -> {order.status}")
        return {"shipment": shipment, "order": order, "transaction": transaction}

    # ===== CANCEL / DELIVER =====

    def cancel_order(self, order_id: int, reason: str) -> SalesOrder:
        self.require(Permission.SALES_ORDERS_CANCEL, "You do not have permission to cancel sales orders.")
        reason = (reason or "").strip()
        if not reason:
            raise BusinessRuleError("Cancellation reason is required.")
        order = self.get_order(order_id)
        if order.status not in CANCELLABLE_STATUSES:
            raise BusinessRuleError(f'Cannot cancel an order in "{order.status}" status. Contact a manager.')

        previous_status = order.status
        with self.atomic():
            if previous_status == SalesOrderStatus.CONFIRMED.value:
                for item in order.items:
                    self._release_reservations(item.product_id, to_decimal(item.quantity))
            stamp = f"Cancelled: {utcnow().isoformat()} - {reason}"
            order.notes = f"{order.notes}\n{stamp}" if order.notes else stamp
            order.status = SalesOrderStatus.CANCELLED.value
            self.db.flush()
            self.log(
                "SALES_ORDER_CANCELLED",
                "SalesOrder",
                order.id,
                {
                    "before": {"status": previous_status},
                    "after": {"status": order.status},
                    "metadata": {"reason": reason},
                },
            )

        logger.info(f"Sales order {order.order_number} cancelled")
        return order

    def _release_reservations(self, product_id: int, quantity: Decimal) -> None:
        remaining = quantity
        buckets = (
            self.db.query(StockItem)
            .filter(StockItem.product_id == product_id, StockItem.reserved_quantity > 0)
            .order_by(StockItem.updated_at.asc(), StockItem.id.asc())
            .all()
        )
        for bucket in buckets:
            if remaining <= 0:
                break
            reserved = to_decimal(bucket.reserved_quantity)
            release = min(remaining, reserved)
            if release <= 0:
                continue
            bucket.reserved_quantity = reserved - release
            remaining -= release
        if remaining > 0:
            raise BusinessRuleError("Unable to release all reserved stock for cancellation.")
        self.db.flush()

    def mark_delivered(self, order_id: int, delivered_at: Optional[datetime] = None) -> SalesOrder:
        self.require(Permission.SALES_ORDERS_MARK_DELIVERED, "You do not have permission to mark orders delivered.")
        order = self.get_order(order_id)
        if order.status not in DELIVERABLE_STATUSES:
            raise BusinessRuleError(f'Cannot mark order as delivered from "{order.status}" status.')

        delivered_at = delivered_at or utcnow()
        previous_status = order.status
        with self.atomic():
            for shipment in order.shipments:
                shipment.status = ShipmentStatus.DELIVERED.value
                shipment.delivered_date = delivered_at
            order.shipped_date = order.shipped_date or delivered_at
            order.status = SalesOrderStatus.DELIVERED.value
            self.db.flush()
            self.log(
                "SALES_ORDER_DELIVERED",
                "SalesOrder",
                order.id,
                {
                    "before": {"status": previous_status},
                    "after": {"delivered_at": delivered_at, "status": order.status},
                },
            )
        return order


__all__ = [
    "SalesOrderService",
    "build_line_totals",
    "compute_order_totals",
    "next_status_after_shipment",
]
