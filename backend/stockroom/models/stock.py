"""Stock ledger models.

A ``StockItem`` is a quantity bucket keyed by product, warehouse,
location, batch and serial. Every change to a bucket is recorded as an
immutable ``StockMovement``; movements belonging to one business
operation share an ``InventoryTransaction``.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from stockroom.db.base import Base, TimestampMixin


class StockStatus(str, Enum):
    AVAILABLE = "AVAILABLE"
    RESERVED = "RESERVED"
    QUARANTINE = "QUARANTINE"
    DAMAGED = "DAMAGED"


class MovementType(str, Enum):
    PURCHASE_RECEIPT = "PURCHASE_RECEIPT"
    SALES_SHIPMENT = "SALES_SHIPMENT"
    TRANSFER = "TRANSFER"
    ADJUSTMENT = "ADJUSTMENT"
    RETURN = "RETURN"
    ASSEMBLY = "ASSEMBLY"
    DISASSEMBLY = "DISASSEMBLY"


class TransactionType(str, Enum):
    PURCHASE_RECEIPT = "PURCHASE_RECEIPT"
    SALES_SHIPMENT = "SALES_SHIPMENT"
    TRANSFER = "TRANSFER"
    ADJUSTMENT = "ADJUSTMENT"
    ASSEMBLY = "ASSEMBLY"
    DISASSEMBLY = "DISASSEMBLY"


class AdjustmentReason(str, Enum):
    PHYSICAL_COUNT = "PHYSICAL_COUNT"
    DAMAGE = "DAMAGE"
    LOSS = "LOSS"
    FOUND = "FOUND"
    EXPIRY = "EXPIRY"
    QUALITY_ISSUE = "QUALITY_ISSUE"
    OTHER = "OTHER"


class StockItem(Base, TimestampMixin):
    """Quantity bucket for one product/warehouse/location/batch/serial."""

    __tablename__ = "stock_items"
    __table_args__ = (
        CheckConstraint("quantity >= 0", name="ck_stock_items_quantity_non_negative"),
        CheckConstraint(
            "reserved_quantity >= 0 AND reserved_quantity <= quantity",
            name="ck_stock_items_reserved_within_quantity",
        ),
        UniqueConstraint("serial_number", name="uq_stock_items_serial_number"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    product_id: Mapped[int] = mapped_column(
        ForeignKey("products.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    warehouse_id: Mapped[int] = mapped_column(
        ForeignKey("warehouses.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    location_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("locations.id", ondelete="SET NULL"), nullable=True, index=True
    )
    batch_number: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)
    serial_number: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    quantity: Mapped[Decimal] = mapped_column(Numeric(14, 3), default=Decimal("0"), nullable=False)
    reserved_quantity: Mapped[Decimal] = mapped_column(
        Numeric(14, 3), default=Decimal("0"), nullable=False, server_default="0"
    )
    unit_cost: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)  # minor units
    expiry_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True, index=True)
    status: Mapped[str] = mapped_column(
        String(20), default=StockStatus.AVAILABLE.value, nullable=False, index=True
    )

    product: Mapped["Product"] = relationship("Product")
    warehouse: Mapped["Warehouse"] = relationship("Warehouse")
    location: Mapped[Optional["Location"]] = relationship("Location")

    @property
    def available_quantity(self) -> Decimal:
        return Decimal(self.quantity) - Decimal(self.reserved_quantity)


class InventoryTransaction(Base, TimestampMixin):
    """Groups the movements produced by one business operation."""

    __tablename__ = "inventory_transactions"

    id: Mapped[int] = mapped_column(primary_key=True)
    transaction_number: Mapped[str] = mapped_column(String(64), unique=True, index=True, nullable=False)
    type: Mapped[str] = mapped_column(String(30), nullable=False)
    reference_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    reference_id: Mapped[Optional[int]] = mapped_column(nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_by: Mapped[Optional[int]] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )

    movements: Mapped[List["StockMovement"]] = relationship(
        "StockMovement", back_populates="inventory_transaction"
    )


class StockMovement(Base, TimestampMixin):
    """Ledger row for a single quantity change.

    Direction is encoded by which warehouse is set: ``from`` only is an
    outbound movement, ``to`` only is inbound, both is a transfer.
    """

    __tablename__ = "stock_movements"
    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_stock_movements_quantity_positive"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    movement_number: Mapped[str] = mapped_column(String(80), unique=True, index=True, nullable=False)
    type: Mapped[str] = mapped_column(String(30), nullable=False, index=True)
    product_id: Mapped[int] = mapped_column(
        ForeignKey("products.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    from_warehouse_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("warehouses.id", ondelete="SET NULL"), nullable=True, index=True
    )
    to_warehouse_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("warehouses.id", ondelete="SET NULL"), nullable=True, index=True
    )
    quantity: Mapped[Decimal] = mapped_column(Numeric(14, 3), nullable=False)
    batch_number: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)
    serial_number: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)
    reference_number: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    inventory_transaction_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("inventory_transactions.id", ondelete="SET NULL"), nullable=True, index=True
    )
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_by: Mapped[Optional[int]] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )

    product: Mapped["Product"] = relationship("Product")
    from_warehouse: Mapped[Optional["Warehouse"]] = relationship(
        "Warehouse", foreign_keys=[from_warehouse_id]
    )
    to_warehouse: Mapped[Optional["Warehouse"]] = relationship(
        "Warehouse", foreign_keys=[to_warehouse_id]
    )
    inventory_transaction: Mapped[Optional["InventoryTransaction"]] = relationship(
        "InventoryTransaction", back_populates="movements"
    )


class InventoryAdjustment(Base, TimestampMixin):
    """Before/after snapshot of a counted or corrected bucket."""

    __tablename__ = "inventory_adjustments"

    id: Mapped[int] = mapped_column(primary_key=True)
    adjustment_number: Mapped[str] = mapped_column(String(64), unique=True, index=True, nullable=False)
    stock_item_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("stock_items.id", ondelete="SET NULL"), nullable=True, index=True
    )
    product_id: Mapped[int] = mapped_column(
        ForeignKey("products.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    warehouse_id: Mapped[int] = mapped_column(
        ForeignKey("warehouses.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    batch_number: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    previous_quantity: Mapped[Decimal] = mapped_column(Numeric(14, 3), nullable=False)
    adjusted_quantity: Mapped[Decimal] = mapped_column(Numeric(14, 3), nullable=False)
    difference: Mapped[Decimal] = mapped_column(Numeric(14, 3), nullable=False)
    reason: Mapped[str] = mapped_column(String(30), nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_by: Mapped[Optional[int]] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )

    approved_by: Mapped[Optional[int]] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    rejected_by: Mapped[Optional[int]] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    rejected_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    stock_item: Mapped[Optional["StockItem"]] = relationship("StockItem")
    product: Mapped["Product"] = relationship("Product")
    warehouse: Mapped["Warehouse"] = relationship("Warehouse")

    @property
    def is_reviewed(self) -> bool:
        return self.approved_at is not None or self.rejected_at is not None


class StockSnapshot(Base, TimestampMixin):
    """Daily aggregate of available stock per product and warehouse."""

    __tablename__ = "stock_snapshots"
    __table_args__ = (
        UniqueConstraint("snapshot_date", "product_id", "warehouse_id", name="uq_stock_snapshot_day"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    snapshot_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    product_id: Mapped[int] = mapped_column(
        ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True
    )
    warehouse_id: Mapped[int] = mapped_column(
        ForeignKey("warehouses.id", ondelete="CASCADE"), nullable=False, index=True
    )
    quantity: Mapped[Decimal] = mapped_column(Numeric(14, 3), nullable=False)
    value: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)  # minor units


# Forward references
from stockroom.models.product import Product  # noqa: E402
from stockroom.models.warehouse import Location, Warehouse  # noqa: E402
