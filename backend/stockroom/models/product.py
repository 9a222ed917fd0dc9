"""Catalog models: categories, products, kit bills of materials, supplier links and price history."""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from stockroom.db.base import Base, SoftDeleteMixin, TimestampMixin


class Category(Base, TimestampMixin):
    """Product category, optionally nested under a parent."""

    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(200), unique=True, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    parent_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("categories.id", ondelete="SET NULL"), nullable=True, index=True
    )

    parent: Mapped[Optional["Category"]] = relationship(
        "Category", remote_side="Category.id", back_populates="children"
    )
    children: Mapped[List["Category"]] = relationship("Category", back_populates="parent")
    products: Mapped[List["Product"]] = relationship("Product", back_populates="category")


class Product(Base, TimestampMixin, SoftDeleteMixin):
    """A stock-keeping unit."""

    __tablename__ = "products"

    id: Mapped[int] = mapped_column(primary_key=True)
    sku: Mapped[str] = mapped_column(String(100), unique=True, index=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    unit: Mapped[str] = mapped_column(String(20), default="pcs", nullable=False)
    category_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("categories.id", ondelete="SET NULL"), nullable=True, index=True
    )
    reorder_point: Mapped[int] = mapped_column(Integer, default=0, nullable=False)  # 0 = no alert
    cost_price: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)  # minor units
    sell_price: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)  # minor units

    track_by_batch: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    track_by_expiry: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    track_by_serial_number: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_kit: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    category: Mapped[Optional["Category"]] = relationship("Category", back_populates="products")
    kit_components: Mapped[List["KitComponent"]] = relationship(
        "KitComponent",
        foreign_keys="KitComponent.kit_id",
        back_populates="kit",
        cascade="all, delete-orphan",
    )


class KitComponent(Base, TimestampMixin):
    """One line of a kit's bill of materials."""

    __tablename__ = "kit_components"
    __table_args__ = (
        UniqueConstraint("kit_id", "component_id", name="uq_kit_component"),
        CheckConstraint("quantity > 0", name="ck_kit_component_quantity_positive"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    kit_id: Mapped[int] = mapped_column(
        ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True
    )
    component_id: Mapped[int] = mapped_column(
        ForeignKey("products.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    quantity: Mapped[Decimal] = mapped_column(Numeric(14, 3), nullable=False)

    kit: Mapped["Product"] = relationship(
        "Product", foreign_keys=[kit_id], back_populates="kit_components"
    )
    component: Mapped["Product"] = relationship("Product", foreign_keys=[component_id])


class ProductSupplier(Base, TimestampMixin):
    """A supplier that can provide a product, with its purchasing terms.

    At most one link per product is preferred.
    """

    __tablename__ = "product_suppliers"
    __table_args__ = (
        UniqueConstraint("product_id", "supplier_id", name="uq_product_supplier"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    product_id: Mapped[int] = mapped_column(
        ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True
    )
    supplier_id: Mapped[int] = mapped_column(
        ForeignKey("suppliers.id", ondelete="CASCADE"), nullable=False, index=True
    )
    supplier_sku: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    cost_price: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)  # minor units
    lead_time_days: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    minimum_order_qty: Mapped[Optional[Decimal]] = mapped_column(Numeric(14, 3), nullable=True)
    is_preferred: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    product: Mapped["Product"] = relationship("Product")
    supplier: Mapped["Supplier"] = relationship("Supplier")


class ProductPriceHistory(Base, TimestampMixin):
    """Cost and selling price of a product from ``effective_at`` on."""

    __tablename__ = "product_price_history"

    id: Mapped[int] = mapped_column(primary_key=True)
    product_id: Mapped[int] = mapped_column(
        ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True
    )
    cost_price: Mapped[int] = mapped_column(BigInteger, nullable=False)
    sell_price: Mapped[int] = mapped_column(BigInteger, nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    changed_by: Mapped[Optional[int]] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    effective_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        index=True,
    )

    changed_by_user: Mapped[Optional["User"]] = relationship("User")


from stockroom.models.supplier import Supplier  # noqa: E402
from stockroom.models.user import User  # noqa: E402
