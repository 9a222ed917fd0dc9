"""Purchase order schemas."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field


class PurchaseOrderItemCreate(BaseModel):
    product_id: int
    quantity: Decimal
    unit_price: int = Field(..., ge=0, description="Minor units")
    tax_rate: Decimal = Decimal("0")


class PurchaseOrderCreate(BaseModel):
    supplier_id: int
    items: List[PurchaseOrderItemCreate]
    tax_amount: int = Field(0, ge=0)
    shipping_cost: int = Field(0, ge=0)
    expected_date: Optional[date] = None
    notes: Optional[str] = None


class PurchaseOrderReason(BaseModel):
    reason: Optional[str] = None


class ReceiveLine(BaseModel):
    product_id: int
    warehouse_id: int
    quantity: Decimal
    location_id: Optional[int] = None
    batch_number: Optional[str] = Field(None, max_length=100)
    serial_number: Optional[str] = Field(None, max_length=100)
    expiry_date: Optional[date] = None


class ReceiveGoodsRequest(BaseModel):
    """Goods received against an order.

    Repeating a request with the same ``idempotency_key`` returns the
    receipt booked the first time.
    """

    items: List[ReceiveLine]
    received_date: Optional[datetime] = None
    notes: Optional[str] = None
    idempotency_key: Optional[str] = Field(None, max_length=64)


class VoidReceiptRequest(BaseModel):
    reason: str


class PurchaseOrderItemResponse(BaseModel):
    id: int
    product_id: int
    quantity: float
    unit_price: int
    tax_rate: float
    total_price: int
    received_quantity: float
    remaining_quantity: float

    model_config = {"from_attributes": True}


class PurchaseOrderResponse(BaseModel):
    id: int
    order_number: str
    supplier_id: int
    status: str
    order_date: date
    expected_date: Optional[date] = None
    subtotal: int
    tax_amount: int
    shipping_cost: int
    total_amount: int
    notes: Optional[str] = None
    created_by: Optional[int] = None
    approved_by: Optional[int] = None
    approved_at: Optional[datetime] = None
    created_at: datetime
    items: List[PurchaseOrderItemResponse] = []

    model_config = {"from_attributes": True}
