"""Sales order schemas."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field

from stockroom.schemas.inventory import ShipmentItemResponse


class SalesOrderItemCreate(BaseModel):
    product_id: int
    quantity: Decimal
    unit_price: int = Field(..., description="Minor units")
    tax_rate: Decimal = Decimal("0")
    discount_percent: Decimal = Decimal("0")


class SalesOrderCreate(BaseModel):
    customer_id: int
    items: List[SalesOrderItemCreate]
    tax_amount: int = Field(0, ge=0, description="Extra tax on top of the line taxes")
    shipping_cost: int = Field(0, ge=0)
    required_date: Optional[date] = None
    shipping_address: Optional[str] = None
    notes: Optional[str] = None


class ShipLine(BaseModel):
    sales_order_item_id: int
    stock_item_id: int
    quantity: Decimal


class ShipOrderRequest(BaseModel):
    items: List[ShipLine]
    carrier: Optional[str] = Field(None, max_length=100)
    tracking_number: Optional[str] = Field(None, max_length=100)
    shipped_date: Optional[datetime] = None
    notes: Optional[str] = None


class CancelOrderRequest(BaseModel):
    reason: str


class DeliverOrderRequest(BaseModel):
    delivered_at: Optional[datetime] = None


class SalesOrderItemResponse(BaseModel):
    id: int
    product_id: int
    quantity: float
    unit_price: int
    tax_rate: float
    discount_percent: float
    total_price: int
    shipped_quantity: float
    remaining_quantity: float

    model_config = {"from_attributes": True}


class ShipmentResponse(BaseModel):
    id: int
    shipment_number: str
    sales_order_id: int
    carrier: Optional[str] = None
    tracking_number: Optional[str] = None
    status: str
    shipped_date: Optional[datetime] = None
    delivered_date: Optional[datetime] = None
    notes: Optional[str] = None
    items: List[ShipmentItemResponse] = []

    model_config = {"from_attributes": True}


class SalesOrderResponse(BaseModel):
    id: int
    order_number: str
    customer_id: int
    status: str
    order_date: date
    required_date: Optional[date] = None
    shipped_date: Optional[datetime] = None
    shipping_address: Optional[str] = None
    subtotal: int
    tax_amount: int
    shipping_cost: int
    total_amount: int
    notes: Optional[str] = None
    created_by: Optional[int] = None
    created_at: datetime
    items: List[SalesOrderItemResponse] = []

    model_config = {"from_attributes": True}


class ShipOrderResult(BaseModel):
    shipment: ShipmentResponse
    order: SalesOrderResponse
    transaction_number: str
