"""Stock ledger schemas.

Request quantities are plain decimals; range checks and their messages
live in the services. Response quantities are floats.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field


# ==================== REQUESTS ====================


class InitialStockCreate(BaseModel):
    """Opening balance for a new bucket."""

    product_id: int
    warehouse_id: int
    quantity: Decimal
    location_id: Optional[int] = None
    batch_number: Optional[str] = Field(None, max_length=100)
    serial_number: Optional[str] = Field(None, max_length=100)
    expiry_date: Optional[date] = None
    unit_cost: Optional[int] = Field(None, ge=0)
    notes: Optional[str] = None


class StockAdjustRequest(BaseModel):
    counted_quantity: Decimal
    reason: str
    notes: Optional[str] = None


class CycleCountRequest(BaseModel):
    counted_quantity: Decimal
    notes: Optional[str] = None


class ReservationRequest(BaseModel):
    quantity: Decimal
    reference_number: Optional[str] = Field(None, max_length=100)


class TransferRequest(BaseModel):
    to_warehouse_id: int
    quantity: Decimal
    to_location_id: Optional[int] = None
    notes: Optional[str] = None


class QuarantineRequest(BaseModel):
    reason: str
    quarantine_location_id: Optional[int] = None


class ExpiryStatusRequest(BaseModel):
    operation: str = Field(..., description="QUARANTINE, DISPOSE or RELEASE")
    notes: Optional[str] = None


class ApprovalNotes(BaseModel):
    approval_notes: Optional[str] = None


class RejectionRequest(BaseModel):
    reason: str


class GoodsReceiptLine(BaseModel):
    product_id: int
    quantity: Decimal
    location_id: Optional[int] = None
    batch_number: Optional[str] = Field(None, max_length=100)
    serial_number: Optional[str] = Field(None, max_length=100)
    expiry_date: Optional[date] = None
    unit_cost: Optional[int] = Field(None, ge=0)


class GoodsReceiptCreate(BaseModel):
    warehouse_id: int
    items: List[GoodsReceiptLine]
    notes: Optional[str] = None


# ==================== RESPONSES ====================


class StockItemResponse(BaseModel):
    id: int
    product_id: int
    warehouse_id: int
    location_id: Optional[int] = None
    batch_number: Optional[str] = None
    serial_number: Optional[str] = None
    quantity: float
    reserved_quantity: float
    available_quantity: float
    unit_cost: int
    expiry_date: Optional[date] = None
    status: str
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class StockMovementResponse(BaseModel):
    id: int
    movement_number: str
    type: str
    product_id: int
    from_warehouse_id: Optional[int] = None
    to_warehouse_id: Optional[int] = None
    quantity: float
    batch_number: Optional[str] = None
    serial_number: Optional[str] = None
    reference_number: Optional[str] = None
    inventory_transaction_id: Optional[int] = None
    notes: Optional[str] = None
    created_by: Optional[int] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class InventoryAdjustmentResponse(BaseModel):
    id: int
    adjustment_number: str
    stock_item_id: Optional[int] = None
    product_id: int
    warehouse_id: int
    batch_number: Optional[str] = None
    previous_quantity: float
    adjusted_quantity: float
    difference: float
    reason: str
    notes: Optional[str] = None
    created_by: Optional[int] = None
    approved_by: Optional[int] = None
    approved_at: Optional[datetime] = None
    rejected_by: Optional[int] = None
    rejected_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class AdjustmentResult(BaseModel):
    """Outcome of an adjustment; ``requires_approval`` means nothing changed yet."""

    adjustment: Optional[InventoryAdjustmentResponse] = None
    stock_item: StockItemResponse
    message: str
    requires_approval: bool
    request_id: Optional[int] = None


class TransferResult(BaseModel):
    source: StockItemResponse
    destination: StockItemResponse


class QuarantineResult(BaseModel):
    movement_number: str
    stock_item: StockItemResponse


class ExpiryAlert(BaseModel):
    stock_item: StockItemResponse
    days_until_expiry: int
    urgency: str


class GoodsReceiptItemResponse(BaseModel):
    id: int
    product_id: int
    warehouse_id: int
    location_id: Optional[int] = None
    quantity: float
    batch_number: Optional[str] = None
    serial_number: Optional[str] = None
    expiry_date: Optional[date] = None
    unit_cost: int

    model_config = {"from_attributes": True}


class GoodsReceiptResponse(BaseModel):
    id: int
    receipt_number: str
    purchase_order_id: Optional[int] = None
    received_date: datetime
    notes: Optional[str] = None
    created_by: Optional[int] = None
    is_voided: bool
    items: List[GoodsReceiptItemResponse] = []

    model_config = {"from_attributes": True}


class ShipmentItemResponse(BaseModel):
    id: int
    shipment_id: int
    sales_order_item_id: int
    stock_item_id: Optional[int] = None
    product_id: int
    quantity: float
    batch_number: Optional[str] = None
    serial_number: Optional[str] = None

    model_config = {"from_attributes": True}


class BatchTraceSummary(BaseModel):
    total_received: float
    total_shipped: float
    total_on_hand: float


class BatchTraceResponse(BaseModel):
    batch_number: str
    receipts: List[GoodsReceiptItemResponse]
    shipments: List[ShipmentItemResponse]
    current_stock: List[StockItemResponse]
    summary: BatchTraceSummary


class SerialHistoryResponse(BaseModel):
    serial_number: str
    current_location: Optional[StockItemResponse] = None
    is_currently_in_stock: bool
    movement_history: List[StockMovementResponse]


class PutawayLocation(BaseModel):
    id: int
    code: str
    name: str

    model_config = {"from_attributes": True}


class PutawaySuggestion(BaseModel):
    location: PutawayLocation
    recommended_quantity: float
    score: float

