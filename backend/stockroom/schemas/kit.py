"""Kit (bill of materials) schemas."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field

from stockroom.schemas.catalog import ProductResponse
from stockroom.schemas.inventory import StockItemResponse


class BomComponentIn(BaseModel):
    component_id: int
    quantity: Decimal


class SetBomRequest(BaseModel):
    components: List[BomComponentIn]


class BomLine(BaseModel):
    component_id: int
    component_name: str
    component_sku: str
    component_unit: str
    quantity_per_kit: float


class KitSummary(BaseModel):
    kit: ProductResponse
    components: List[BomLine]
    available_quantity: float


class AssembleRequest(BaseModel):
    warehouse_id: int
    quantity: Decimal
    location_id: Optional[int] = None
    batch_number: Optional[str] = Field(None, max_length=100)
    serial_number: Optional[str] = Field(None, max_length=100)
    expiry_date: Optional[date] = None
    notes: Optional[str] = None


class AssembleResult(BaseModel):
    assembled_quantity: float
    assembled_unit_cost: int
    kit_stock_item: StockItemResponse
    transaction_number: str


class DisassembleRequest(BaseModel):
    kit_stock_item_id: int
    quantity: Decimal
    notes: Optional[str] = None


class ReturnedComponent(BaseModel):
    component_id: int
    component_name: str
    quantity: float
    stock_item_id: int


class DisassembleResult(BaseModel):
    disassembled_quantity: float
    returned_components: List[ReturnedComponent]
    transaction_number: str
    kit_stock_item: StockItemResponse


class ConsumedComponent(BaseModel):
    component_id: int
    component_name: str
    component_sku: Optional[str] = None
    quantity: float
    batch_number: Optional[str] = None
    serial_number: Optional[str] = None


class GenealogyEntry(BaseModel):
    transaction_number: str
    assembled_at: datetime
    assembled_quantity: float
    assembled_batch_number: Optional[str] = None
    assembled_serial_number: Optional[str] = None
    warehouse: Optional[str] = None
    consumed_components: List[ConsumedComponent]
