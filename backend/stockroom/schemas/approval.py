"""Approvals inbox schemas."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel

from stockroom.schemas.inventory import StockItemResponse
from stockroom.schemas.purchase_order import PurchaseOrderResponse


class Requester(BaseModel):
    id: int
    email: str
    name: Optional[str] = None

    model_config = {"from_attributes": True}


class PendingAdjustmentRequest(BaseModel):
    id: int
    created_at: datetime
    counted_quantity: Optional[float] = None
    requested_difference: Optional[float] = None
    requested_previous_quantity: Optional[float] = None
    reason: Optional[str] = None
    notes: Optional[str] = None
    requested_by: Optional[Requester] = None
    stock_item: StockItemResponse


class ApprovalCapabilities(BaseModel):
    can_resolve_purchase_orders: bool
    can_resolve_adjustments: bool


class ApprovalInbox(BaseModel):
    capabilities: ApprovalCapabilities
    submitted_purchase_orders: List[PurchaseOrderResponse]
    pending_adjustment_requests: List[PendingAdjustmentRequest]
