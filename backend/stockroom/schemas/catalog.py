"""Category and product schemas. Prices are integer minor units."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class CategoryBase(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    parent_id: Optional[int] = None


class CategoryCreate(CategoryBase):
    pass


class CategoryUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = None
    parent_id: Optional[int] = None


class CategoryResponse(CategoryBase):
    id: int
    created_at: datetime

    model_config = {"from_attributes": True}


class ProductBase(BaseModel):
    """Base product schema."""

    sku: str = Field(..., min_length=1, max_length=100)
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    unit: str = Field("pcs", max_length=20)
    category_id: Optional[int] = None
    reorder_point: int = Field(0, ge=0)
    cost_price: int = Field(0, ge=0)
    sell_price: int = Field(0, ge=0)
    track_by_batch: bool = False
    track_by_expiry: bool = False
    track_by_serial_number: bool = False
    is_kit: bool = False


class ProductCreate(ProductBase):
    pass


class ProductUpdate(BaseModel):
    """Partial update; only the fields sent are applied."""

    sku: Optional[str] = Field(None, min_length=1, max_length=100)
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    unit: Optional[str] = Field(None, max_length=20)
    category_id: Optional[int] = None
    reorder_point: Optional[int] = Field(None, ge=0)
    cost_price: Optional[int] = Field(None, ge=0)
    sell_price: Optional[int] = Field(None, ge=0)
    track_by_batch: Optional[bool] = None
    track_by_expiry: Optional[bool] = None
    track_by_serial_number: Optional[bool] = None
    is_kit: Optional[bool] = None
    is_active: Optional[bool] = None


class ProductResponse(ProductBase):
    id: int
    is_active: bool
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class PriceHistoryEntry(BaseModel):
    cost_price: int
    sell_price: int
    reason: Optional[str] = None
    effective_at: datetime
    created_at: datetime
    actor_name: Optional[str] = None
