"""Warehouse and location schemas."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from stockroom.models.warehouse import LocationType


class WarehouseCreate(BaseModel):
    code: str = Field(..., min_length=1, max_length=50)
    name: str = Field(..., min_length=1, max_length=200)
    address: Optional[str] = None
    is_active: bool = True


class WarehouseUpdate(BaseModel):
    code: Optional[str] = Field(None, min_length=1, max_length=50)
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    address: Optional[str] = None
    is_active: Optional[bool] = None


class WarehouseResponse(BaseModel):
    id: int
    code: str
    name: str
    address: Optional[str] = None
    is_active: bool
    created_at: datetime

    model_config = {"from_attributes": True}


class LocationCreate(BaseModel):
    warehouse_id: int
    code: str = Field(..., min_length=1, max_length=50)
    name: str = Field(..., min_length=1, max_length=200)
    type: LocationType = LocationType.STANDARD
    is_active: bool = True


class LocationUpdate(BaseModel):
    warehouse_id: Optional[int] = None
    code: Optional[str] = Field(None, min_length=1, max_length=50)
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    type: Optional[LocationType] = None
    is_active: Optional[bool] = None


class LocationResponse(BaseModel):
    id: int
    warehouse_id: int
    code: str
    name: str
    type: str
    is_active: bool

    model_config = {"from_attributes": True}
