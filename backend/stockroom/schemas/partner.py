"""Supplier and customer schemas."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, EmailStr, Field


class PartnerBase(BaseModel):
    code: str = Field(..., min_length=1, max_length=50)
    name: str = Field(..., min_length=1, max_length=255)
    email: Optional[EmailStr] = None
    phone: Optional[str] = Field(None, max_length=50)
    address: Optional[str] = None
    is_active: bool = True


class PartnerUpdate(BaseModel):
    code: Optional[str] = Field(None, min_length=1, max_length=50)
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    email: Optional[EmailStr] = None
    phone: Optional[str] = Field(None, max_length=50)
    address: Optional[str] = None
    is_active: Optional[bool] = None


class SupplierCreate(PartnerBase):
    pass


class SupplierUpdate(PartnerUpdate):
    pass


class SupplierResponse(PartnerBase):
    id: int
    email: Optional[str] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class CustomerCreate(PartnerBase):
    credit_limit: Optional[int] = Field(None, description="Minor units; null means no limit")


class CustomerUpdate(PartnerUpdate):
    credit_limit: Optional[int] = None


class CustomerResponse(PartnerBase):
    id: int
    email: Optional[str] = None
    credit_limit: Optional[int] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class ProductSupplierLink(BaseModel):
    """Purchasing terms for one product from one supplier."""

    supplier_sku: Optional[str] = Field(None, max_length=100)
    cost_price: Optional[int] = Field(None, ge=0, description="Minor units")
    lead_time_days: Optional[int] = Field(None, ge=0)
    minimum_order_qty: Optional[Decimal] = Field(None, ge=0)
    is_preferred: bool = False


class LinkedSupplier(BaseModel):
    id: int
    code: str
    name: str

    model_config = {"from_attributes": True}


class ProductSupplierResponse(ProductSupplierLink):
    id: int
    product_id: int
    supplier_id: int
    supplier: LinkedSupplier
    created_at: datetime

    model_config = {"from_attributes": True}
