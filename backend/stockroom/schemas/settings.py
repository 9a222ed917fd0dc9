"""System settings document: company profile, financial defaults, policy, notifications and numbering."""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, EmailStr, Field, field_validator

PREFIX_PATTERN = r"^[A-Za-z0-9_-]+$"


class CompanySettings(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    address: str = Field("", max_length=500)
    email: Optional[EmailStr] = None
    phone: str = Field("", max_length=50)
    logo_url: str = Field("", max_length=500)

    @field_validator("name", "address", "phone", "logo_url", mode="before")
    @classmethod
    def strip_text(cls, v):
        return v.strip() if isinstance(v, str) else v

    @field_validator("email", mode="before")
    @classmethod
    def blank_email(cls, v):
        if isinstance(v, str):
            return v.strip() or None
        return v

    @field_validator("logo_url")
    @classmethod
    def http_url(cls, v: str) -> str:
        if v and not v.startswith(("http://", "https://")):
            raise ValueError("Logo URL must start with http:// or https://")
        return v


class FinancialSettings(BaseModel):
    currency_code: str = Field(..., pattern=r"^[A-Za-z]{3}$")
    default_tax_rate_percent: int = Field(..., ge=0, le=100)

    @field_validator("currency_code")
    @classmethod
    def upper(cls, v: str) -> str:
        return v.upper()


class InventoryPolicySettings(BaseModel):
    adjustment_approval_threshold: int = Field(..., ge=0, le=1_000_000)
    fiscal_year_start_month: int = Field(..., ge=1, le=12)


class NotificationSettings(BaseModel):
    daily_summary_enabled: bool
    expiry_alerts_enabled: bool
    low_stock_alerts_enabled: bool


class NumberingSettings(BaseModel):
    purchase_order_prefix: str = Field(..., min_length=1, max_length=12, pattern=PREFIX_PATTERN)
    sales_order_prefix: str = Field(..., min_length=1, max_length=12, pattern=PREFIX_PATTERN)
    goods_receipt_prefix: str = Field(..., min_length=1, max_length=12, pattern=PREFIX_PATTERN)
    shipment_prefix: str = Field(..., min_length=1, max_length=12, pattern=PREFIX_PATTERN)
    inventory_transaction_prefix: str = Field(..., min_length=1, max_length=12, pattern=PREFIX_PATTERN)
    adjustment_prefix: str = Field(..., min_length=1, max_length=12, pattern=PREFIX_PATTERN)

    @field_validator("*", mode="before")
    @classmethod
    def normalize(cls, v):
        return v.strip().upper() if isinstance(v, str) else v


class SystemSettings(BaseModel):
    company: CompanySettings
    financial: FinancialSettings
    inventory_policy: InventoryPolicySettings
    notifications: NotificationSettings
    numbering: NumberingSettings


class SettingsExport(BaseModel):
    filename: str
    settings: SystemSettings
    content: str = Field(..., description="The settings document as pretty-printed JSON")
