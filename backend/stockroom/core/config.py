"""Application configuration using pydantic-settings.

All environment variables are read through the settings object rather
than os.getenv() so that types are validated once at startup.
"""

import re
import warnings
from decimal import Decimal
from functools import lru_cache
from typing import List, Literal, Optional

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


_PREFIX_PATTERN = re.compile(r"[^A-Z0-9_-]")


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Database
    database_url: str = "sqlite:///./stockroom.db"

    # Redis - optional, used for the token blacklist
    redis_url: Optional[str] = None

    # Security
    secret_key: str = "change-me-in-production"
    algorithm: str = "HS256"
    access_token_expire_minutes: int = 240  # 4 hours

    # CORS - comma-separated origins or "*" for development only
    cors_origins: str = "http://localhost:3000,http://localhost:8000"

    # Server
    debug: bool = True
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # API
    api_v1_prefix: str = "/api/v1"

    # Rate limiting
    rate_limit_enabled: bool = True

    # ==========================================================================
    # Inventory rules
    # ==========================================================================
    # Adjustments whose absolute difference exceeds this need a second actor
    inventory_adjustment_approval_threshold: Decimal = Decimal("0")
    # Number of reverse proxies in front of the app (X-Forwarded-For hops)
    trusted_proxy_hops: int = 0
    expiry_alert_default_days: int = 30

    # ==========================================================================
    # Document numbering prefixes
    # ==========================================================================
    numbering_purchase_order_prefix: str = "PO"
    numbering_sales_order_prefix: str = "SO"
    numbering_goods_receipt_prefix: str = "GRN"
    numbering_shipment_prefix: str = "SHP"
    numbering_inventory_transaction_prefix: str = "IT"
    numbering_adjustment_prefix: str = "ADJ"

    @field_validator("secret_key")
    @classmethod
    def validate_secret_key(cls, v: str) -> str:
        if v == "change-me-in-production":
            warnings.warn(
                "Using default SECRET_KEY is insecure! Set SECRET_KEY environment variable.",
                UserWarning,
                stacklevel=2,
            )
        elif len(v) < 32:
            warnings.warn(
                "SECRET_KEY should be at least 32 characters for security.",
                UserWarning,
                stacklevel=2,
            )
        return v

    @field_validator("inventory_adjustment_approval_threshold")
    @classmethod
    def validate_threshold(cls, v: Decimal) -> Decimal:
        if v < 0:
            raise ValueError("INVENTORY_ADJUSTMENT_APPROVAL_THRESHOLD cannot be negative")
        return v

    @field_validator(
        "numbering_purchase_order_prefix",
        "numbering_sales_order_prefix",
        "numbering_goods_receipt_prefix",
        "numbering_shipment_prefix",
        "numbering_inventory_transaction_prefix",
        "numbering_adjustment_prefix",
    )
    @classmethod
    def sanitize_prefix(cls, v: str, info) -> str:
        """Upper-case the prefix and strip anything but A-Z, 0-9, _ and -."""
        normalized = _PREFIX_PATTERN.sub("", v.strip().upper())
        if not normalized:
            raise ValueError(f"{info.field_name} must contain at least one letter or digit")
        return normalized

    @model_validator(mode="after")
    def validate_production_settings(self) -> "Settings":
        """Refuse to start in production with an unsafe secret."""
        if not self.debug:
            if self.secret_key == "change-me-in-production":
                raise ValueError(
                    "FATAL: Cannot start in production mode with default SECRET_KEY. "
                    "Set a secure SECRET_KEY environment variable (minimum 32 characters)."
                )
            if len(self.secret_key) < 32:
                raise ValueError(
                    f"FATAL: SECRET_KEY must be at least 32 characters in production mode "
                    f"(current length: {len(self.secret_key)})."
                )

            localhost_patterns = ["localhost", "127.0.0.1", "0.0.0.0"]
            origins = [o.strip() for o in self.cors_origins.split(",")]
            localhost_origins = [o for o in origins if any(p in o for p in localhost_patterns)]
            if localhost_origins:
                warnings.warn(
                    f"CORS origins contain localhost URLs in production mode: {localhost_origins}.",
                    UserWarning,
                    stacklevel=2,
                )

        return self

    @property
    def cors_origins_list(self) -> List[str]:
        """Parse CORS origins into a list, filtering localhost in production."""
        if self.cors_origins == "*":
            return ["*"]

        origins = [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

        if not self.debug:
            localhost_patterns = ["localhost", "127.0.0.1", "0.0.0.0"]
            origins = [o for o in origins if not any(p in o for p in localhost_patterns)]

        return origins


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
