"""Shared plumbing for the inventory services."""

import logging
from contextlib import contextmanager
from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Iterator, Optional

from sqlalchemy.orm import Session

from stockroom.core.permissions import Permission, can_user
from stockroom.models.user import User
from stockroom.services.activity_log_service import log_activity
from stockroom.services.errors import BusinessRuleError, PermissionDeniedError

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


def to_decimal(value: Any) -> Decimal:
    """Coerce a quantity to ``Decimal`` without float artefacts."""
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def round_minor(value: Any) -> int:
    """Round a money amount to whole minor units, halves away from zero."""
    return int(to_decimal(value).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def today() -> date:
    return utcnow().date()


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def assert_positive_quantity(value: Any, field: str) -> Decimal:
    quantity = to_decimal(value)
    if not quantity.is_finite() or quantity <= 0:
        raise BusinessRuleError(f"{field} must be greater than zero.")
    return quantity


def _has_value(value: Optional[str]) -> bool:
    return isinstance(value, str) and value.strip() != ""


def validate_tracking_fields(
    product,
    batch_number: Optional[str] = None,
    expiry_date: Optional[date] = None,
    serial_number: Optional[str] = None,
    quantity: Any = None,
) -> None:
    """Check the batch/expiry/serial fields a product's tracking flags demand."""
    if product.track_by_batch and not _has_value(batch_number):
        raise BusinessRuleError("This product requires a batch number.")
    if product.track_by_expiry and not expiry_date:
        raise BusinessRuleError("This product requires an expiry date.")
    if product.track_by_serial_number:
        if not _has_value(serial_number):
            raise BusinessRuleError("This product requires a serial number.")
        if quantity is not None and to_decimal(quantity) != Decimal("1"):
            raise BusinessRuleError("Serialized products must be received with quantity 1.")


def clean_optional(value: Optional[str]) -> Optional[str]:
    """Strip a string and turn blanks into None."""
    if value is None:
        return None
    value = value.strip()
    return value or None


class InventoryService:
    """Base class holding the session, the acting user and the request IP."""

    def __init__(self, db: Session, actor: User, ip_address: Optional[str] = None):
        self.db = db
        self.actor = actor
        self.ip_address = ip_address

    def can(self, permission: Permission) -> bool:
        return can_user(self.actor, permission)

    def require(self, permission: Permission, message: Optional[str] = None) -> None:
        if not self.can(permission):
            raise PermissionDeniedError(
                message or f"You do not have permission to {permission.value}."
            )

    def log(self, action: str, entity: str, entity_id: Any = None, changes: Optional[dict] = None):
        return log_activity(
            self.db,
            action=action,
            actor_user_id=self.actor.id if self.actor else None,
            entity=entity,
            entity_id=entity_id,
            changes=changes,
            ip_address=self.ip_address,
        )

    @contextmanager
    def atomic(self) -> Iterator[None]:
        """Commit on success, roll back and re-raise on any error."""
        try:
            yield
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise


def format_quantity(value: Any) -> str:
    """Render a quantity without trailing zeros, e.g. ``3`` or ``2.5``."""
    value = to_decimal(value)
    if value == value.to_integral_value():
        return str(value.quantize(Decimal("1")))
    return format(value.normalize(), "f")
