"""Human-readable document numbers.

Numbers look like ``PO-20240501123045-1A2B3C4D``: a prefix, a UTC
timestamp cut to 14 digits and 8 random upper-case hex characters.
"""

import re
import secrets
from datetime import datetime, timezone
from typing import Optional

from stockroom.core.config import settings

_CODE_SEGMENT = re.compile(r"[^A-Z0-9]")


def sanitize_code_segment(value: str) -> str:
    """Keep only A-Z and 0-9, at most 24 characters."""
    return _CODE_SEGMENT.sub("", value.upper())[:24]


def unique_code(prefix: str) -> str:
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
    return f"{prefix}-{timestamp}-{secrets.token_hex(4).upper()}"


def purchase_order_number() -> str:
    return unique_code(settings.numbering_purchase_order_prefix)


def sales_order_number() -> str:
    return unique_code(settings.numbering_sales_order_prefix)


def shipment_number() -> str:
    return unique_code(settings.numbering_shipment_prefix)


def inventory_transaction_number() -> str:
    return unique_code(settings.numbering_inventory_transaction_prefix)


def adjustment_number() -> str:
    return unique_code(settings.numbering_adjustment_prefix)


def goods_receipt_number(idempotency_key: Optional[str] = None) -> str:
    """Goods receipt number, deterministic when an idempotency key is given."""
    prefix = settings.numbering_goods_receipt_prefix
    if idempotency_key:
        segment = sanitize_code_segment(idempotency_key)
        if segment:
            return f"{prefix}-{segment}"
    return unique_code(prefix)


def movement_number(transaction_number: str, line_number: int) -> str:
    """Movement number derived from its transaction, e.g. ``IT-...-L001``."""
    return f"{transaction_number}-L{line_number:03d}"


def assembly_number() -> str:
    return unique_code("ASM")


def disassembly_number() -> str:
    return unique_code("DSM")
