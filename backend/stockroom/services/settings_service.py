"""Settings Service - the system settings document stored as key/value rows.

Each field of ``SystemSettings`` lives in one ``system_settings`` row keyed
``<section>.<field>``. Missing rows read as their defaults; numbering and
the adjustment threshold default to the values the server was started with.
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from fastapi.encoders import jsonable_encoder

from stockroom.core.config import settings
from stockroom.core.permissions import Permission
from stockroom.models.system_setting import SystemSetting
from stockroom.schemas.settings import SystemSettings
from stockroom.services.base import InventoryService
from stockroom.services.errors import PermissionDeniedError

logger = logging.getLogger(__name__)

VIEW_PERMISSIONS = (
    Permission.SETTINGS_COMPANY_VIEW,
    Permission.SETTINGS_CURRENCY_SET_DEFAULT,
    Permission.SETTINGS_NUMBERING_SEQUENCES_CONFIGURE,
    Permission.SETTINGS_FISCAL_YEAR_CONFIGURE,
    Permission.SETTINGS_EMAIL_NOTIFICATIONS_CONFIGURE,
)
EDIT_PERMISSIONS = (
    Permission.SETTINGS_COMPANY_EDIT,
    Permission.SETTINGS_CURRENCY_SET_DEFAULT,
    Permission.SETTINGS_NUMBERING_SEQUENCES_CONFIGURE,
    Permission.SETTINGS_FISCAL_YEAR_CONFIGURE,
    Permission.SETTINGS_EMAIL_NOTIFICATIONS_CONFIGURE,
)


@dataclass(frozen=True)
class SettingField:
    section: str
    name: str
    default: Callable[[], str]
    description: str
    kind: str = "str"
    bounds: Optional[tuple] = None

    @property
    def key(self) -> str:
        return f"{self.section}.{self.name}"

    def parse(self, raw: str) -> Any:
        if self.kind == "bool":
            return raw == "true"
        if self.kind == "int":
            try:
                value = round(float(raw))
            except (ValueError, OverflowError):
                value = int(self.default())
            low, high = self.bounds
            return min(high, max(low, value))
        return raw

    def render(self, value: Any) -> str:
        if self.kind == "bool":
            return "true" if value else "false"
        if value is None:
            return ""
        return str(value)


def _const(value: str) -> Callable[[], str]:
    return lambda: value


SETTING_FIELDS: List[SettingField] = [
    SettingField("company", "name", _const("Stockroom"), "Legal or trade name used across the application."),
    SettingField("company", "address", _const(""), "Company address shown on documents and reports."),
    SettingField("company", "email", _const(""), "Primary company email for outgoing communications."),
    SettingField("company", "phone", _const(""), "Primary company phone number."),
    SettingField("company", "logo_url", _const(""), "Public URL to the company logo asset."),
    SettingField("financial", "currency_code", _const("USD"), "Default currency code for display and documents."),
    SettingField(
        "financial", "default_tax_rate_percent", _const("0"),
        "Default tax rate percent for new sales and purchasing drafts.", "int", (0, 100),
    ),
    SettingField(
        "inventory_policy", "adjustment_approval_threshold",
        lambda: str(int(settings.inventory_adjustment_approval_threshold)),
        "Absolute quantity threshold requiring approval for adjustments.", "int", (0, 1_000_000),
    ),
    SettingField(
        "inventory_policy", "fiscal_year_start_month", _const("1"), "Fiscal year start month as 1-12.", "int", (1, 12)
    ),
    SettingField(
        "notifications", "daily_summary_enabled", _const("false"),
        "Enable daily operational summary email notifications.", "bool",
    ),
    SettingField(
        "notifications", "expiry_alerts_enabled", _const("true"), "Enable email alerts for upcoming expiries.", "bool"
    ),
    SettingField(
        "notifications", "low_stock_alerts_enabled", _const("true"), "Enable email alerts for low stock events.", "bool"
    ),
    SettingField(
        "numbering", "purchase_order_prefix", lambda: settings.numbering_purchase_order_prefix,
        "Prefix for generated purchase order numbers.",
    ),
    SettingField(
        "numbering", "sales_order_prefix", lambda: settings.numbering_sales_order_prefix,
        "Prefix for generated sales order numbers.",
    ),
    SettingField(
        "numbering", "goods_receipt_prefix", lambda: settings.numbering_goods_receipt_prefix,
        "Prefix for generated goods receipt numbers.",
    ),
    SettingField(
        "numbering", "shipment_prefix", lambda: settings.numbering_shipment_prefix,
        "Prefix for generated shipment numbers.",
    ),
    SettingField(
        "numbering", "inventory_transaction_prefix", lambda: settings.numbering_inventory_transaction_prefix,
        "Prefix for generated inventory transaction numbers.",
    ),
    SettingField(
        "numbering", "adjustment_prefix", lambda: settings.numbering_adjustment_prefix,
        "Prefix for generated adjustment numbers.",
    ),
]


def settings_from_rows(rows: Dict[str, str]) -> SystemSettings:
    """Build the settings document from stored values, falling back to defaults.

    Unknown keys are ignored.
    """
    document: Dict[str, Dict[str, Any]] = {}
    for field in SETTING_FIELDS:
        raw = rows.get(field.key)
        if raw is None:
            raw = field.default()
        document.setdefault(field.section, {})[field.name] = field.parse(raw)
    return SystemSettings.model_validate(document)


def settings_to_rows(document: SystemSettings) -> Dict[str, str]:
    data = document.model_dump()
    return {field.key: field.render(data[field.section][field.name]) for field in SETTING_FIELDS}


class SettingsService(InventoryService):
    """Read, update, export and import the system settings document."""

    def _stored(self) -> Dict[str, SystemSetting]:
        return {row.key: row for row in self.db.query(SystemSetting).all()}

    def _current(self) -> SystemSettings:
        return settings_from_rows({key: row.value for key, row in self._stored().items()})

    def get_settings(self) -> SystemSettings:
        if not any(self.can(permission) for permission in VIEW_PERMISSIONS):
            raise PermissionDeniedError("You do not have permission to view system settings.")
        return self._current()

    def _write(self, document: SystemSettings, action: str) -> SystemSettings:
        stored = self._stored()
        before = self._current()
        descriptions = {field.key: field.description for field in SETTING_FIELDS}

        with self.atomic():
            for key, value in settings_to_rows(document).items():
                row = stored.get(key)
                if row is None:
                    self.db.add(SystemSetting(key=key, value=value, description=descriptions[key]))
                else:
                    row.value = value
                    row.description = descriptions[key]
            self.db.flush()
            self.log(
                action,
                "SystemSetting",
                None,
                {"before": before.model_dump(), "after": document.model_dump()},
            )
        return self._current()

    def update_settings(self, document: SystemSettings) -> SystemSettings:
        for permission in EDIT_PERMISSIONS:
            self.require(permission, "You do not have permission to update system settings.")
        result = self._write(document, "SYSTEM_SETTINGS_UPDATED")
        logger.info(f"System settings updated by user {self.actor.id}")
        return result

    def export_settings(self) -> Dict[str, Any]:
        """The current document plus a timestamped file name for download."""
        self.require(Permission.SETTINGS_BACKUP_EXPORT, "You do not have permission to export system settings.")
        stamp = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
        document = self._current()
        return {
            "filename": f"system-settings-{stamp}.json",
            "settings": document,
            "content": json.dumps(jsonable_encoder(document), indent=2),
        }

    def import_settings(self, document: SystemSettings) -> SystemSettings:
        self.require(
            Permission.SETTINGS_BACKUP_IMPORT_RESTORE, "You do not have permission to import system settings."
        )
        result = self._write(document, "SYSTEM_SETTINGS_IMPORTED")
        logger.warning(f"System settings restored from import by user {self.actor.id}")
        return result
