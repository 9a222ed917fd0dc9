"""Tests for the stored system settings document."""

import json
import re

import pytest
from pydantic import ValidationError

from stockroom.models.activity_log import ActivityLog
from stockroom.models.system_setting import SystemSetting
from stockroom.schemas.settings import SystemSettings
from stockroom.services.errors import PermissionDeniedError
from stockroom.services.settings_service import SETTING_FIELDS, SettingsService


def settings_payload(**sections) -> dict:
    payload = {
        "company": {"name": "Northwind", "address": "1 Dock Road", "email": "ops@northwind.example", "phone": ""},
        "financial": {"currency_code": "eur", "default_tax_rate_percent": 20},
        "inventory_policy": {"adjustment_approval_threshold": 50, "fiscal_year_start_month": 4},
        "notifications": {
            "daily_summary_enabled": True,
            "expiry_alerts_enabled": False,
            "low_stock_alerts_enabled": True,
        },
        "numbering": {
            "purchase_order_prefix": " nw-po ",
            "sales_order_prefix": "NW-SO",
            "goods_receipt_prefix": "NW-GR",
            "shipment_prefix": "NW-SH",
            "inventory_transaction_prefix": "NW-IT",
            "adjustment_prefix": "NW-ADJ",
        },
    }
    for section, values in sections.items():
        payload[section] = {**payload[section], **values}
    return payload


class TestReadSettings:
    def test_defaults_follow_server_config(self, db_session, manager):
        document = SettingsService(db_session, manager).get_settings()

        assert document.company.name == "Stockroom"
        assert document.company.email is None
        assert document.financial.currency_code == "USD"
        assert document.inventory_policy.adjustment_approval_threshold == 0
        assert document.inventory_policy.fiscal_year_start_month == 1
        assert document.notifications.daily_summary_enabled is False
        assert document.notifications.expiry_alerts_enabled is True
        assert document.numbering.purchase_order_prefix == "PO"
        assert document.numbering.goods_receipt_prefix == "GRN"

    def test_staff_cannot_view(self, db_session, staff):
        with pytest.raises(PermissionDeniedError, match="view system settings"):
            SettingsService(db_session, staff).get_settings()

    def test_stored_values_are_sanitized(self, db_session, manager):
        db_session.add_all(
            [
                SystemSetting(key="legacy.theme", value="dark"),
                SystemSetting(key="financial.default_tax_rate_percent", value="250"),
                SystemSetting(key="inventory_policy.fiscal_year_start_month", value="april"),
                SystemSetting(key="notifications.expiry_alerts_enabled", value="yes"),
            ]
        )
        db_session.commit()

        document = SettingsService(db_session, manager).get_settings()

        assert document.financial.default_tax_rate_percent == 100
        assert document.inventory_policy.fiscal_year_start_month == 1
        # only the literal "true" enables a flag
        assert document.notifications.expiry_alerts_enabled is False


class TestWriteSettings:
    def test_update_round_trip(self, db_session, admin, manager):
        document = SystemSettings.model_validate(settings_payload())

        updated = SettingsService(db_session, admin).update_settings(document)

        assert updated.financial.currency_code == "EUR"
        assert updated.numbering.purchase_order_prefix == "NW-PO"
        assert SettingsService(db_session, manager).get_settings() == updated
        assert db_session.query(SystemSetting).count() == len(SETTING_FIELDS)
        row = db_session.query(SystemSetting).filter_by(key="company.name").one()
        assert row.value == "Northwind"
        assert row.description == "Legal or trade name used across the application."

        entry = db_session.query(ActivityLog).filter(ActivityLog.action == "SYSTEM_SETTINGS_UPDATED").one()
        assert entry.changes["before"]["company"]["name"] == "Stockroom"
        assert entry.changes["after"]["company"]["name"] == "Northwind"

    def test_second_update_overwrites_rows(self, db_session, admin):
        service = SettingsService(db_session, admin)
        service.update_settings(SystemSettings.model_validate(settings_payload()))
        service.update_settings(SystemSettings.model_validate(settings_payload(company={"email": " "})))

        assert db_session.query(SystemSetting).count() == len(SETTING_FIELDS)
        assert db_session.query(SystemSetting).filter_by(key="company.email").one().value == ""

    def test_manager_cannot_update(self, db_session, manager):
        document = SystemSettings.model_validate(settings_payload())
        with pytest.raises(PermissionDeniedError, match="update system settings"):
            SettingsService(db_session, manager).update_settings(document)
        assert db_session.query(SystemSetting).count() == 0

    @pytest.mark.parametrize(
        "section, values",
        [
            ("numbering", {"shipment_prefix": "SH IP"}),
            ("numbering", {"adjustment_prefix": "A" * 13}),
            ("financial", {"currency_code": "EURO"}),
            ("company", {"email": "not-an-email"}),
            ("company", {"logo_url": "ftp://cdn.example/logo.png"}),
            ("inventory_policy", {"fiscal_year_start_month": 13}),
        ],
    )
    def test_invalid_documents_rejected(self, section, values):
        with pytest.raises(ValidationError):
            SystemSettings.model_validate(settings_payload(**{section: values}))


class TestExportImport:
    def test_export(self, db_session, admin):
        result = SettingsService(db_session, admin).export_settings()

        assert re.fullmatch(r"system-settings-\d{8}-\d{6}\.json", result["filename"])
        assert json.loads(result["content"])["numbering"]["sales_order_prefix"] == "SO"
        assert result["settings"].company.name == "Stockroom"

    def test_manager_cannot_export(self, db_session, manager):
        with pytest.raises(PermissionDeniedError, match="export system settings"):
            SettingsService(db_session, manager).export_settings()

    def test_import_needs_super_admin(self, db_session, admin, super_admin):
        exported = SettingsService(db_session, admin).export_settings()
        document = SystemSettings.model_validate(json.loads(exported["content"]))
        document.company.name = "Restored Co"

        with pytest.raises(PermissionDeniedError, match="import system settings"):
            SettingsService(db_session, admin).import_settings(document)

        restored = SettingsService(db_session, super_admin).import_settings(document)
        assert restored.company.name == "Restored Co"
        assert db_session.query(ActivityLog).filter(ActivityLog.action == "SYSTEM_SETTINGS_IMPORTED").count() == 1


class TestSettingsApi:
    def test_get_and_update(self, client, manager_headers, admin_headers):
        response = client.get("/api/v1/settings/", headers=manager_headers)
        assert response.status_code == 200
        assert response.json()["numbering"]["sales_order_prefix"] == "SO"

        response = client.put("/api/v1/settings/", json=settings_payload(), headers=admin_headers)
        assert response.status_code == 200
        assert response.json()["numbering"]["purchase_order_prefix"] == "NW-PO"

        response = client.put("/api/v1/settings/", json=settings_payload(), headers=manager_headers)
        assert response.status_code == 403
        assert response.json()["detail"] == "You do not have permission to update system settings."

    def test_invalid_prefix_is_422(self, client, admin_headers):
        payload = settings_payload(numbering={"sales_order_prefix": "SO/"})
        response = client.put("/api/v1/settings/", json=payload, headers=admin_headers)
        assert response.status_code == 422

    def test_export_and_import(self, client, admin_headers, super_admin_headers):
        response = client.get("/api/v1/settings/export", headers=admin_headers)
        assert response.status_code == 200
        body = response.json()
        assert body["filename"].startswith("system-settings-")

        payload = json.loads(body["content"])
        payload["financial"]["default_tax_rate_percent"] = 7
        assert client.post("/api/v1/settings/import", json=payload, headers=admin_headers).status_code == 403

        response = client.post("/api/v1/settings/import", json=payload, headers=super_admin_headers)
        assert response.status_code == 200
        assert response.json()["financial"]["default_tax_rate_percent"] == 7

    def test_requires_authentication(self, client):
        assert client.get("/api/v1/settings/").status_code == 401
