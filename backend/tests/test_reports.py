"""Tests for inventory reports: valuation, movements, aging, dashboard and snapshots."""

from datetime import timedelta
from decimal import Decimal

import pytest

from stockroom.models.product import Category, Product
from stockroom.models.stock import MovementType, StockSnapshot
from stockroom.models.supplier import Supplier
from stockroom.services.base import today, utcnow
from stockroom.services.errors import BusinessRuleError
from stockroom.services.purchase_order_service import PurchaseOrderService
from stockroom.services.report_service import DEAD_STOCK_BRACKET, NEVER_MOVED, ReportService, aging_bracket
from stockroom.services.stock_ledger_service import StockLedgerService, add_movement

from conftest import add_stock, days_from_today


def _order(db_session, user, supplier, product, quantity, unit_price):
    return PurchaseOrderService(db_session, user).create_order(
        supplier.id, [{"product_id": product.id, "quantity": quantity, "unit_price": unit_price}]
    )


@pytest.fixture
def gadget(db_session):
    category = Category(name="Electronics")
    db_session.add(category)
    db_session.flush()
    prod = Product(sku="GADGET-1", name="Gadget", unit="pcs", cost_price=0, sell_price=0, category_id=category.id)
    db_session.add(prod)
    db_session.commit()
    db_session.refresh(prod)
    return prod


# ============== Valuation ==============

class TestValuation:
    def test_rows_and_summary(self, db_session, viewer, product, warehouse, second_warehouse, stock_item):
        add_stock(db_session, product, second_warehouse, 3, unit_cost=150)

        report = ReportService(db_session, viewer).valuation()

        rows = report["rows"]
        assert [row["warehouse"] for row in rows] == ["East Warehouse", "Main Warehouse"]
        east, main = rows
        assert east["total_value_minor"] == 450
        assert east["is_below_reorder"] is True
        assert main["total_value_minor"] == 10000
        assert main["location"] == "A-01"
        assert main["category"] == "Uncategorized"

        summary = report["summary"]
        assert summary["total_value_minor"] == 10450
        assert summary["total_quantity"] == Decimal("103")
        assert summary["total_unique_products"] == 1
        assert summary["items_below_reorder"] == 1
        assert summary["generated_by"] == "viewer@example.com"

    def test_filters(self, db_session, viewer, product, gadget, warehouse, second_warehouse):
        add_stock(db_session, product, warehouse, 10)
        add_stock(db_session, gadget, second_warehouse, 4)
        add_stock(db_session, gadget, warehouse, 0)

        service = ReportService(db_session, viewer)
        assert [r["sku"] for r in service.valuation(warehouse_id=second_warehouse.id)["rows"]] == ["GADGET-1"]
        assert [r["category"] for r in service.valuation(category_id=gadget.category_id)["rows"]] == ["Electronics"]
        assert len(service.valuation()["rows"]) == 2
        assert len(service.valuation(include_zero_quantity=True)["rows"]) == 3

    def test_quarantined_stock_excluded(self, db_session, viewer, product, warehouse):
        add_stock(db_session, product, warehouse, 10, status="QUARANTINE")
        assert ReportService(db_session, viewer).valuation()["rows"] == []


# ============== Movements ==============

class TestMovementReport:
    def test_movements_in_window(self, db_session, manager, viewer, product, warehouse, second_warehouse):
        ledger = StockLedgerService(db_session, manager)
        item = ledger.create_initial_stock(product.id, warehouse.id, 20)
        ledger.transfer_stock(item.id, second_warehouse.id, 5)

        now = utcnow()
        report = ReportService(db_session, viewer).movement_report(now - timedelta(days=1), now + timedelta(days=1))

        assert report["summary"]["total_movements"] == 2
        assert report["summary"]["by_type"] == {"ADJUSTMENT": Decimal("20"), "TRANSFER": Decimal("5")}
        transfer = report["rows"][1]
        assert transfer["source"] == "Main Warehouse (WH-MAIN)"
        assert transfer["destination"] == "East Warehouse (WH-EAST)"
        assert transfer["sku"] == "WIDGET-001"

    def test_filters(self, db_session, manager, viewer, product, warehouse, second_warehouse):
        ledger = StockLedgerService(db_session, manager)
        item = ledger.create_initial_stock(product.id, warehouse.id, 20)
        ledger.transfer_stock(item.id, second_warehouse.id, 5)
        now = utcnow()
        service = ReportService(db_session, viewer)

        by_warehouse = service.movement_report(
            now - timedelta(days=1), now + timedelta(days=1), warehouse_id=second_warehouse.id
        )
        assert [r["movement_type"] for r in by_warehouse["rows"]] == ["TRANSFER"]

        by_type = service.movement_report(now - timedelta(days=1), now + timedelta(days=1), movement_types=["ADJUSTMENT"])
        assert by_type["summary"]["total_movements"] == 1

        old = service.movement_report(now - timedelta(days=10), now - timedelta(days=5))
        assert old["rows"] == []

    def test_date_order_validated(self, db_session, viewer):
        now = utcnow()
        with pytest.raises(BusinessRuleError, match="date_from must be before or equal to date_to"):
            ReportService(db_session, viewer).movement_report(now, now - timedelta(days=1))

    def test_unknown_movement_type(self, db_session, viewer):
        now = utcnow()
        with pytest.raises(BusinessRuleError, match="Unknown movement type: TELEPORT"):
            ReportService(db_session, viewer).movement_report(now - timedelta(days=1), now, movement_types=["TELEPORT"])


# ============== Aging ==============

class TestAging:
    @pytest.mark.parametrize(
        "days, bracket",
        [
            (None, NEVER_MOVED),
            (0, "0-30 days"),
            (30, "0-30 days"),
            (31, "31-90 days"),
            (90, "31-90 days"),
            (91, "91-180 days"),
            (180, "91-180 days"),
            (181, "181-365 days"),
            (365, "181-365 days"),
            (366, DEAD_STOCK_BRACKET),
        ],
    )
    def test_brackets(self, days, bracket):
        assert aging_bracket(days) == bracket

    def test_aging_report(self, db_session, viewer, product, gadget, warehouse):
        add_stock(db_session, product, warehouse, 10)
        add_stock(db_session, gadget, warehouse, 2, unit_cost=500)
        movement = add_movement(
            db_session, "MV-OLD", MovementType.SALES_SHIPMENT, product.id, 1, None, from_warehouse_id=warehouse.id
        )
        movement.created_at = utcnow() - timedelta(days=100)
        db_session.commit()

        report = ReportService(db_session, viewer).aging()

        never, aged = report["rows"]
        assert never["sku"] == "GADGET-1"
        assert never["age_bracket"] == NEVER_MOVED
        assert never["is_dead_stock"] is True
        assert aged["days_since_movement"] == 100
        assert aged["age_bracket"] == "91-180 days"
        assert aged["is_dead_stock"] is False
        assert report["summary"]["total_dead_stock_value_minor"] == 1000
        assert report["summary"]["by_bracket"]["91-180 days"] == {"count": 1, "value_minor": 1000}

    def test_receipts_do_not_count_as_movement(self, db_session, viewer, product, warehouse):
        add_stock(db_session, product, warehouse, 10)
        add_movement(db_session, "MV-IN", MovementType.PURCHASE_RECEIPT, product.id, 10, None, to_warehouse_id=warehouse.id)
        db_session.commit()

        (row,) = ReportService(db_session, viewer).aging()["rows"]
        assert row["age_bracket"] == NEVER_MOVED


# ============== Purchasing ==============

class TestPurchasingReport:
    @pytest.fixture
    def orders(self, db_session, staff, manager, product, supplier):
        beta = Supplier(code="SUP-2", name="Beta Parts", is_active=True)
        db_session.add(beta)
        db_session.commit()
        staff_orders = PurchaseOrderService(db_session, staff)
        manager_orders = PurchaseOrderService(db_session, manager)

        approved = _order(db_session, staff, supplier, product, 2, 500)
        staff_orders.submit_order(approved.id)
        manager_orders.approve_order(approved.id)
        _order(db_session, staff, supplier, product, 1, 300)
        cancelled = _order(db_session, staff, beta, product, 1, 5000)
        manager_orders.cancel_order(cancelled.id)
        submitted = _order(db_session, staff, beta, product, 1, 200)
        staff_orders.submit_order(submitted.id)

        old = _order(db_session, staff, supplier, product, 1, 9000)
        staff_orders.submit_order(old.id)
        manager_orders.approve_order(old.id)
        old.order_date = days_from_today(-40)
        db_session.commit()
        return beta

    def test_summary(self, db_session, viewer, supplier, orders):
        report = ReportService(db_session, viewer).purchasing_report(days=30)

        assert report["days"] == 30
        assert report["recent_order_count"] == 1
        assert report["recent_spend_minor"] == 1000
        assert report["status_breakdown"] == [
            {"status": "APPROVED", "count": 2},
            {"status": "CANCELLED", "count": 1},
            {"status": "DRAFT", "count": 1},
            {"status": "SUBMITTED", "count": 1},
        ]

    def test_supplier_performance(self, db_session, viewer, supplier, orders):
        acme, beta = ReportService(db_session, viewer).purchasing_report(days=30)["supplier_performance"]

        assert acme == {
            "id": supplier.id,
            "name": "Acme Supplies",
            "order_count": 2,
            "open_orders": 2,
            "received_orders": 0,
            "total_spend_minor": 1300,
        }
        assert beta["order_count"] == 2
        assert beta["open_orders"] == 1
        assert beta["total_spend_minor"] == 200

    def test_wider_window_includes_older_orders(self, db_session, viewer, orders):
        report = ReportService(db_session, viewer).purchasing_report(days=60)
        assert report["recent_spend_minor"] == 10000
        assert report["supplier_performance"][0]["total_spend_minor"] == 10300

    @pytest.mark.parametrize("days", [0, 366])
    def test_days_bounds(self, db_session, viewer, days):
        with pytest.raises(BusinessRuleError, match="Days must be between 1 and 365."):
            ReportService(db_session, viewer).purchasing_report(days=days)


# ============== Dashboard and snapshots ==============

class TestDashboard:
    def test_kpis(self, db_session, viewer, staff, product, warehouse, supplier, stock_item):
        add_stock(db_session, product, warehouse, 3)
        add_stock(db_session, product, warehouse, 20, batch_number="B-EXP", expiry_date=days_from_today(10))
        add_stock(db_session, product, warehouse, 50, batch_number="B-LATE", expiry_date=days_from_today(60))
        orders = PurchaseOrderService(db_session, staff)
        order = orders.create_order(supplier.id, [{"product_id": product.id, "quantity": 1, "unit_price": 10}])
        orders.submit_order(order.id)

        kpis = ReportService(db_session, viewer).dashboard()

        assert kpis["total_units_in_stock"] == Decimal("173")
        assert kpis["total_stock_value_minor"] == 17300
        assert kpis["low_stock_alerts"] == 1
        assert kpis["expiring_in_30_days"] == 1
        assert kpis["pending_purchase_orders"] == 1
        assert kpis["pending_sales_orders"] == 0
        assert kpis["recent_movements_last_7_days"] == 0
        assert kpis["inventory_trend"] == []

    def test_snapshot_feeds_trend(self, db_session, viewer, product, warehouse, second_warehouse, stock_item):
        add_stock(db_session, product, warehouse, 20, batch_number="B2", unit_cost=200)
        add_stock(db_session, product, second_warehouse, 5)
        service = ReportService(db_session, viewer)

        result = service.create_stock_snapshot()

        assert result == {"records_created": 2, "snapshot_date": today()}
        main = (
            db_session.query(StockSnapshot)
            .filter(StockSnapshot.warehouse_id == warehouse.id)
            .one()
        )
        assert main.quantity == Decimal("120")
        assert main.value == 14000

        trend = service.dashboard()["inventory_trend"]
        assert trend == [{"date": today(), "total_quantity": Decimal("125"), "total_value_minor": 14500}]

    def test_second_snapshot_same_day_replaces_rows(self, db_session, viewer, product, warehouse, stock_item):
        service = ReportService(db_session, viewer)
        service.create_stock_snapshot()
        add_stock(db_session, product, warehouse, 10, batch_number="B2")

        result = service.create_stock_snapshot()

        assert result["records_created"] == 1
        assert db_session.query(StockSnapshot).count() == 1
        (point,) = service.dashboard()["inventory_trend"]
        assert point["total_quantity"] == Decimal("110")
        assert point["total_value_minor"] == 11000


# ============== API ==============

class TestReportApi:
    def test_valuation_endpoint(self, client, viewer_headers, stock_item):
        response = client.get("/api/v1/reports/valuation", headers=viewer_headers)
        assert response.status_code == 200
        body = response.json()
        assert body["summary"]["total_value_minor"] == 10000
        assert body["rows"][0]["quantity"] == 100

    def test_movement_endpoint_validates_dates(self, client, viewer_headers):
        response = client.get(
            "/api/v1/reports/movements",
            params={"date_from": "2030-01-02T00:00:00", "date_to": "2030-01-01T00:00:00"},
            headers=viewer_headers,
        )
        assert response.status_code == 400
        assert response.json()["detail"] == "date_from must be before or equal to date_to"

    def test_movement_endpoint_requires_dates(self, client, viewer_headers):
        response = client.get("/api/v1/reports/movements", headers=viewer_headers)
        assert response.status_code == 422

    def test_aging_and_dashboard(self, client, viewer_headers, stock_item):
        response = client.get("/api/v1/reports/aging", headers=viewer_headers)
        assert response.status_code == 200
        assert response.json()["rows"][0]["age_bracket"] == NEVER_MOVED

        response = client.get("/api/v1/reports/dashboard", headers=viewer_headers)
        assert response.status_code == 200
        assert response.json()["total_units_in_stock"] == 100

    def test_purchasing_endpoint(self, client, viewer_headers, supplier):
        response = client.get("/api/v1/reports/purchasing", headers=viewer_headers)
        assert response.status_code == 200
        assert response.json()["supplier_performance"][0]["name"] == "Acme Supplies"

        response = client.get("/api/v1/reports/purchasing", params={"days": 0}, headers=viewer_headers)
        assert response.status_code == 422

    def test_snapshot_endpoint(self, client, manager_headers, stock_item):
        response = client.post("/api/v1/reports/snapshots", headers=manager_headers)
        assert response.status_code == 201
        assert response.json()["records_created"] == 1

    def test_reports_require_authentication(self, client):
        assert client.get("/api/v1/reports/dashboard").status_code == 401
