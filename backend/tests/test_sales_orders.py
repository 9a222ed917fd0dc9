"""Tests for the sales order lifecycle: totals, confirmation, shipping, cancellation and delivery."""

from decimal import Decimal

import pytest
from sqlalchemy import update
from sqlalchemy.orm import Session

from stockroom.models.sales_order import SalesOrderStatus
from stockroom.models.stock import StockItem, StockMovement
from stockroom.services import sales_order_service
from stockroom.services.errors import BusinessRuleError, ConcurrencyError, NotFoundError, PermissionDeniedError
from stockroom.services.fefo import reservation_candidates
from stockroom.services.sales_order_service import (
    SalesOrderService,
    build_line_totals,
    compute_order_totals,
    next_status_after_shipment,
)

from conftest import add_stock, days_from_today


def _line(product, quantity, unit_price=1000, **extra):
    return {"product_id": product.id, "quantity": Decimal(str(quantity)), "unit_price": unit_price, **extra}


@pytest.fixture
def draft_order(db_session, staff, customer, product):
    return SalesOrderService(db_session, staff).create_order(customer.id, [_line(product, 10)])


# ============== Totals ==============

class TestTotals:
    def test_line_totals_apply_discount_then_tax(self, product):
        lines = build_line_totals([_line(product, 2, 1000, tax_rate=10, discount_percent=10)])
        assert lines[0]["total_price"] == 1980

    def test_order_totals_use_undiscounted_base(self, product):
        lines = build_line_totals([_line(product, 2, 1000, tax_rate=10, discount_percent=10)])
        totals = compute_order_totals(lines, additional_tax=50, shipping_cost=100)
        assert totals == {"subtotal": 2000, "tax_amount": 250, "shipping_cost": 100, "total_amount": 2350}

    def test_half_minor_units_round_up(self, product):
        lines = build_line_totals([_line(product, Decimal("0.5"), 5)])
        assert lines[0]["total_price"] == 3
        assert compute_order_totals(lines)["subtotal"] == 3

    @pytest.mark.parametrize(
        "all_shipped,any_shipped,status",
        [(True, True, "FULFILLED"), (False, True, "PARTIALLY_FULFILLED"), (False, False, "CONFIRMED")],
    )
    def test_next_status(self, all_shipped, any_shipped, status):
        assert next_status_after_shipment(all_shipped, any_shipped) == status


# ============== Drafts ==============

class TestDrafts:
    def test_create_draft(self, db_session, staff, customer, product):
        order = SalesOrderService(db_session, staff).create_order(
            customer.id, [_line(product, 3, 500, tax_rate=20)], shipping_cost=250
        )
        assert order.status == SalesOrderStatus.DRAFT.value
        assert order.order_number.startswith("SO-")
        assert order.subtotal == 1500
        assert order.tax_amount == 300
        assert order.total_amount == 2050
        assert order.items[0].total_price == 1800

    def test_items_required(self, db_session, staff, customer):
        with pytest.raises(BusinessRuleError, match="At least one item is required."):
            SalesOrderService(db_session, staff).create_order(customer.id, [])

    def test_tax_rate_bounds(self, db_session, staff, customer, product):
        with pytest.raises(BusinessRuleError, match="Tax rate must be between 0 and 100."):
            SalesOrderService(db_session, staff).create_order(customer.id, [_line(product, 1, tax_rate=101)])

    def test_inactive_customer(self, db_session, staff, customer, product):
        customer.is_active = False
        db_session.commit()
        with pytest.raises(BusinessRuleError, match="Selected customer is invalid or inactive."):
            SalesOrderService(db_session, staff).create_order(customer.id, [_line(product, 1)])

    def test_credit_limit_blocks_staff(self, db_session, staff, customer, product):
        customer.credit_limit = 5000
        db_session.commit()
        with pytest.raises(BusinessRuleError, match="exceeds customer credit limit"):
            SalesOrderService(db_session, staff).create_order(customer.id, [_line(product, 10)])

    def test_manager_overrides_credit_limit(self, db_session, manager, customer, product):
        customer.credit_limit = 5000
        db_session.commit()
        order = SalesOrderService(db_session, manager).create_order(customer.id, [_line(product, 10)])
        assert order.total_amount == 10000

    def test_update_draft_replaces_lines(self, db_session, staff, customer, product, draft_order):
        order = SalesOrderService(db_session, staff).update_draft(
            draft_order.id, customer.id, [_line(product, 4, 250), _line(product, 1, 100)]
        )
        assert len(order.items) == 2
        assert order.subtotal == 1100

    def test_only_managers_delete_drafts(self, db_session, staff, manager, draft_order):
        with pytest.raises(PermissionDeniedError):
            SalesOrderService(db_session, staff).delete_draft(draft_order.id)

        order_id = draft_order.id
        SalesOrderService(db_session, manager).delete_draft(order_id)
        with pytest.raises(NotFoundError, match="Sales order not found."):
            SalesOrderService(db_session, manager).get_order(order_id)


# ============== Confirmation ==============

class TestConfirmation:
    def test_confirm_reserves_fefo_across_warehouses(
        self, db_session, staff, customer, product, warehouse, second_warehouse
    ):
        undated = add_stock(db_session, product, warehouse, 20)
        soon = add_stock(db_session, product, second_warehouse, 6, batch_number="B1", expiry_date=days_from_today(15))
        service = SalesOrderService(db_session, staff)
        order = service.create_order(customer.id, [_line(product, 10)])

        order = service.confirm_order(order.id)

        assert order.status == SalesOrderStatus.CONFIRMED.value
        db_session.refresh(soon)
        db_session.refresh(undated)
        assert soon.reserved_quantity == Decimal("6")
        assert undated.reserved_quantity == Decimal("4")

    def test_confirm_insufficient_stock_rolls_back(self, db_session, staff, customer, product, warehouse):
        item = add_stock(db_session, product, warehouse, 3)
        service = SalesOrderService(db_session, staff)
        order = service.create_order(customer.id, [_line(product, 5)])

        with pytest.raises(BusinessRuleError) as exc:
            service.confirm_order(order.id)

        assert exc.value.message == 'Insufficient stock for "Widget". Unable to reserve 2 more units.'
        db_session.refresh(item)
        assert item.reserved_quantity == 0
        assert service.get_order(order.id).status == SalesOrderStatus.DRAFT.value

    def test_confirm_detects_concurrent_reservation(
        self, db_session, staff, customer, product, warehouse, monkeypatch
    ):
        item = add_stock(db_session, product, warehouse, 20)
        service = SalesOrderService(db_session, staff)
        order = service.create_order(customer.id, [_line(product, 10)])

        def candidates_then_competing_write(db, product_id):
            buckets = reservation_candidates(db, product_id)
            other = Session(bind=db_session.get_bind())
            try:
                other.execute(update(StockItem).where(StockItem.id == item.id).values(reserved_quantity=3))
                other.commit()
            finally:
                other.close()
            return buckets

        monkeypatch.setattr(sales_order_service, "reservation_candidates", candidates_then_competing_write)

        with pytest.raises(ConcurrencyError, match="Stock changed while confirming the order. Please retry."):
            service.confirm_order(order.id)

        db_session.refresh(item)
        assert item.reserved_quantity == Decimal("3")
        assert service.get_order(order.id).status == SalesOrderStatus.DRAFT.value

    def test_confirm_conflict_maps_to_409(self, client, db_session, staff, staff_headers, monkeypatch, draft_order):
        def conflicting(*args, **kwargs):
            raise ConcurrencyError("Stock changed while confirming the order. Please retry.")

        monkeypatch.setattr(SalesOrderService, "_reserve_line", conflicting)

        response = client.post(f"/api/v1/sales-orders/{draft_order.id}/confirm", headers=staff_headers)

        assert response.status_code == 409
        assert response.json() == {"detail": "Stock changed while confirming the order. Please retry."}

    def test_confirm_only_drafts(self, db_session, staff, warehouse, product, draft_order):
        add_stock(db_session, product, warehouse, 50)
        service = SalesOrderService(db_session, staff)
        service.confirm_order(draft_order.id)
        with pytest.raises(BusinessRuleError, match='Cannot confirm an order in "CONFIRMED" status.'):
            service.confirm_order(draft_order.id)

    def test_confirm_rechecks_credit_limit(self, db_session, staff, customer, warehouse, product, draft_order):
        add_stock(db_session, product, warehouse, 50)
        customer.credit_limit = 100
        db_session.commit()
        with pytest.raises(BusinessRuleError, match="override permission to confirm"):
            SalesOrderService(db_session, staff).confirm_order(draft_order.id)


# ============== Shipping ==============

class TestShipping:
    @pytest.fixture
    def confirmed(self, db_session, staff, customer, product, warehouse):
        bucket = add_stock(db_session, product, warehouse, 30)
        service = SalesOrderService(db_session, staff)
        order = service.create_order(customer.id, [_line(product, 10)])
        service.confirm_order(order.id)
        return order, bucket

    def test_partial_then_full_shipment(self, db_session, staff, confirmed):
        order, bucket = confirmed
        service = SalesOrderService(db_session, staff)
        line_id = order.items[0].id

        result = service.ship_order(order.id, [{"sales_order_item_id": line_id, "stock_item_id": bucket.id, "quantity": 4}])
        assert result["order"].status == SalesOrderStatus.PARTIALLY_FULFILLED.value
        assert result["order"].shipped_date is None
        db_session.refresh(bucket)
        assert bucket.quantity == Decimal("26")
        assert bucket.reserved_quantity == Decimal("6")

        result = service.ship_order(order.id, [{"sales_order_item_id": line_id, "stock_item_id": bucket.id, "quantity": 6}])
        assert result["order"].status == SalesOrderStatus.FULFILLED.value
        assert result["order"].shipped_date is not None

        movements = db_session.query(StockMovement).filter(StockMovement.type == "SALES_SHIPMENT").all()
        assert sorted(m.quantity for m in movements) == [Decimal("4"), Decimal("6")]
        assert all(m.from_warehouse_id == bucket.warehouse_id and m.to_warehouse_id is None for m in movements)

    def test_cannot_ship_more_than_remaining(self, db_session, staff, confirmed):
        order, bucket = confirmed
        with pytest.raises(BusinessRuleError, match="exceeds remaining quantity"):
            SalesOrderService(db_session, staff).ship_order(
                order.id, [{"sales_order_item_id": order.items[0].id, "stock_item_id": bucket.id, "quantity": 11}]
            )

    def test_bucket_must_hold_reservation(self, db_session, staff, confirmed, product, warehouse):
        order, _ = confirmed
        unreserved = add_stock(db_session, product, warehouse, 50)
        with pytest.raises(BusinessRuleError, match="Insufficient reserved stock"):
            SalesOrderService(db_session, staff).ship_order(
                order.id, [{"sales_order_item_id": order.items[0].id, "stock_item_id": unreserved.id, "quantity": 1}]
            )

    def test_failed_line_rolls_back_whole_shipment(self, db_session, staff, confirmed):
        order, bucket = confirmed
        items = [
            {"sales_order_item_id": order.items[0].id, "stock_item_id": bucket.id, "quantity": 2},
            {"sales_order_item_id": 99999, "stock_item_id": bucket.id, "quantity": 1},
        ]
        with pytest.raises(BusinessRuleError, match="does not belong to this sales order"):
            SalesOrderService(db_session, staff).ship_order(order.id, items)
        db_session.refresh(bucket)
        assert bucket.quantity == Decimal("30")
        assert db_session.query(StockMovement).count() == 0

    def test_cannot_ship_draft(self, db_session, staff, draft_order, stock_item):
        with pytest.raises(BusinessRuleError, match='Cannot ship an order in "DRAFT" status.'):
            SalesOrderService(db_session, staff).ship_order(
                draft_order.id,
                [{"sales_order_item_id": draft_order.items[0].id, "stock_item_id": stock_item.id, "quantity": 1}],
            )

    def test_deliver_after_fulfilment(self, db_session, staff, confirmed):
        order, bucket = confirmed
        service = SalesOrderService(db_session, staff)
        service.ship_order(order.id, [{"sales_order_item_id": order.items[0].id, "stock_item_id": bucket.id, "quantity": 10}])

        delivered = service.mark_delivered(order.id)

        assert delivered.status == SalesOrderStatus.DELIVERED.value
        assert all(s.status == "DELIVERED" and s.delivered_date is not None for s in delivered.shipments)

    def test_cannot_deliver_confirmed(self, db_session, staff, confirmed):
        order, _ = confirmed
        with pytest.raises(BusinessRuleError, match='from "CONFIRMED" status'):
            SalesOrderService(db_session, staff).mark_delivered(order.id)


# ============== Cancellation ==============

class TestCancellation:
    def test_cancel_confirmed_releases_reservations(self, db_session, staff, manager, customer, product, warehouse):
        bucket = add_stock(db_session, product, warehouse, 30)
        order = SalesOrderService(db_session, staff).create_order(customer.id, [_line(product, 12)])
        SalesOrderService(db_session, staff).confirm_order(order.id)

        cancelled = SalesOrderService(db_session, manager).cancel_order(order.id, "Customer changed mind")

        assert cancelled.status == SalesOrderStatus.CANCELLED.value
        assert "Customer changed mind" in cancelled.notes
        db_session.refresh(bucket)
        assert bucket.reserved_quantity == 0

    def test_staff_cannot_cancel(self, db_session, staff, draft_order):
        with pytest.raises(PermissionDeniedError, match="cancel sales orders"):
            SalesOrderService(db_session, staff).cancel_order(draft_order.id, "No longer needed")

    def test_reason_required(self, db_session, manager, draft_order):
        with pytest.raises(BusinessRuleError, match="Cancellation reason is required."):
            SalesOrderService(db_session, manager).cancel_order(draft_order.id, "   ")

    def test_cannot_cancel_after_shipping(self, db_session, staff, manager, customer, product, warehouse):
        bucket = add_stock(db_session, product, warehouse, 30)
        service = SalesOrderService(db_session, staff)
        order = service.create_order(customer.id, [_line(product, 5)])
        service.confirm_order(order.id)
        service.ship_order(order.id, [{"sales_order_item_id": order.items[0].id, "stock_item_id": bucket.id, "quantity": 2}])

        with pytest.raises(BusinessRuleError, match='Cannot cancel an order in "PARTIALLY_FULFILLED" status.'):
            SalesOrderService(db_session, manager).cancel_order(order.id, "Too late")


# ============== API ==============

class TestSalesOrderApi:
    def test_full_flow_over_http(self, client, db_session, staff_headers, manager_headers, customer, product, warehouse):
        bucket = add_stock(db_session, product, warehouse, 40)

        response = client.post(
            "/api/v1/sales-orders/",
            json={
                "customer_id": customer.id,
                "items": [{"product_id": product.id, "quantity": "5", "unit_price": 1200, "tax_rate": "10"}],
                "shipping_cost": 300,
            },
            headers=staff_headers,
        )
        assert response.status_code == 201
        order = response.json()
        assert order["total_amount"] == 6900
        line_id = order["items"][0]["id"]

        response = client.post(f"/api/v1/sales-orders/{order['id']}/confirm", headers=staff_headers)
        assert response.status_code == 200
        assert response.json()["status"] == "CONFIRMED"

        response = client.post(
            f"/api/v1/sales-orders/{order['id']}/ship",
            json={"items": [{"sales_order_item_id": line_id, "stock_item_id": bucket.id, "quantity": "5"}]},
            headers=staff_headers,
        )
        assert response.status_code == 201
        shipped = response.json()
        assert shipped["order"]["status"] == "FULFILLED"
        assert shipped["transaction_number"].startswith("IT-")
        assert shipped["shipment"]["items"][0]["quantity"] == 5

        response = client.post(f"/api/v1/sales-orders/{order['id']}/deliver", json={}, headers=staff_headers)
        assert response.status_code == 200
        assert response.json()["status"] == "DELIVERED"

    def test_insufficient_stock_is_400(self, client, staff_headers, customer, product):
        response = client.post(
            "/api/v1/sales-orders/",
            json={"customer_id": customer.id, "items": [{"product_id": product.id, "quantity": "5", "unit_price": 100}]},
            headers=staff_headers,
        )
        order_id = response.json()["id"]
        response = client.post(f"/api/v1/sales-orders/{order_id}/confirm", headers=staff_headers)
        assert response.status_code == 400
        assert response.json()["detail"].startswith("Insufficient stock")

    def test_viewer_lists_but_cannot_create(self, client, viewer_headers, customer, product):
        response = client.get("/api/v1/sales-orders/", headers=viewer_headers)
        assert response.status_code == 200
        assert response.json()["total"] == 0

        response = client.post(
            "/api/v1/sales-orders/",
            json={"customer_id": customer.id, "items": [{"product_id": product.id, "quantity": "1", "unit_price": 100}]},
            headers=viewer_headers,
        )
        assert response.status_code == 403
