"""Tests for FEFO picking and reservation ordering."""

from decimal import Decimal

import pytest

from stockroom.models.stock import StockStatus
from stockroom.services.errors import InsufficientStockError
from stockroom.services.fefo import allocate_fefo, reservation_candidates

from conftest import add_stock, days_from_today


class TestAllocateFefo:
    def test_earliest_expiry_first(self, db_session, product, warehouse):
        late = add_stock(db_session, product, warehouse, 10, batch_number="LATE", expiry_date=days_from_today(90))
        early = add_stock(db_session, product, warehouse, 4, batch_number="EARLY", expiry_date=days_from_today(5))

        allocations = allocate_fefo(db_session, product.id, warehouse.id, 6)

        assert [(a.stock_item_id, a.quantity) for a in allocations] == [(early.id, 4), (late.id, 2)]

    def test_undated_stock_after_dated(self, db_session, product, warehouse):
        undated = add_stock(db_session, product, warehouse, 10)
        dated = add_stock(db_session, product, warehouse, 3, batch_number="B1", expiry_date=days_from_today(20))

        allocations = allocate_fefo(db_session, product.id, warehouse.id, 5)

        assert [a.stock_item_id for a in allocations] == [dated.id, undated.id]
        assert allocations[1].quantity == Decimal("2")

    def test_skips_expired_reserved_and_unavailable(self, db_session, product, warehouse, second_warehouse):
        add_stock(db_session, product, warehouse, 50, batch_number="OLD", expiry_date=days_from_today(-1))
        add_stock(db_session, product, warehouse, 50, batch_number="TODAY", expiry_date=days_from_today(0))
        add_stock(db_session, product, warehouse, 50, status=StockStatus.QUARANTINE.value)
        add_stock(db_session, product, second_warehouse, 50)
        partly_reserved = add_stock(db_session, product, warehouse, 10, reserved=7)

        allocations = allocate_fefo(db_session, product.id, warehouse.id, 3)

        assert len(allocations) == 1
        assert allocations[0].stock_item_id == partly_reserved.id
        assert allocations[0].quantity == Decimal("3")

    def test_custom_cutoff(self, db_session, product, warehouse):
        soon = add_stock(db_session, product, warehouse, 5, batch_number="SOON", expiry_date=days_from_today(3))
        later = add_stock(db_session, product, warehouse, 5, batch_number="LATER", expiry_date=days_from_today(30))

        allocations = allocate_fefo(
            db_session, product.id, warehouse.id, 5, exclude_expired_before=days_from_today(7)
        )

        assert [a.stock_item_id for a in allocations] == [later.id]
        assert soon.id not in [a.stock_item_id for a in allocations]

    def test_shortfall_message(self, db_session, product, warehouse):
        add_stock(db_session, product, warehouse, Decimal("2.5"))

        with pytest.raises(InsufficientStockError) as exc:
            allocate_fefo(db_session, product.id, warehouse.id, 4)

        assert exc.value.message == (
            "Insufficient available stock. Could only allocate 2.5 of 4 units after applying FEFO."
        )
        assert exc.value.status_code == 400
        assert exc.value.allocated == Decimal("2.5")

    def test_allocation_does_not_write(self, db_session, product, warehouse):
        item = add_stock(db_session, product, warehouse, 10)
        allocate_fefo(db_session, product.id, warehouse.id, 10)
        db_session.refresh(item)
        assert item.quantity == Decimal("10")
        assert item.reserved_quantity == 0


class TestReservationCandidates:
    def test_order_across_warehouses(self, db_session, product, warehouse, second_warehouse):
        undated = add_stock(db_session, product, warehouse, 10)
        far = add_stock(db_session, product, warehouse, 10, batch_number="FAR", expiry_date=days_from_today(200))
        near = add_stock(db_session, product, second_warehouse, 10, batch_number="NEAR", expiry_date=days_from_today(10))

        candidates = reservation_candidates(db_session, product.id)

        assert [c.id for c in candidates] == [near.id, far.id, undated.id]

    def test_excludes_fully_reserved_and_quarantined(self, db_session, product, warehouse):
        add_stock(db_session, product, warehouse, 10, reserved=10)
        add_stock(db_session, product, warehouse, 10, status=StockStatus.QUARANTINE.value)
        free = add_stock(db_session, product, warehouse, 10, reserved=4)

        assert [c.id for c in reservation_candidates(db_session, product.id)] == [free.id]
