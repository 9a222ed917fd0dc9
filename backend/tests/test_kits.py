"""Tests for kits: BOM editing, cycle detection, assembly costing, disassembly and genealogy."""

from decimal import Decimal

import pytest

from stockroom.models.activity_log import ActivityLog
from stockroom.models.product import Product
from stockroom.models.stock import InventoryTransaction, StockItem, StockMovement
from stockroom.services.errors import BusinessRuleError, PermissionDeniedError
from stockroom.services.kit_service import KitService, build_kit_graph, has_path

from conftest import add_stock, days_from_today


def _product(db_session, sku, name, is_kit=False):
    prod = Product(sku=sku, name=name, unit="pcs", cost_price=0, sell_price=0, is_kit=is_kit, is_active=True)
    db_session.add(prod)
    db_session.commit()
    db_session.refresh(prod)
    return prod


@pytest.fixture
def ribbon(db_session):
    return _product(db_session, "RIBBON-1", "Ribbon")


@pytest.fixture
def gift_box(db_session, manager, product, ribbon):
    kit = _product(db_session, "GIFT-BOX", "Gift Box", is_kit=True)
    KitService(db_session, manager).set_bom(
        kit.id,
        [
            {"component_id": product.id, "quantity": Decimal("2")},
            {"component_id": ribbon.id, "quantity": Decimal("1")},
        ],
    )
    return kit


@pytest.fixture
def stocked(db_session, product, ribbon, warehouse):
    add_stock(db_session, product, warehouse, 10, unit_cost=100)
    add_stock(db_session, ribbon, warehouse, 5, unit_cost=40)


# ============== BOM graph ==============

class TestBomGraph:
    def test_has_path(self):
        graph = build_kit_graph([1, 2, 3], [(1, 2), (2, 3)])
        assert has_path(graph, 1, 3)
        assert not has_path(graph, 3, 1)

    def test_has_path_tolerates_cycles(self):
        graph = build_kit_graph([1, 2], [(1, 2), (2, 1)])
        assert has_path(graph, 1, 2)
        assert not has_path(graph, 1, 99)

    def test_unknown_node(self):
        assert has_path({}, 5, 5)
        assert not has_path({}, 5, 6)


# ============== BOM editing ==============

class TestSetBom:
    def test_bom_rows(self, db_session, viewer, gift_box, product, ribbon):
        rows = KitService(db_session, viewer).get_bom(gift_box.id)
        assert [(r["component_sku"], r["quantity_per_kit"]) for r in rows] == [
            ("WIDGET-001", Decimal("2")),
            ("RIBBON-1", Decimal("1")),
        ]

    def test_set_bom_replaces_lines_and_logs(self, db_session, manager, gift_box, ribbon):
        rows = KitService(db_session, manager).set_bom(
            gift_box.id, [{"component_id": ribbon.id, "quantity": Decimal("3")}]
        )
        assert [(r["component_id"], r["quantity_per_kit"]) for r in rows] == [(ribbon.id, Decimal("3"))]
        assert db_session.query(ActivityLog).filter(ActivityLog.action == "KIT_BOM_UPDATED").count() == 2

    def test_kit_cannot_contain_itself(self, db_session, manager, gift_box):
        with pytest.raises(BusinessRuleError, match="cannot include itself"):
            KitService(db_session, manager).set_bom(gift_box.id, [{"component_id": gift_box.id, "quantity": 1}])

    def test_nested_cycle_rejected(self, db_session, manager, gift_box):
        hamper = _product(db_session, "HAMPER", "Hamper", is_kit=True)
        service = KitService(db_session, manager)
        service.set_bom(hamper.id, [{"component_id": gift_box.id, "quantity": 1}])

        with pytest.raises(BusinessRuleError, match="Circular BOM detected"):
            service.set_bom(gift_box.id, [{"component_id": hamper.id, "quantity": 1}])

    def test_duplicate_component(self, db_session, manager, gift_box, ribbon):
        line = {"component_id": ribbon.id, "quantity": 1}
        with pytest.raises(BusinessRuleError, match="only appear once"):
            KitService(db_session, manager).set_bom(gift_box.id, [line, dict(line)])

    def test_non_positive_quantity(self, db_session, manager, gift_box, ribbon):
        with pytest.raises(BusinessRuleError, match="Component quantity must be greater than zero."):
            KitService(db_session, manager).set_bom(gift_box.id, [{"component_id": ribbon.id, "quantity": 0}])

    def test_target_must_be_kit(self, db_session, manager, product, ribbon):
        with pytest.raises(BusinessRuleError, match="must be marked as a kit"):
            KitService(db_session, manager).set_bom(product.id, [{"component_id": ribbon.id, "quantity": 1}])

    def test_staff_cannot_edit_bom(self, db_session, staff, gift_box, ribbon):
        with pytest.raises(PermissionDeniedError, match="edit kit BOM"):
            KitService(db_session, staff).set_bom(gift_box.id, [{"component_id": ribbon.id, "quantity": 1}])


# ============== Assembly ==============

class TestAssembly:
    def test_assemble_consumes_components_and_costs_kit(
        self, db_session, staff, gift_box, product, ribbon, warehouse, stocked
    ):
        result = KitService(db_session, staff).assemble(gift_box.id, warehouse.id, 3)

        assert result["transaction_number"].startswith("ASM-")
        # (6 x 100 + 3 x 40) / 3
        assert result["assembled_unit_cost"] == 240
        kit_bucket = result["kit_stock_item"]
        assert kit_bucket.quantity == Decimal("3")
        assert kit_bucket.unit_cost == 240

        widget_bucket = db_session.query(StockItem).filter(StockItem.product_id == product.id).one()
        ribbon_bucket = db_session.query(StockItem).filter(StockItem.product_id == ribbon.id).one()
        assert widget_bucket.quantity == Decimal("4")
        assert ribbon_bucket.quantity == Decimal("2")

        transaction = db_session.query(InventoryTransaction).one()
        assert transaction.type == "ASSEMBLY"
        assert len(transaction.movements) == 3

    def test_components_consumed_earliest_expiry_first(self, db_session, staff, gift_box, product, ribbon, warehouse):
        undated = add_stock(db_session, product, warehouse, 10, unit_cost=100)
        early = add_stock(db_session, product, warehouse, 4, batch_number="E1", expiry_date=days_from_today(5))
        add_stock(db_session, ribbon, warehouse, 5, unit_cost=40)

        KitService(db_session, staff).assemble(gift_box.id, warehouse.id, 3)

        db_session.refresh(early)
        db_session.refresh(undated)
        assert early.quantity == 0
        assert undated.quantity == Decimal("8")

    def test_insufficient_component(self, db_session, staff, gift_box, warehouse, stocked):
        with pytest.raises(BusinessRuleError) as exc:
            KitService(db_session, staff).assemble(gift_box.id, warehouse.id, 6)
        assert exc.value.message == "Insufficient stock for component Widget. Required 12, available 10."
        assert db_session.query(StockMovement).count() == 0

    def test_kit_without_bom(self, db_session, staff, warehouse):
        empty = _product(db_session, "EMPTY-KIT", "Empty Kit", is_kit=True)
        with pytest.raises(BusinessRuleError, match="no BOM components"):
            KitService(db_session, staff).assemble(empty.id, warehouse.id, 1)

    def test_viewer_cannot_assemble(self, db_session, viewer, gift_box, warehouse, stocked):
        with pytest.raises(PermissionDeniedError, match="assemble kits"):
            KitService(db_session, viewer).assemble(gift_box.id, warehouse.id, 1)

    def test_repeat_assembly_averages_cost(self, db_session, staff, gift_box, ribbon, warehouse, stocked):
        service = KitService(db_session, staff)
        service.assemble(gift_box.id, warehouse.id, 1)
        add_stock(db_session, ribbon, warehouse, 1, batch_number="DEAR", unit_cost=340)
        db_session.query(StockItem).filter(
            StockItem.product_id == ribbon.id, StockItem.batch_number.is_(None)
        ).update({"quantity": 0})
        db_session.commit()

        result = service.assemble(gift_box.id, warehouse.id, 1)

        # first kit cost 240, second 2 x 100 + 340 = 540
        assert result["assembled_unit_cost"] == 540
        assert result["kit_stock_item"].unit_cost == 390
        assert result["kit_stock_item"].quantity == Decimal("2")


# ============== Disassembly ==============

class TestDisassembly:
    def test_disassemble_returns_components(self, db_session, staff, manager, gift_box, product, warehouse, stocked):
        kit_bucket = KitService(db_session, staff).assemble(gift_box.id, warehouse.id, 3)["kit_stock_item"]

        result = KitService(db_session, manager).disassemble(kit_bucket.id, 1)

        assert result["transaction_number"].startswith("DSM-")
        assert result["kit_stock_item"].quantity == Decimal("2")
        returned = {r["component_name"]: r["quantity"] for r in result["returned_components"]}
        assert returned == {"Widget": Decimal("2"), "Ribbon": Decimal("1")}

        widget_bucket = db_session.query(StockItem).filter(StockItem.product_id == product.id).one()
        assert widget_bucket.quantity == Decimal("6")

    def test_staff_cannot_disassemble(self, db_session, staff, gift_box, warehouse, stocked):
        kit_bucket = KitService(db_session, staff).assemble(gift_box.id, warehouse.id, 1)["kit_stock_item"]
        with pytest.raises(PermissionDeniedError, match="disassemble kits"):
            KitService(db_session, staff).disassemble(kit_bucket.id, 1)

    def test_exceeds_kit_stock(self, db_session, staff, manager, gift_box, warehouse, stocked):
        kit_bucket = KitService(db_session, staff).assemble(gift_box.id, warehouse.id, 1)["kit_stock_item"]
        with pytest.raises(BusinessRuleError, match="exceeds available kit stock"):
            KitService(db_session, manager).disassemble(kit_bucket.id, 2)

    def test_non_kit_stock_rejected(self, db_session, manager, stock_item):
        with pytest.raises(BusinessRuleError, match="not a valid kit"):
            KitService(db_session, manager).disassemble(stock_item.id, 1)


# ============== Genealogy ==============

class TestGenealogy:
    def test_genealogy_lists_consumed_components(self, db_session, staff, viewer, gift_box, warehouse, stocked):
        KitService(db_session, staff).assemble(gift_box.id, warehouse.id, 2)

        entries = KitService(db_session, viewer).genealogy(gift_box.id)

        assert len(entries) == 1
        entry = entries[0]
        assert entry["assembled_quantity"] == Decimal("2")
        assert entry["warehouse"] == warehouse.name
        consumed = {c["component_sku"]: c["quantity"] for c in entry["consumed_components"]}
        assert consumed == {"WIDGET-001": Decimal("4"), "RIBBON-1": Decimal("2")}

    def test_genealogy_limit_bounds(self, db_session, viewer, gift_box):
        with pytest.raises(BusinessRuleError, match="Limit must be between 1 and 200."):
            KitService(db_session, viewer).genealogy(gift_box.id, limit=0)

    def test_genealogy_filters_by_warehouse(
        self, db_session, staff, viewer, gift_box, warehouse, second_warehouse, stocked
    ):
        KitService(db_session, staff).assemble(gift_box.id, warehouse.id, 1)
        assert KitService(db_session, viewer).genealogy(gift_box.id, warehouse_id=second_warehouse.id) == []


# ============== API ==============

class TestKitApi:
    def test_full_kit_flow(
        self, client, db_session, manager_headers, staff_headers, product, ribbon, warehouse, stocked
    ):
        kit = _product(db_session, "GIFT-BOX", "Gift Box", is_kit=True)

        response = client.put(
            f"/api/v1/kits/{kit.id}/bom",
            json={"components": [
                {"component_id": product.id, "quantity": 2},
                {"component_id": ribbon.id, "quantity": 1},
            ]},
            headers=manager_headers,
        )
        assert response.status_code == 200
        assert response.json()["total"] == 2

        response = client.post(
            f"/api/v1/kits/{kit.id}/assemble",
            json={"warehouse_id": warehouse.id, "quantity": 2},
            headers=staff_headers,
        )
        assert response.status_code == 201
        data = response.json()
        assert data["assembled_quantity"] == 2
        assert data["assembled_unit_cost"] == 240
        kit_stock_id = data["kit_stock_item"]["id"]

        response = client.get("/api/v1/kits/", headers=staff_headers)
        assert response.status_code == 200
        summary = response.json()["items"][0]
        assert summary["kit"]["sku"] == "GIFT-BOX"
        assert summary["available_quantity"] == 2

        response = client.post(
            "/api/v1/kits/disassemble",
            json={"kit_stock_item_id": kit_stock_id, "quantity": 1},
            headers=manager_headers,
        )
        assert response.status_code == 200
        assert response.json()["kit_stock_item"]["quantity"] == 1

        response = client.get(f"/api/v1/kits/{kit.id}/genealogy", headers=staff_headers)
        assert response.status_code == 200
        assert response.json()["total"] == 1

    def test_circular_bom_is_400(self, client, db_session, manager_headers, gift_box):
        hamper = _product(db_session, "HAMPER", "Hamper", is_kit=True)
        client.put(
            f"/api/v1/kits/{hamper.id}/bom",
            json={"components": [{"component_id": gift_box.id, "quantity": 1}]},
            headers=manager_headers,
        )
        response = client.put(
            f"/api/v1/kits/{gift_box.id}/bom",
            json={"components": [{"component_id": hamper.id, "quantity": 1}]},
            headers=manager_headers,
        )
        assert response.status_code == 400
        assert response.json()["detail"] == "Circular BOM detected. Please remove recursive kit dependencies."
