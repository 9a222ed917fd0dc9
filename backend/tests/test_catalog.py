"""Tests for master data: categories, products, warehouses, locations, partners and users."""

from decimal import Decimal

import pytest

from stockroom.core.permissions import UserRole
from stockroom.models.activity_log import ActivityLog
from stockroom.models.product import Category, Product, ProductPriceHistory, ProductSupplier
from stockroom.models.supplier import Supplier
from stockroom.services.catalog_service import CategoryService, ProductService
from stockroom.services.errors import BusinessRuleError, NotFoundError, PermissionDeniedError
from stockroom.services.partner_service import CustomerService, SupplierService
from stockroom.services.user_service import UserService
from stockroom.services.warehouse_service import WarehouseService

from conftest import make_user


# ============== Categories ==============

class TestCategories:
    def test_create_and_nest(self, db_session, manager):
        service = CategoryService(db_session, manager)
        parent = service.create({"name": "Hardware"})
        child = service.create({"name": "Fasteners", "parent_id": parent.id})

        assert child.parent_id == parent.id
        assert [c.name for c in service.list()] == ["Fasteners", "Hardware"]
        assert [c.name for c in service.list(search="fast")] == ["Fasteners"]

    def test_duplicate_name(self, db_session, manager):
        service = CategoryService(db_session, manager)
        service.create({"name": "Hardware"})
        with pytest.raises(BusinessRuleError, match="Category 'Hardware' already exists"):
            service.create({"name": "Hardware"})

    def test_cycle_rejected(self, db_session, manager):
        service = CategoryService(db_session, manager)
        top = service.create({"name": "Top"})
        middle = service.create({"name": "Middle", "parent_id": top.id})
        bottom = service.create({"name": "Bottom", "parent_id": middle.id})

        with pytest.raises(BusinessRuleError, match="cannot contain cycles"):
            service.update(top.id, {"parent_id": bottom.id})
        with pytest.raises(BusinessRuleError, match="cannot be its own parent"):
            service.update(top.id, {"parent_id": top.id})

    def test_unknown_parent(self, db_session, manager):
        with pytest.raises(BusinessRuleError, match="parent category does not exist"):
            CategoryService(db_session, manager).create({"name": "Orphan", "parent_id": 999})

    def test_staff_cannot_create(self, db_session, staff):
        with pytest.raises(PermissionDeniedError):
            CategoryService(db_session, staff).create({"name": "Nope"})

    def test_delete_requires_reassignment(self, db_session, manager, admin, product):
        service = CategoryService(db_session, manager)
        old = service.create({"name": "Old"})
        new = service.create({"name": "New"})
        product.category_id = old.id
        db_session.commit()

        admin_service = CategoryService(db_session, admin)
        with pytest.raises(BusinessRuleError, match="1 active product"):
            admin_service.delete(old.id)
        with pytest.raises(BusinessRuleError, match="same category being deleted"):
            admin_service.delete(old.id, reassign_products_to=old.id)

        admin_service.delete(old.id, reassign_products_to=new.id)

        db_session.refresh(product)
        assert product.category_id == new.id
        assert db_session.get(Category, old.id) is None

    def test_manager_cannot_delete(self, db_session, manager):
        category = CategoryService(db_session, manager).create({"name": "Keep"})
        with pytest.raises(PermissionDeniedError, match="delete categories"):
            CategoryService(db_session, manager).delete(category.id)


# ============== Products ==============

class TestProducts:
    def test_create_and_list(self, db_session, staff, product):
        service = ProductService(db_session, staff)
        service.create({"sku": "BOLT-10", "name": "Bolt M10", "unit": "pcs"})

        products, total = service.list()
        assert total == 2
        assert [p.sku for p in products] == ["BOLT-10", "WIDGET-001"]

        products, total = service.list(search="widg")
        assert total == 1

    def test_duplicate_sku(self, db_session, staff, product):
        with pytest.raises(BusinessRuleError, match='A product with SKU "WIDGET-001" already exists.'):
            ProductService(db_session, staff).create({"sku": "WIDGET-001", "name": "Copy"})

    def test_staff_cannot_create_tracked_product(self, db_session, staff, manager):
        data = {"sku": "MILK", "name": "Milk", "track_by_batch": True}
        with pytest.raises(PermissionDeniedError, match="tracking fields"):
            ProductService(db_session, staff).create(data)
        product = ProductService(db_session, manager).create(data)
        assert product.track_by_batch is True

    def test_field_permissions_on_update(self, db_session, staff, manager, product):
        staff_service = ProductService(db_session, staff)
        staff_service.update(product.id, {"name": "Widget Pro"})

        with pytest.raises(PermissionDeniedError, match="update product pricing"):
            staff_service.update(product.id, {"sell_price": 900})
        with pytest.raises(PermissionDeniedError, match="update reorder thresholds"):
            staff_service.update(product.id, {"reorder_point": 50})
        with pytest.raises(PermissionDeniedError, match="update product status"):
            staff_service.update(product.id, {"is_active": False})

        updated = ProductService(db_session, manager).update(product.id, {"sell_price": 900})
        assert updated.sell_price == 900

    def test_unchanged_fields_need_no_extra_permission(self, db_session, staff, product):
        updated = ProductService(db_session, staff).update(product.id, {"sell_price": 500, "name": "Widget"})
        assert updated.sell_price == 500

    def test_tracking_locked_once_stock_exists(self, db_session, manager, product, stock_item):
        with pytest.raises(BusinessRuleError, match="Tracking settings cannot be changed"):
            ProductService(db_session, manager).update(product.id, {"track_by_serial_number": True})

    def test_update_logs_changes(self, db_session, staff, product):
        ProductService(db_session, staff).update(product.id, {"name": "Widget Pro"})
        entry = db_session.query(ActivityLog).filter(ActivityLog.action == "PRODUCT_UPDATED").one()
        assert entry.changes == {"before": {"name": "Widget"}, "after": {"name": "Widget Pro"}}

    def test_soft_delete(self, db_session, manager, product):
        service = ProductService(db_session, manager)
        service.delete(product.id)

        db_session.refresh(product)
        assert product.is_deleted
        assert product.is_active is False
        with pytest.raises(NotFoundError, match="Product not found."):
            service.get(product.id)
        assert service.list()[1] == 0

    def test_hard_delete_needs_admin(self, db_session, manager, admin, product):
        with pytest.raises(PermissionDeniedError, match="delete products"):
            ProductService(db_session, manager).delete(product.id, hard=True)
        ProductService(db_session, admin).delete(product.id, hard=True)
        assert db_session.get(Product, product.id) is None


# ============== Warehouses and locations ==============

class TestWarehouses:
    def test_create_and_duplicate_code(self, db_session, manager, warehouse):
        service = WarehouseService(db_session, manager)
        created = service.create_warehouse({"code": "WH-NORTH", "name": "North"})
        assert created.is_active is True
        with pytest.raises(BusinessRuleError, match="Warehouse code 'WH-MAIN' already exists"):
            service.create_warehouse({"code": "WH-MAIN", "name": "Again"})

    def test_deactivate_needs_admin(self, db_session, manager, admin, warehouse):
        with pytest.raises(PermissionDeniedError, match="deactivate warehouses"):
            WarehouseService(db_session, manager).update_warehouse(warehouse.id, {"is_active": False})
        updated = WarehouseService(db_session, admin).update_warehouse(warehouse.id, {"is_active": False})
        assert updated.is_active is False

    def test_delete_blocked_while_holding_stock(self, db_session, admin, warehouse, stock_item):
        with pytest.raises(BusinessRuleError, match="still holds stock"):
            WarehouseService(db_session, admin).delete_warehouse(warehouse.id)

    def test_delete_is_soft(self, db_session, admin, viewer, second_warehouse, warehouse):
        WarehouseService(db_session, admin).delete_warehouse(second_warehouse.id)
        names = [w.name for w in WarehouseService(db_session, viewer).list_warehouses()]
        assert names == ["Main Warehouse"]
        with pytest.raises(NotFoundError):
            WarehouseService(db_session, viewer).get_warehouse(second_warehouse.id)


class TestLocations:
    def test_create_and_filter(self, db_session, manager, warehouse, location):
        service = WarehouseService(db_session, manager)
        service.create_location({"warehouse_id": warehouse.id, "code": "Q-01", "name": "Hold", "type": "QUARANTINE"})

        assert [l.code for l in service.list_locations(warehouse_id=warehouse.id)] == ["A-01", "Q-01"]
        assert [l.code for l in service.list_locations(type="QUARANTINE")] == ["Q-01"]

    def test_invalid_type(self, db_session, manager, warehouse):
        with pytest.raises(BusinessRuleError, match="Invalid location type."):
            WarehouseService(db_session, manager).create_location(
                {"warehouse_id": warehouse.id, "code": "X-01", "name": "X", "type": "FREEZER"}
            )

    def test_duplicate_code(self, db_session, manager, warehouse, location):
        with pytest.raises(BusinessRuleError, match="Location code 'A-01' already exists"):
            WarehouseService(db_session, manager).create_location(
                {"warehouse_id": warehouse.id, "code": "A-01", "name": "Again"}
            )

    def test_cannot_move_location_holding_stock(self, db_session, manager, location, second_warehouse, stock_item):
        with pytest.raises(BusinessRuleError, match="cannot be moved to another warehouse"):
            WarehouseService(db_session, manager).update_location(location.id, {"warehouse_id": second_warehouse.id})

    def test_unknown_warehouse(self, db_session, manager):
        with pytest.raises(NotFoundError, match="Warehouse not found."):
            WarehouseService(db_session, manager).create_location({"warehouse_id": 999, "code": "Z", "name": "Z"})


# ============== Suppliers and customers ==============

class TestPartners:
    def test_supplier_crud(self, db_session, staff, manager, supplier):
        service = SupplierService(db_session, staff)
        created = service.create({"code": "SUP-2", "name": "Beta Parts", "email": "sales@beta.example"})
        partners, total = service.list(search="beta")
        assert total == 1 and partners[0].id == created.id

        with pytest.raises(BusinessRuleError, match="Supplier code 'SUP-1' already exists"):
            service.create({"code": "SUP-1", "name": "Dup"})
        with pytest.raises(PermissionDeniedError, match="deactivate suppliers"):
            service.deactivate(created.id)

        SupplierService(db_session, manager).deactivate(created.id)
        assert service.list()[1] == 1

    def test_customer_credit_limit_needs_manager(self, db_session, staff, manager, customer):
        with pytest.raises(PermissionDeniedError, match="set customer credit limits"):
            CustomerService(db_session, staff).update(customer.id, {"credit_limit": 10000})

        updated = CustomerService(db_session, manager).update(customer.id, {"credit_limit": 10000})
        assert updated.credit_limit == 10000

        # unchanged credit limit is fine for staff
        CustomerService(db_session, staff).update(customer.id, {"credit_limit": 10000, "name": "Globex Ltd"})

    def test_negative_credit_limit(self, db_session, manager, customer):
        with pytest.raises(BusinessRuleError, match="cannot be negative"):
            CustomerService(db_session, manager).update(customer.id, {"credit_limit": -1})

    def test_missing_partner(self, db_session, staff):
        with pytest.raises(NotFoundError, match="Customer not found."):
            CustomerService(db_session, staff).get(404)


# ============== Users ==============

class TestUsers:
    def test_admin_creates_user(self, db_session, admin):
        user = UserService(db_session, admin).create("New.Person@Example.com", "longpassword", "staff")
        assert user.email == "new.person@example.com"
        assert user.role == "staff"

    def test_duplicate_email(self, db_session, admin, staff):
        with pytest.raises(BusinessRuleError, match="already exists"):
            UserService(db_session, admin).create("staff@example.com", "longpassword")

    def test_role_assignment_rules(self, db_session, admin, super_admin):
        with pytest.raises(PermissionDeniedError, match="super admin role"):
            UserService(db_session, admin).create("boss@example.com", "longpassword", "super_admin")
        promoted = UserService(db_session, super_admin).create("boss@example.com", "longpassword", "super_admin")
        assert promoted.role == "super_admin"

    def test_manager_cannot_create_users(self, db_session, manager):
        with pytest.raises(PermissionDeniedError, match="create users"):
            UserService(db_session, manager).create("x@example.com", "longpassword")

    def test_invalid_role(self, db_session, admin):
        with pytest.raises(BusinessRuleError, match="Invalid role."):
            UserService(db_session, admin).create("x@example.com", "longpassword", "janitor")

    def test_cannot_deactivate_self(self, db_session, admin):
        with pytest.raises(BusinessRuleError, match="your own account"):
            UserService(db_session, admin).deactivate(admin.id)

    def test_admin_cannot_demote_super_admin(self, db_session, admin, super_admin):
        with pytest.raises(PermissionDeniedError, match="change a super admin's role"):
            UserService(db_session, admin).update(super_admin.id, {"role": "staff"})

    def test_deactivate(self, db_session, admin, staff):
        user = UserService(db_session, admin).deactivate(staff.id)
        assert user.is_active is False


# ============== API ==============

class TestMasterDataApi:
    def test_product_endpoints(self, client, staff_headers, viewer_headers, product):
        response = client.post(
            "/api/v1/products/",
            json={"sku": "BOLT-10", "name": "Bolt M10"},
            headers=staff_headers,
        )
        assert response.status_code == 201
        bolt_id = response.json()["id"]

        response = client.get("/api/v1/products/", params={"search": "bolt"}, headers=viewer_headers)
        body = response.json()
        assert body["total"] == 1
        assert body["items"][0]["sku"] == "BOLT-10"
        assert body["has_more"] is False

        response = client.put(f"/api/v1/products/{bolt_id}", json={"sell_price": 10}, headers=staff_headers)
        assert response.status_code == 403

        response = client.post("/api/v1/products/", json={"sku": "X", "name": "X"}, headers=viewer_headers)
        assert response.status_code == 403

    def test_missing_product_is_404(self, client, viewer_headers):
        response = client.get("/api/v1/products/999", headers=viewer_headers)
        assert response.status_code == 404
        assert response.json()["detail"] == "Product not found."

    def test_category_and_warehouse_endpoints(self, client, manager_headers, admin_headers, viewer_headers):
        response = client.post("/api/v1/categories/", json={"name": "Tools"}, headers=manager_headers)
        assert response.status_code == 201
        category_id = response.json()["id"]
        assert client.get(f"/api/v1/categories/{category_id}", headers=viewer_headers).status_code == 200
        assert client.delete(f"/api/v1/categories/{category_id}", headers=admin_headers).status_code == 204

        response = client.post(
            "/api/v1/warehouses/", json={"code": "WH-9", "name": "Nine"}, headers=manager_headers
        )
        assert response.status_code == 201
        warehouse_id = response.json()["id"]

        response = client.post(
            "/api/v1/locations/",
            json={"warehouse_id": warehouse_id, "code": "N-01", "name": "Nine one"},
            headers=manager_headers,
        )
        assert response.status_code == 201
        assert response.json()["type"] == "STANDARD"

        response = client.get("/api/v1/warehouses/", headers=viewer_headers)
        assert response.json()["total"] == 1

    def test_customer_and_user_endpoints(self, client, staff_headers, admin_headers, customer):
        response = client.post(
            "/api/v1/customers/",
            json={"code": "CUST-2", "name": "Initech", "credit_limit": 5000},
            headers=staff_headers,
        )
        assert response.status_code == 403

        response = client.post(
            "/api/v1/customers/", json={"code": "CUST-2", "name": "Initech"}, headers=staff_headers
        )
        assert response.status_code == 201

        response = client.post(
            "/api/v1/users/",
            json={"email": "clerk@example.com", "password": "longpassword", "role": "viewer"},
            headers=admin_headers,
        )
        assert response.status_code == 201
        assert response.json()["role"] == "viewer"
        assert "password_hash" not in response.json()

    def test_user_password_length_validated(self, client, admin_headers):
        response = client.post(
            "/api/v1/users/",
            json={"email": "short@example.com", "password": "short"},
            headers=admin_headers,
        )
        assert response.status_code == 422

    def test_new_user_can_log_in(self, client, db_session):
        make_user(db_session, UserRole.VIEWER, "reader@example.com")
        response = client.post(
            "/api/v1/auth/login", json={"email": "reader@example.com", "password": "testpass123"}
        )
        assert response.status_code == 200


# ============== Price history ==============

class TestPriceHistory:
    def test_create_and_pricing_update_are_recorded(self, db_session, staff, manager):
        product = ProductService(db_session, staff).create(
            {"sku": "BOLT-10", "name": "Bolt M10", "cost_price": 40, "sell_price": 90}
        )
        ProductService(db_session, manager).update(product.id, {"sell_price": 120})

        history = ProductService(db_session, staff).price_history(product.id)

        assert [(h["cost_price"], h["sell_price"], h["reason"]) for h in history] == [
            (40, 120, "Direct product update"),
            (40, 90, "Initial product pricing"),
        ]
        assert history[0]["actor_name"] == "Test Manager"
        assert history[1]["actor_name"] == "Test Staff"

    def test_non_pricing_update_adds_nothing(self, db_session, staff):
        service = ProductService(db_session, staff)
        product = service.create({"sku": "BOLT-10", "name": "Bolt M10"})
        service.update(product.id, {"name": "Bolt M10 zinc"})

        assert db_session.query(ProductPriceHistory).filter_by(product_id=product.id).count() == 1

    def test_missing_product(self, db_session, viewer):
        with pytest.raises(NotFoundError, match="Product not found."):
            ProductService(db_session, viewer).price_history(404)

    def test_endpoint(self, client, staff_headers, manager_headers, viewer_headers):
        response = client.post(
            "/api/v1/products/", json={"sku": "BOLT-10", "name": "Bolt M10", "sell_price": 90}, headers=staff_headers
        )
        product_id = response.json()["id"]
        client.put(f"/api/v1/products/{product_id}", json={"cost_price": 55}, headers=manager_headers)

        response = client.get(f"/api/v1/products/{product_id}/price-history", headers=viewer_headers)

        assert response.status_code == 200
        body = response.json()
        assert body["total"] == 2
        assert body["items"][0]["cost_price"] == 55
        assert body["items"][0]["reason"] == "Direct product update"


# ============== Product suppliers ==============

@pytest.fixture
def second_supplier(db_session):
    sup = Supplier(code="SUP-2", name="Beta Parts", is_active=True)
    db_session.add(sup)
    db_session.commit()
    db_session.refresh(sup)
    return sup


class TestProductSuppliers:
    def test_link_then_update_same_pair(self, db_session, staff, product, supplier):
        service = SupplierService(db_session, staff)
        link = service.link_product(
            product.id, supplier.id, {"supplier_sku": " ACME-W1 ", "cost_price": 210, "lead_time_days": 7}
        )
        assert link.supplier_sku == "ACME-W1"

        service.link_product(product.id, supplier.id, {"cost_price": 199, "minimum_order_qty": 12})

        (link,) = service.product_links(product.id)
        assert link.cost_price == 199
        assert link.supplier_sku is None
        assert link.lead_time_days is None
        assert link.minimum_order_qty == Decimal("12")
        assert db_session.query(ActivityLog).filter(ActivityLog.action == "PRODUCT_SUPPLIER_LINKED").count() == 2

    def test_only_one_preferred_supplier(self, db_session, staff, product, supplier, second_supplier):
        service = SupplierService(db_session, staff)
        service.link_product(product.id, supplier.id, {"is_preferred": True})
        service.link_product(product.id, second_supplier.id, {"is_preferred": True})

        links = service.product_links(product.id)

        assert [(link.supplier_id, link.is_preferred) for link in links] == [
            (second_supplier.id, True),
            (supplier.id, False),
        ]

    def test_inactive_supplier_cannot_be_linked(self, db_session, staff, product, supplier):
        supplier.is_active = False
        db_session.commit()
        with pytest.raises(NotFoundError, match="Supplier not found."):
            SupplierService(db_session, staff).link_product(product.id, supplier.id, {})

    def test_negative_terms_rejected(self, db_session, staff, product, supplier):
        with pytest.raises(BusinessRuleError, match="Lead time days cannot be negative."):
            SupplierService(db_session, staff).link_product(product.id, supplier.id, {"lead_time_days": -1})

    def test_viewer_cannot_manage_links(self, db_session, viewer, product, supplier):
        with pytest.raises(PermissionDeniedError, match="manage product supplier links"):
            SupplierService(db_session, viewer).link_product(product.id, supplier.id, {})

    def test_unlink(self, db_session, staff, product, supplier):
        service = SupplierService(db_session, staff)
        service.link_product(product.id, supplier.id, {})
        service.unlink_product(product.id, supplier.id)

        assert db_session.query(ProductSupplier).count() == 0
        with pytest.raises(NotFoundError, match="Product supplier link not found."):
            service.unlink_product(product.id, supplier.id)

    def test_endpoints(self, client, staff_headers, viewer_headers, product, supplier):
        url = f"/api/v1/products/{product.id}/suppliers/{supplier.id}"
        response = client.put(
            url, json={"supplier_sku": "ACME-W1", "cost_price": 210, "is_preferred": True}, headers=staff_headers
        )
        assert response.status_code == 200
        body = response.json()
        assert body["supplier"]["code"] == "SUP-1"
        assert body["is_preferred"] is True

        assert client.put(url, json={"cost_price": -5}, headers=staff_headers).status_code == 422
        assert client.put(url, json={}, headers=viewer_headers).status_code == 403

        response = client.get(f"/api/v1/products/{product.id}/suppliers", headers=staff_headers)
        assert response.json()["total"] == 1
        assert response.json()["items"][0]["supplier_sku"] == "ACME-W1"

        assert client.delete(url, headers=staff_headers).status_code == 204
        assert client.delete(url, headers=staff_headers).status_code == 404
