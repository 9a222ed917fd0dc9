"""Tests for the permission matrix and the require_permission dependency."""

from types import SimpleNamespace

import pytest

from stockroom.core.permissions import (
    PERMISSION_RULES,
    ROLE_HIERARCHY,
    Permission,
    UserRole,
    can_user,
    role_has_permission,
)


def _user(role, is_active=True):
    return SimpleNamespace(role=role, is_active=is_active)


# ============== Role hierarchy ==============

class TestRoleHierarchy:
    def test_ranks(self):
        assert ROLE_HIERARCHY[UserRole.SUPER_ADMIN] == 5
        assert ROLE_HIERARCHY[UserRole.ADMIN] == 4
        assert ROLE_HIERARCHY[UserRole.MANAGER] == 3
        assert ROLE_HIERARCHY[UserRole.STAFF] == 2
        assert ROLE_HIERARCHY[UserRole.VIEWER] == 1

    def test_every_permission_has_a_rule(self):
        missing = [p for p in Permission if p not in PERMISSION_RULES]
        assert missing == []


# ============== can_user ==============

class TestCanUser:
    @pytest.mark.parametrize("role", ["staff", "manager", "admin", "super_admin"])
    def test_min_staff_allows_staff_and_above(self, role):
        assert can_user(_user(role), Permission.INVENTORY_ADJUST_SMALL)

    def test_min_staff_denies_viewer(self):
        assert not can_user(_user("viewer"), Permission.INVENTORY_ADJUST_SMALL)

    @pytest.mark.parametrize(
        "permission",
        [
            Permission.INVENTORY_ADJUST_APPROVE,
            Permission.INVENTORY_QUARANTINE_RELEASE,
            Permission.INVENTORY_INITIAL_STOCK_ENTRY,
            Permission.PURCHASE_ORDERS_APPROVE,
            Permission.GOODS_RECEIPTS_VOID_REVERSE,
            Permission.SALES_ORDERS_CANCEL,
            Permission.SALES_ORDERS_OVERRIDE_CREDIT_LIMIT,
            Permission.KITS_EDIT_BOM,
            Permission.KITS_DISASSEMBLY_PERFORM,
            Permission.AUDIT_LOG_VIEW_ALL,
        ],
    )
    def test_manager_only_permissions(self, permission):
        assert not can_user(_user("staff"), permission)
        assert can_user(_user("manager"), permission)
        assert can_user(_user("super_admin"), permission)

    def test_viewer_reads_reports(self):
        for permission in (
            Permission.REPORTS_DASHBOARD_KPI_VIEW,
            Permission.REPORTS_INVENTORY_VALUATION_VIEW,
            Permission.REPORTS_STOCK_MOVEMENT_VIEW,
            Permission.REPORTS_AGING_DEAD_STOCK_VIEW,
            Permission.BATCHES_VIEW_DETAILS_HISTORY,
        ):
            assert can_user(_user("viewer"), permission)

    def test_audit_log_delete_allowed_for_nobody(self):
        for role in UserRole:
            assert not can_user(_user(role.value), Permission.AUDIT_LOG_DELETE)

    def test_assign_admin_is_allow_list(self):
        assert can_user(_user("admin"), Permission.USERS_ASSIGN_ADMIN)
        assert can_user(_user("super_admin"), Permission.USERS_ASSIGN_ADMIN)
        assert not can_user(_user("manager"), Permission.USERS_ASSIGN_ADMIN)
        assert not can_user(_user("admin"), Permission.USERS_ASSIGN_SUPER_ADMIN)

    def test_inactive_user_has_no_permissions(self):
        assert not can_user(_user("super_admin", is_active=False), Permission.PRODUCTS_VIEW_LIST)

    def test_unknown_role_denied(self):
        assert not role_has_permission("owner", Permission.PRODUCTS_VIEW_LIST)

    def test_none_user_denied(self):
        assert not can_user(None, Permission.PRODUCTS_VIEW_LIST)


# ============== require_permission over HTTP ==============

class TestRequirePermissionDependency:
    def test_viewer_cannot_adjust_stock(self, client, viewer_headers, stock_item):
        response = client.post(
            f"/api/v1/inventory/stock/{stock_item.id}/adjust",
            json={"counted_quantity": "90", "reason": "DAMAGE"},
            headers=viewer_headers,
        )
        assert response.status_code == 403
        assert response.json()["detail"] == "This adjustment exceeds the configured threshold for your role."

    def test_route_dependency_message(self, client, viewer_headers):
        response = client.get("/api/v1/users/", headers=viewer_headers)
        assert response.status_code == 403
        assert response.json()["detail"] == "You do not have permission to view users."

    def test_dependency_denies_with_action_name(self, client, db_session, viewer, viewer_headers):
        viewer.role = "unknown"
        db_session.commit()
        response = client.get("/api/v1/inventory/stock", headers=viewer_headers)
        assert response.status_code == 403
        assert response.json()["detail"] == "You do not have permission to inventory.stock.overview."
