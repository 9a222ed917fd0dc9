"""
Permission matrix.

Permissions are ``domain.action`` keys. Each one maps to a rule that is
either a minimum role (the role and everything ranked above it) or an
explicit allow-list of roles. ``can_user`` is the single check used by
route dependencies and by services that need a second, conditional check
(large adjustments, credit-limit overrides, expiry dispositions).
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Optional


class UserRole(str, Enum):
    """User roles, lowest to highest authority."""

    VIEWER = "viewer"
    STAFF = "staff"
    MANAGER = "manager"
    ADMIN = "admin"
    SUPER_ADMIN = "super_admin"


ROLE_HIERARCHY = {
    UserRole.VIEWER: 1,
    UserRole.STAFF: 2,
    UserRole.MANAGER: 3,
    UserRole.ADMIN: 4,
    UserRole.SUPER_ADMIN: 5,
}


class Permission(str, Enum):
    """Available permissions in the system."""

    # Users
    USERS_VIEW_LIST = "users.view_list"
    USERS_INVITE_CREATE = "users.invite_create"
    USERS_ASSIGN_ADMIN = "users.assign_admin"
    USERS_ASSIGN_SUPER_ADMIN = "users.assign_super_admin"
    USERS_DEACTIVATE = "users.deactivate"

    # Products & categories
    PRODUCTS_VIEW_LIST = "products.view_list"
    PRODUCTS_VIEW_DETAIL = "products.view_detail"
    PRODUCTS_CREATE = "products.create"
    PRODUCTS_EDIT_DETAILS = "products.edit_details"
    PRODUCTS_EDIT_PRICING = "products.edit_pricing"
    PRODUCTS_EDIT_REORDER_POINTS = "products.edit_reorder_points"
    PRODUCTS_EDIT_TRACKING_FLAGS = "products.edit_tracking_flags"
    PRODUCTS_MARK_INACTIVE = "products.mark_inactive"
    PRODUCTS_DELETE_HARD = "products.delete_hard"
    CATEGORIES_VIEW = "categories.view"
    CATEGORIES_CREATE = "categories.create"
    CATEGORIES_EDIT = "categories.edit"
    CATEGORIES_DELETE = "categories.delete"

    # Warehouses & locations
    WAREHOUSES_VIEW_LIST = "warehouses.view_list"
    WAREHOUSES_VIEW_DETAIL = "warehouses.view_detail"
    WAREHOUSES_CREATE = "warehouses.create"
    WAREHOUSES_EDIT = "warehouses.edit"
    WAREHOUSES_DEACTIVATE = "warehouses.deactivate"
    WAREHOUSES_DELETE = "warehouses.delete"
    LOCATIONS_VIEW = "locations.view"
    LOCATIONS_CREATE = "locations.create"
    LOCATIONS_EDIT = "locations.edit"
    LOCATIONS_SET_TYPE = "locations.set_type"
    LOCATIONS_DEACTIVATE = "locations.deactivate"

    # Inventory & stock
    INVENTORY_STOCK_OVERVIEW = "inventory.stock.overview"
    INVENTORY_STOCK_BY_LOCATION = "inventory.stock.by_location"
    INVENTORY_RESERVED_VIEW = "inventory.reserved.view"
    INVENTORY_ADJUST_SMALL = "inventory.adjust.small"
    INVENTORY_ADJUST_LARGE = "inventory.adjust.large"
    INVENTORY_ADJUST_APPROVE = "inventory.adjust.approve"
    INVENTORY_ADJUST_REJECT = "inventory.adjust.reject"
    INVENTORY_TRANSFER_COMPLETE = "inventory.transfer.complete"
    INVENTORY_CYCLE_COUNT_PERFORM = "inventory.cycle_count.perform"
    INVENTORY_CYCLE_COUNT_SUBMIT_DISCREPANCY = "inventory.cycle_count.submit_discrepancy"
    INVENTORY_HISTORY_ADJUSTMENT_VIEW = "inventory.history.adjustment_view"
    INVENTORY_HISTORY_MOVEMENT_VIEW = "inventory.history.movement_view"
    INVENTORY_INITIAL_STOCK_ENTRY = "inventory.initial_stock_entry"

    # Suppliers
    SUPPLIERS_VIEW_LIST = "suppliers.view_list"
    SUPPLIERS_CREATE = "suppliers.create"
    SUPPLIERS_EDIT = "suppliers.edit"
    SUPPLIERS_DEACTIVATE = "suppliers.deactivate"
    SUPPLIERS_MANAGE_PRODUCT_LINKS = "suppliers.manage_product_links"

    # Purchase orders
    PURCHASE_ORDERS_VIEW_LIST = "purchase_orders.view_list"
    PURCHASE_ORDERS_VIEW_DETAIL = "purchase_orders.view_detail"
    PURCHASE_ORDERS_CREATE_DRAFT = "purchase_orders.create_draft"
    PURCHASE_ORDERS_EDIT_DRAFT = "purchase_orders.edit_draft"
    PURCHASE_ORDERS_SUBMIT_FOR_APPROVAL = "purchase_orders.submit_for_approval"
    PURCHASE_ORDERS_APPROVE = "purchase_orders.approve"
    PURCHASE_ORDERS_REJECT = "purchase_orders.reject"
    PURCHASE_ORDERS_MARK_ORDERED = "purchase_orders.mark_ordered"
    PURCHASE_ORDERS_RECEIVE_GOODS = "purchase_orders.receive_goods"
    PURCHASE_ORDERS_CANCEL = "purchase_orders.cancel"

    # Goods receipts
    GOODS_RECEIPTS_VIEW_LIST = "goods_receipts.view_list"
    GOODS_RECEIPTS_CREATE = "goods_receipts.create"
    GOODS_RECEIPTS_VOID_REVERSE = "goods_receipts.void_reverse"

    # Customers
    CUSTOMERS_VIEW_LIST = "customers.view_list"
    CUSTOMERS_CREATE = "customers.create"
    CUSTOMERS_EDIT = "customers.edit"
    CUSTOMERS_SET_CREDIT_LIMIT = "customers.set_credit_limit"
    CUSTOMERS_DEACTIVATE = "customers.deactivate"

    # Sales orders
    SALES_ORDERS_VIEW_LIST = "sales_orders.view_list"
    SALES_ORDERS_VIEW_DETAIL = "sales_orders.view_detail"
    SALES_ORDERS_CREATE_DRAFT = "sales_orders.create_draft"
    SALES_ORDERS_EDIT_DRAFT = "sales_orders.edit_draft"
    SALES_ORDERS_CONFIRM = "sales_orders.confirm"
    SALES_ORDERS_CREATE_SHIPMENT = "sales_orders.create_shipment"
    SALES_ORDERS_MARK_DELIVERED = "sales_orders.mark_delivered"
    SALES_ORDERS_CANCEL = "sales_orders.cancel"
    SALES_ORDERS_OVERRIDE_CREDIT_LIMIT = "sales_orders.override_credit_limit"
    SALES_ORDERS_DELETE_DRAFT = "sales_orders.delete_draft"

    # Advanced tracking
    BATCHES_VIEW_DETAILS_HISTORY = "batches.view_details_history"
    SERIALS_VIEW_HISTORY = "serials.view_history"
    INVENTORY_REPORT_EXPIRY_VIEW = "inventory.report.expiry_view"
    INVENTORY_QUARANTINE_MOVE = "inventory.quarantine.move"
    INVENTORY_QUARANTINE_RELEASE = "inventory.quarantine.release"
    INVENTORY_QUARANTINE_DISPOSE = "inventory.quarantine.dispose"
    BATCHES_GENEALOGY_VIEW = "batches.genealogy.view"

    # Kits
    KITS_VIEW_LIST = "kits.view_list"
    KITS_VIEW_BOM_DETAIL = "kits.view_bom_detail"
    KITS_EDIT_BOM = "kits.edit_bom"
    KITS_ASSEMBLY_PERFORM = "kits.assembly.perform"
    KITS_DISASSEMBLY_PERFORM = "kits.disassembly.perform"

    # Reports
    REPORTS_DASHBOARD_KPI_VIEW = "reports.dashboard_kpi.view"
    REPORTS_INVENTORY_VALUATION_VIEW = "reports.inventory_valuation.view"
    REPORTS_STOCK_MOVEMENT_VIEW = "reports.stock_movement.view"
    REPORTS_AGING_DEAD_STOCK_VIEW = "reports.aging_dead_stock.view"
    REPORTS_PURCHASE_ANALYTICS_VIEW = "reports.purchase_analytics.view"

    # System settings
    SETTINGS_COMPANY_VIEW = "settings.company.view"
    SETTINGS_COMPANY_EDIT = "settings.company.edit"
    SETTINGS_CURRENCY_SET_DEFAULT = "settings.currency.set_default"
    SETTINGS_NUMBERING_SEQUENCES_CONFIGURE = "settings.numbering_sequences.configure"
    SETTINGS_FISCAL_YEAR_CONFIGURE = "settings.fiscal_year.configure"
    SETTINGS_EMAIL_NOTIFICATIONS_CONFIGURE = "settings.email_notifications.configure"
    SETTINGS_BACKUP_EXPORT = "settings.backup.export"
    SETTINGS_BACKUP_IMPORT_RESTORE = "settings.backup.import_restore"

    # Audit log
    AUDIT_LOG_VIEW_OWN = "audit_log.view_own"
    AUDIT_LOG_VIEW_ALL = "audit_log.view_all"
    AUDIT_LOG_DELETE = "audit_log.delete"


@dataclass(frozen=True)
class PermissionRule:
    """Either a minimum role or an explicit allow-list of roles."""

    min_role: Optional[UserRole] = None
    allowed_roles: Optional[FrozenSet[UserRole]] = None


def MIN(role: UserRole) -> PermissionRule:
    return PermissionRule(min_role=role)


def ONLY(*roles: UserRole) -> PermissionRule:
    return PermissionRule(allowed_roles=frozenset(roles))


VIEWER, STAFF, MANAGER, ADMIN, SUPER_ADMIN = (
    UserRole.VIEWER, UserRole.STAFF, UserRole.MANAGER, UserRole.ADMIN, UserRole.SUPER_ADMIN,
)

PERMISSION_RULES: Dict[Permission, PermissionRule] = {
    # Users
    Permission.USERS_VIEW_LIST: MIN(MANAGER),
    Permission.USERS_INVITE_CREATE: MIN(ADMIN),
    Permission.USERS_ASSIGN_ADMIN: ONLY(SUPER_ADMIN, ADMIN),
    Permission.USERS_ASSIGN_SUPER_ADMIN: ONLY(SUPER_ADMIN),
    Permission.USERS_DEACTIVATE: MIN(ADMIN),

    # Products & categories
    Permission.PRODUCTS_VIEW_LIST: MIN(VIEWER),
    Permission.PRODUCTS_VIEW_DETAIL: MIN(VIEWER),
    Permission.PRODUCTS_CREATE: MIN(STAFF),
    Permission.PRODUCTS_EDIT_DETAILS: MIN(STAFF),
    Permission.PRODUCTS_EDIT_PRICING: MIN(MANAGER),
    Permission.PRODUCTS_EDIT_REORDER_POINTS: MIN(MANAGER),
    Permission.PRODUCTS_EDIT_TRACKING_FLAGS: MIN(MANAGER),
    Permission.PRODUCTS_MARK_INACTIVE: MIN(MANAGER),
    Permission.PRODUCTS_DELETE_HARD: MIN(ADMIN),
    Permission.CATEGORIES_VIEW: MIN(VIEWER),
    Permission.CATEGORIES_CREATE: MIN(MANAGER),
    Permission.CATEGORIES_EDIT: MIN(MANAGER),
    Permission.CATEGORIES_DELETE: MIN(ADMIN),

    # Warehouses & locations
    Permission.WAREHOUSES_VIEW_LIST: MIN(VIEWER),
    Permission.WAREHOUSES_VIEW_DETAIL: MIN(VIEWER),
    Permission.WAREHOUSES_CREATE: MIN(MANAGER),
    Permission.WAREHOUSES_EDIT: MIN(MANAGER),
    Permission.WAREHOUSES_DEACTIVATE: MIN(ADMIN),
    Permission.WAREHOUSES_DELETE: MIN(ADMIN),
    Permission.LOCATIONS_VIEW: MIN(VIEWER),
    Permission.LOCATIONS_CREATE: MIN(MANAGER),
    Permission.LOCATIONS_EDIT: MIN(MANAGER),
    Permission.LOCATIONS_SET_TYPE: MIN(MANAGER),
    Permission.LOCATIONS_DEACTIVATE: MIN(MANAGER),

    # Inventory & stock
    Permission.INVENTORY_STOCK_OVERVIEW: MIN(VIEWER),
    Permission.INVENTORY_STOCK_BY_LOCATION: MIN(VIEWER),
    Permission.INVENTORY_RESERVED_VIEW: MIN(VIEWER),
    Permission.INVENTORY_ADJUST_SMALL: MIN(STAFF),
    Permission.INVENTORY_ADJUST_LARGE: MIN(STAFF),
    Permission.INVENTORY_ADJUST_APPROVE: MIN(MANAGER),
    Permission.INVENTORY_ADJUST_REJECT: MIN(MANAGER),
    Permission.INVENTORY_TRANSFER_COMPLETE: MIN(STAFF),
    Permission.INVENTORY_CYCLE_COUNT_PERFORM: MIN(STAFF),
    Permission.INVENTORY_CYCLE_COUNT_SUBMIT_DISCREPANCY: MIN(STAFF),
    Permission.INVENTORY_HISTORY_ADJUSTMENT_VIEW: MIN(VIEWER),
    Permission.INVENTORY_HISTORY_MOVEMENT_VIEW: MIN(VIEWER),
    Permission.INVENTORY_INITIAL_STOCK_ENTRY: MIN(MANAGER),

    # Suppliers
    Permission.SUPPLIERS_VIEW_LIST: MIN(VIEWER),
    Permission.SUPPLIERS_CREATE: MIN(STAFF),
    Permission.SUPPLIERS_EDIT: MIN(STAFF),
    Permission.SUPPLIERS_DEACTIVATE: MIN(MANAGER),
    Permission.SUPPLIERS_MANAGE_PRODUCT_LINKS: MIN(STAFF),

    # Purchase orders
    Permission.PURCHASE_ORDERS_VIEW_LIST: MIN(VIEWER),
    Permission.PURCHASE_ORDERS_VIEW_DETAIL: MIN(VIEWER),
    Permission.PURCHASE_ORDERS_CREATE_DRAFT: MIN(STAFF),
    Permission.PURCHASE_ORDERS_EDIT_DRAFT: MIN(STAFF),
    Permission.PURCHASE_ORDERS_SUBMIT_FOR_APPROVAL: MIN(STAFF),
    Permission.PURCHASE_ORDERS_APPROVE: MIN(MANAGER),
    Permission.PURCHASE_ORDERS_REJECT: MIN(MANAGER),
    Permission.PURCHASE_ORDERS_MARK_ORDERED: MIN(STAFF),
    Permission.PURCHASE_ORDERS_RECEIVE_GOODS: MIN(STAFF),
    Permission.PURCHASE_ORDERS_CANCEL: MIN(MANAGER),

    # Goods receipts
    Permission.GOODS_RECEIPTS_VIEW_LIST: MIN(VIEWER),
    Permission.GOODS_RECEIPTS_CREATE: MIN(STAFF),
    Permission.GOODS_RECEIPTS_VOID_REVERSE: MIN(MANAGER),

    # Customers
    Permission.CUSTOMERS_VIEW_LIST: MIN(VIEWER),
    Permission.CUSTOMERS_CREATE: MIN(STAFF),
    Permission.CUSTOMERS_EDIT: MIN(STAFF),
    Permission.CUSTOMERS_SET_CREDIT_LIMIT: MIN(MANAGER),
    Permission.CUSTOMERS_DEACTIVATE: MIN(MANAGER),

    # Sales orders
    Permission.SALES_ORDERS_VIEW_LIST: MIN(VIEWER),
    Permission.SALES_ORDERS_VIEW_DETAIL: MIN(VIEWER),
    Permission.SALES_ORDERS_CREATE_DRAFT: MIN(STAFF),
    Permission.SALES_ORDERS_EDIT_DRAFT: MIN(STAFF),
    Permission.SALES_ORDERS_CONFIRM: MIN(STAFF),
    Permission.SALES_ORDERS_CREATE_SHIPMENT: MIN(STAFF),
    Permission.SALES_ORDERS_MARK_DELIVERED: MIN(STAFF),
    Permission.SALES_ORDERS_CANCEL: MIN(MANAGER),
    Permission.SALES_ORDERS_OVERRIDE_CREDIT_LIMIT: MIN(MANAGER),
    Permission.SALES_ORDERS_DELETE_DRAFT: MIN(MANAGER),

    # Advanced tracking
    Permission.BATCHES_VIEW_DETAILS_HISTORY: MIN(VIEWER),
    Permission.SERIALS_VIEW_HISTORY: MIN(VIEWER),
    Permission.INVENTORY_REPORT_EXPIRY_VIEW: MIN(VIEWER),
    Permission.INVENTORY_QUARANTINE_MOVE: MIN(STAFF),
    Permission.INVENTORY_QUARANTINE_RELEASE: MIN(MANAGER),
    Permission.INVENTORY_QUARANTINE_DISPOSE: MIN(MANAGER),
    Permission.BATCHES_GENEALOGY_VIEW: MIN(VIEWER),

    # Kits
    Permission.KITS_VIEW_LIST: MIN(VIEWER),
    Permission.KITS_VIEW_BOM_DETAIL: MIN(VIEWER),
    Permission.KITS_EDIT_BOM: MIN(MANAGER),
    Permission.KITS_ASSEMBLY_PERFORM: MIN(STAFF),
    Permission.KITS_DISASSEMBLY_PERFORM: MIN(MANAGER),

    # Reports
    Permission.REPORTS_DASHBOARD_KPI_VIEW: MIN(VIEWER),
    Permission.REPORTS_INVENTORY_VALUATION_VIEW: MIN(VIEWER),
    Permission.REPORTS_STOCK_MOVEMENT_VIEW: MIN(VIEWER),
    Permission.REPORTS_AGING_DEAD_STOCK_VIEW: MIN(VIEWER),
    Permission.REPORTS_PURCHASE_ANALYTICS_VIEW: MIN(VIEWER),

    # System settings
    Permission.SETTINGS_COMPANY_VIEW: MIN(MANAGER),
    Permission.SETTINGS_COMPANY_EDIT: MIN(ADMIN),
    Permission.SETTINGS_CURRENCY_SET_DEFAULT: MIN(ADMIN),
    Permission.SETTINGS_NUMBERING_SEQUENCES_CONFIGURE: MIN(ADMIN),
    Permission.SETTINGS_FISCAL_YEAR_CONFIGURE: MIN(ADMIN),
    Permission.SETTINGS_EMAIL_NOTIFICATIONS_CONFIGURE: MIN(ADMIN),
    Permission.SETTINGS_BACKUP_EXPORT: MIN(ADMIN),
    Permission.SETTINGS_BACKUP_IMPORT_RESTORE: ONLY(SUPER_ADMIN),

    # Audit log
    Permission.AUDIT_LOG_VIEW_OWN: MIN(VIEWER),
    Permission.AUDIT_LOG_VIEW_ALL: MIN(MANAGER),
    Permission.AUDIT_LOG_DELETE: ONLY(),
}


def role_has_permission(role, permission: Permission) -> bool:
    """Check a role against the rule for ``permission``."""
    try:
        user_role = UserRole(role)
    except ValueError:
        return False

    rule = PERMISSION_RULES.get(permission)
    if rule is None:
        return False

    if rule.allowed_roles is not None:
        return user_role in rule.allowed_roles

    return ROLE_HIERARCHY[user_role] >= ROLE_HIERARCHY[rule.min_role]


def can_user(user, permission: Permission) -> bool:
    """Check whether ``user`` (anything with ``role`` and ``is_active``) holds ``permission``.

    Inactive users hold no permissions.
    """
    if user is None:
        return False
    if getattr(user, "is_active", True) is False:
        return False
    return role_has_permission(getattr(user, "role", None), permission)
