# Services module

from stockroom.services.activity_log_service import ActivityLogService, get_request_ip_address, log_activity
from stockroom.services.approval_service import ApprovalService
from stockroom.services.catalog_service import CategoryService, ProductService
from stockroom.services.errors import (
    BusinessRuleError,
    ConcurrencyError,
    InsufficientStockError,
    InventoryError,
    NotFoundError,
    PermissionDeniedError,
)
from stockroom.services.fefo import allocate_fefo
from stockroom.services.kit_service import KitService
from stockroom.services.partner_service import CustomerService, SupplierService
from stockroom.services.purchase_order_service import PurchaseOrderService
from stockroom.services.report_service import ReportService
from stockroom.services.sales_order_service import SalesOrderService
from stockroom.services.stock_ledger_service import StockLedgerService
from stockroom.services.user_service import UserService
from stockroom.services.warehouse_service import WarehouseService

__all__ = [
    "ActivityLogService",
    "ApprovalService",
    "BusinessRuleError",
    "CategoryService",
    "ConcurrencyError",
    "CustomerService",
    "InsufficientStockError",
    "InventoryError",
    "KitService",
    "NotFoundError",
    "PermissionDeniedError",
    "ProductService",
    "PurchaseOrderService",
    "ReportService",
    "SalesOrderService",
    "StockLedgerService",
    "SupplierService",
    "UserService",
    "WarehouseService",
    "allocate_fefo",
    "get_request_ip_address",
    "log_activity",
]
