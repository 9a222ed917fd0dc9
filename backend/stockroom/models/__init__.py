"""SQLAlchemy models."""

from stockroom.models.user import User
from stockroom.models.product import Category, KitComponent, Product, ProductPriceHistory, ProductSupplier
from stockroom.models.warehouse import Location, LocationType, Warehouse
from stockroom.models.supplier import Supplier
from stockroom.models.customer import Customer
from stockroom.models.stock import (
    AdjustmentReason,
    InventoryAdjustment,
    InventoryTransaction,
    MovementType,
    StockItem,
    StockMovement,
    StockSnapshot,
    StockStatus,
    TransactionType,
)
from stockroom.models.purchase_order import (
    GoodsReceipt,
    GoodsReceiptItem,
    POStatus,
    PurchaseOrder,
    PurchaseOrderItem,
)
from stockroom.models.sales_order import (
    SalesOrder,
    SalesOrderItem,
    SalesOrderStatus,
    Shipment,
    ShipmentItem,
    ShipmentStatus,
)
from stockroom.models.activity_log import ActivityLog
from stockroom.models.system_setting import SystemSetting

__all__ = [
    "User",
    "Category",
    "Product",
    "KitComponent",
    "ProductSupplier",
    "ProductPriceHistory",
    "Warehouse",
    "Location",
    "LocationType",
    "Supplier",
    "Customer",
    "StockItem",
    "StockStatus",
    "StockMovement",
    "MovementType",
    "InventoryTransaction",
    "TransactionType",
    "InventoryAdjustment",
    "AdjustmentReason",
    "StockSnapshot",
    "PurchaseOrder",
    "PurchaseOrderItem",
    "POStatus",
    "GoodsReceipt",
    "GoodsReceiptItem",
    "SalesOrder",
    "SalesOrderItem",
    "SalesOrderStatus",
    "Shipment",
    "ShipmentItem",
    "ShipmentStatus",
    "ActivityLog",
    "SystemSetting",
]
