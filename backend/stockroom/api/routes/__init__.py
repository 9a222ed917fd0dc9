"""API routes."""

from fastapi import APIRouter

from stockroom.api.routes import (
    activity_logs,
    approvals,
    auth,
    categories,
    customers,
    goods_receipts,
    inventory,
    kits,
    locations,
    products,
    purchase_orders,
    reports,
    sales_orders,
    settings,
    suppliers,
    users,
    warehouses,
)

api_router = APIRouter()

api_router.include_router(auth.router, prefix="/auth", tags=["auth"])
api_router.include_router(users.router, prefix="/users", tags=["users"])
api_router.include_router(categories.router, prefix="/categories", tags=["categories"])
api_router.include_router(products.router, prefix="/products", tags=["products"])
api_router.include_router(warehouses.router, prefix="/warehouses", tags=["warehouses"])
api_router.include_router(locations.router, prefix="/locations", tags=["locations"])
api_router.include_router(suppliers.router, prefix="/suppliers", tags=["suppliers"])
api_router.include_router(customers.router, prefix="/customers", tags=["customers"])
api_router.include_router(inventory.router, prefix="/inventory", tags=["inventory"])
api_router.include_router(goods_receipts.router, prefix="/goods-receipts", tags=["goods-receipts"])
api_router.include_router(purchase_orders.router, prefix="/purchase-orders", tags=["purchase-orders"])
api_router.include_router(sales_orders.router, prefix="/sales-orders", tags=["sales-orders"])
api_router.include_router(kits.router, prefix="/kits", tags=["kits"])
api_router.include_router(reports.router, prefix="/reports", tags=["reports"])
api_router.include_router(approvals.router, prefix="/approvals", tags=["approvals"])
api_router.include_router(activity_logs.router, prefix="/activity-logs", tags=["activity-logs"])
api_router.include_router(settings.router, prefix="/settings", tags=["settings"])
