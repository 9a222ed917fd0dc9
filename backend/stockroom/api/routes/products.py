"""Product routes."""

from typing import Optional

from fastapi import APIRouter, Query, Request

from stockroom.core.rate_limit import limiter
from stockroom.core.rbac import CurrentUser
from stockroom.core.responses import list_response, paginated_response
from stockroom.db.session import DbSession
from stockroom.schemas.catalog import PriceHistoryEntry, ProductCreate, ProductResponse, ProductUpdate
from stockroom.schemas.partner import ProductSupplierLink, ProductSupplierResponse
from stockroom.services.activity_log_service import get_request_ip_address
from stockroom.services.catalog_service import ProductService
from stockroom.services.partner_service import SupplierService

router = APIRouter()


@router.get("/")
@limiter.limit("60/minute")
def list_products(
    request: Request,
    db: DbSession,
    current_user: CurrentUser,
    search: Optional[str] = None,
    category_id: Optional[int] = None,
    is_active: Optional[bool] = None,
    is_kit: Optional[bool] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=500),
):
    """List products with optional filtering."""
    products, total = ProductService(db, current_user).list(
        search=search, category_id=category_id, is_active=is_active, is_kit=is_kit, skip=skip, limit=limit
    )
    return paginated_response([ProductResponse.model_validate(p) for p in products], total, skip, limit)


@router.post("/", response_model=ProductResponse, status_code=201)
@limiter.limit("30/minute")
def create_product(request: Request, data: ProductCreate, db: DbSession, current_user: CurrentUser):
    """Create a new product."""
    service = ProductService(db, current_user, get_request_ip_address(request))
    return service.create(data.model_dump())


@router.get("/{product_id}", response_model=ProductResponse)
@limiter.limit("60/minute")
def get_product(request: Request, product_id: int, db: DbSession, current_user: CurrentUser):
    """Get a specific product."""
    return ProductService(db, current_user).get(product_id)


@router.put("/{product_id}", response_model=ProductResponse)
@limiter.limit("30/minute")
def update_product(request: Request, product_id: int, data: ProductUpdate, db: DbSession, current_user: CurrentUser):
    """Update a product.

    Pricing, reorder points, tracking flags and deactivation each need
    their own permission.
    """
    service = ProductService(db, current_user, get_request_ip_address(request))
    return service.update(product_id, data.model_dump(exclude_unset=True))


@router.delete("/{product_id}", status_code=204)
@limiter.limit("30/minute")
def delete_product(request: Request, product_id: int, db: DbSession, current_user: CurrentUser, hard: bool = False):
    """Soft delete a product, or remove it permanently with ``hard=true``."""
    service = ProductService(db, current_user, get_request_ip_address(request))
    service.delete(product_id, hard=hard)


# ==================== PRICE HISTORY & SUPPLIERS ====================

@router.get("/{product_id}/price-history")
@limiter.limit("60/minute")
def get_price_history(request: Request, product_id: int, db: DbSession, current_user: CurrentUser):
    """Cost and selling price changes, newest first."""
    entries = ProductService(db, current_user).price_history(product_id)
    return list_response([PriceHistoryEntry(**entry) for entry in entries])


@router.get("/{product_id}/suppliers")
@limiter.limit("60/minute")
def list_product_suppliers(request: Request, product_id: int, db: DbSession, current_user: CurrentUser):
    """Suppliers linked to a product, preferred first."""
    links = SupplierService(db, current_user).product_links(product_id)
    return list_response([ProductSupplierResponse.model_validate(link) for link in links])


@router.put("/{product_id}/suppliers/{supplier_id}", response_model=ProductSupplierResponse)
@limiter.limit("30/minute")
def link_product_supplier(
    request: Request,
    product_id: int,
    supplier_id: int,
    data: ProductSupplierLink,
    db: DbSession,
    current_user: CurrentUser,
):
    """Create or update a product-supplier link."""
    service = SupplierService(db, current_user, get_request_ip_address(request))
    return service.link_product(product_id, supplier_id, data.model_dump())


@router.delete("/{product_id}/suppliers/{supplier_id}", status_code=204)
@limiter.limit("30/minute")
def unlink_product_supplier(
    request: Request, product_id: int, supplier_id: int, db: DbSession, current_user: CurrentUser
):
    SupplierService(db, current_user, get_request_ip_address(request)).unlink_product(product_id, supplier_id)
