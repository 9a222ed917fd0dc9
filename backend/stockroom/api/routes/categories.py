"""Category routes."""

from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Request

from stockroom.core.rate_limit import limiter
from stockroom.core.permissions import Permission
from stockroom.core.rbac import CurrentUser, require_permission
from stockroom.core.responses import list_response
from stockroom.db.session import DbSession
from stockroom.models.user import User
from stockroom.schemas.catalog import CategoryCreate, CategoryResponse, CategoryUpdate
from stockroom.services.activity_log_service import get_request_ip_address
from stockroom.services.catalog_service import CategoryService

router = APIRouter()


@router.get("/")
@limiter.limit("60/minute")
def list_categories(request: Request, db: DbSession, current_user: CurrentUser, search: Optional[str] = None):
    """List all categories."""
    categories = CategoryService(db, current_user).list(search=search)
    return list_response([CategoryResponse.model_validate(c) for c in categories])


@router.post("/", response_model=CategoryResponse, status_code=201)
@limiter.limit("30/minute")
def create_category(request: Request, data: CategoryCreate, db: DbSession, current_user: CurrentUser):
    service = CategoryService(db, current_user, get_request_ip_address(request))
    return service.create(data.model_dump())


@router.get("/{category_id}", response_model=CategoryResponse)
@limiter.limit("60/minute")
def get_category(
    request: Request,
    category_id: int,
    db: DbSession,
    current_user: Annotated[User, Depends(require_permission(Permission.CATEGORIES_VIEW))],
):
    return CategoryService(db, current_user).get(category_id)


@router.put("/{category_id}", response_model=CategoryResponse)
@limiter.limit("30/minute")
def update_category(request: Request, category_id: int, data: CategoryUpdate, db: DbSession, current_user: CurrentUser):
    service = CategoryService(db, current_user, get_request_ip_address(request))
    return service.update(category_id, data.model_dump(exclude_unset=True))


@router.delete("/{category_id}", status_code=204)
@limiter.limit("30/minute")
def delete_category(
    request: Request,
    category_id: int,
    db: DbSession,
    current_user: CurrentUser,
    reassign_products_to: Optional[int] = None,
    reassign_children_to: Optional[int] = None,
):
    """Delete a category after moving its products and children elsewhere."""
    service = CategoryService(db, current_user, get_request_ip_address(request))
    service.delete(category_id, reassign_products_to, reassign_children_to)
