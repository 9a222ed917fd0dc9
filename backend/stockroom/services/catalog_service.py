"""Catalog Service - categories and products.

Product updates are checked field by field: pricing, reorder points,
tracking flags and the kit flag each need their own permission on top of
``products.edit_details``. Every pricing change appends a price history row.
"""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import joinedload

from stockroom.core.permissions import Permission
from stockroom.models.product import Category, Product, ProductPriceHistory
from stockroom.models.stock import StockItem
from stockroom.services.base import InventoryService
from stockroom.services.errors import BusinessRuleError, NotFoundError

logger = logging.getLogger(__name__)

PRICING_FIELDS = {"cost_price", "sell_price"}
REORDER_FIELDS = {"reorder_point"}
TRACKING_FIELDS = {"track_by_batch", "track_by_expiry", "track_by_serial_number"}
KIT_FIELDS = {"is_kit"}


def _changed(entity, data: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
    before, after = {}, {}
    for field, value in data.items():
        if getattr(entity, field) != value:
            before[field] = getattr(entity, field)
            after[field] = value
    return {"before": before, "after": after}


class CategoryService(InventoryService):
    """Product categories, optionally nested."""

    def get(self, category_id: int) -> Category:
        category = self.db.get(Category, category_id)
        if category is None:
            raise NotFoundError("Category not found.")
        return category

    def list(self, search: Optional[str] = None):
        self.require(Permission.CATEGORIES_VIEW, "You do not have permission to view categories.")
        query = self.db.query(Category)
        if search:
            query = query.filter(Category.name.ilike(f"%{search.strip()}%"))
        return query.order_by(Category.name.asc()).all()

    def _assert_parent(self, category_id: Optional[int], parent_id: Optional[int]) -> None:
        if parent_id is None:
            return
        if category_id is not None and parent_id == category_id:
            raise BusinessRuleError("A category cannot be its own parent.")
        parent = self.db.get(Category, parent_id)
        if parent is None:
            raise BusinessRuleError("Selected parent category does not exist.")
        # Walk up from the new parent; meeting ourselves means a cycle
        seen = set()
        while parent is not None and parent.id not in seen:
            if category_id is not None and parent.id == category_id:
                raise BusinessRuleError("Category hierarchy cannot contain cycles.")
            seen.add(parent.id)
            parent = parent.parent

    def create(self, data: Dict[str, Any]) -> Category:
        self.require(Permission.CATEGORIES_CREATE, "You do not have permission to create categories.")
        if self.db.query(Category.id).filter(Category.name == data["name"]).first():
            raise BusinessRuleError(f"Category '{data['name']}' already exists")
        self._assert_parent(None, data.get("parent_id"))

        with self.atomic():
            category = Category(**data)
            self.db.add(category)
            self.db.flush()
            self.log("CATEGORY_CREATED", "Category", category.id, {"after": data})
        return category

    def update(self, category_id: int, data: Dict[str, Any]) -> Category:
        self.require(Permission.CATEGORIES_EDIT, "You do not have permission to update categories.")
        category = self.get(category_id)
        if "name" in data and data["name"] != category.name:
            if self.db.query(Category.id).filter(Category.name == data["name"]).first():
                raise BusinessRuleError(f"Category '{data['name']}' already exists")
        if "parent_id" in data:
            self._assert_parent(category.id, data["parent_id"])

        changes = _changed(category, data)
        with self.atomic():
            for field, value in data.items():
                setattr(category, field, value)
            self.db.flush()
            self.log("CATEGORY_UPDATED", "Category", category.id, changes)
        return category

    def delete(
        self,
        category_id: int,
        reassign_products_to: Optional[int] = None,
        reassign_children_to: Optional[int] = None,
    ) -> None:
        """Delete a category, moving its products and children elsewhere first."""
        self.require(Permission.CATEGORIES_DELETE, "You do not have permission to delete categories.")
        category = self.get(category_id)
        products = self.db.query(Product).filter(Product.category_id == category.id, Product.not_deleted()).all()
        children = self.db.query(Category).filter(Category.parent_id == category.id).all()

        if products and reassign_products_to is None:
            raise BusinessRuleError(
                f"Category has {len(products)} active product(s). Reassign products before deleting."
            )
        if children and reassign_children_to is None:
            raise BusinessRuleError(
                f"Category has {len(children)} child category(ies). Reassign children before deleting."
            )
        if reassign_products_to == category.id:
            raise BusinessRuleError("Products cannot be reassigned to the same category being deleted.")
        if reassign_children_to == category.id:
            raise BusinessRuleError("Child categories cannot be reassigned to the same category being deleted.")
        for target in (reassign_products_to, reassign_children_to):
            if target is not None:
                self.get(target)

        with self.atomic():
            for product in products:
                product.category_id = reassign_products_to
            for child in children:
                child.parent_id = reassign_children_to
            self.db.flush()
            name = category.name
            self.db.delete(category)
            self.db.flush()
            self.log(
                "CATEGORY_DELETED",
                "Category",
                category_id,
                {"name": name, "products_reassigned": len(products), "children_reassigned": len(children)},
            )


class ProductService(InventoryService):
    """Products and their tracking configuration."""

    def get(self, product_id: int) -> Product:
        self.require(Permission.PRODUCTS_VIEW_DETAIL, "You do not have permission to view products.")
        product = self.db.get(Product, product_id)
        if product is None or product.is_deleted:
            raise NotFoundError("Product not found.")
        return product

    def list(
        self,
        search: Optional[str] = None,
        category_id: Optional[int] = None,
        is_active: Optional[bool] = None,
        is_kit: Optional[bool] = None,
        skip: int = 0,
        limit: int = 50,
    ):
        self.require(Permission.PRODUCTS_VIEW_LIST, "You do not have permission to view products.")
        query = self.db.query(Product).filter(Product.not_deleted())
        if search:
            pattern = f"%{search.strip()}%"
            query = query.filter(or_(Product.name.ilike(pattern), Product.sku.ilike(pattern)))
        if category_id is not None:
            query = query.filter(Product.category_id == category_id)
        if is_active is not None:
            query = query.filter(Product.is_active.is_(is_active))
        if is_kit is not None:
            query = query.filter(Product.is_kit.is_(is_kit))
        total = query.count()
        products = query.order_by(Product.name.asc(), Product.id.asc()).offset(skip).limit(limit).all()
        return products, total

    def _assert_category(self, category_id: Optional[int]) -> None:
        if category_id is not None and self.db.get(Category, category_id) is None:
            raise BusinessRuleError("Selected category does not exist.")

    def _assert_unique_sku(self, sku: str, exclude_id: Optional[int] = None) -> None:
        existing = self.db.query(Product.id).filter(Product.sku == sku).first()
        if existing and existing.id != exclude_id:
            raise BusinessRuleError(f'A product with SKU "{sku}" already exists.')

    def _assert_field_permissions(self, fields: set) -> None:
        if fields & PRICING_FIELDS:
            self.require(Permission.PRODUCTS_EDIT_PRICING, "You do not have permission to update product pricing.")
        if fields & REORDER_FIELDS:
            self.require(
                Permission.PRODUCTS_EDIT_REORDER_POINTS, "You do not have permission to update reorder thresholds."
            )
        if fields & (TRACKING_FIELDS | KIT_FIELDS):
            self.require(
                Permission.PRODUCTS_EDIT_TRACKING_FLAGS, "You do not have permission to update tracking fields."
            )

    def create(self, data: Dict[str, Any]) -> Product:
        self.require(Permission.PRODUCTS_CREATE, "You do not have permission to create products.")
        flagged = {field for field in TRACKING_FIELDS | KIT_FIELDS if data.get(field)}
        if flagged:
            self._assert_field_permissions(flagged)
        self._assert_unique_sku(data["sku"])
        self._assert_category(data.get("category_id"))

        try:
            with self.atomic():
                product = Product(**data)
                self.db.add(product)
                self.db.flush()
                self._record_price(product, "Initial product pricing")
                self.log("PRODUCT_CREATED", "Product", product.id, {"after": {"name": product.name, "sku": product.sku}})
        except IntegrityError:
            raise BusinessRuleError(f'A product with SKU "{data["sku"]}" already exists.')

        logger.info(f"Product {product.sku} created")
        return product

    def update(self, product_id: int, data: Dict[str, Any]) -> Product:
        self.require(Permission.PRODUCTS_EDIT_DETAILS, "You do not have permission to update products.")
        product = self.get(product_id)
        changes = _changed(product, data)
        changed_fields = set(changes["after"])
        self._assert_field_permissions(changed_fields)
        if changes["after"].get("is_active") is False:
            self.require(Permission.PRODUCTS_MARK_INACTIVE, "You do not have permission to update product status.")

        if changed_fields & TRACKING_FIELDS:
            has_stock = self.db.query(StockItem.id).filter(StockItem.product_id == product.id).first()
            if has_stock:
                raise BusinessRuleError(
                    "Tracking settings cannot be changed after stock has been recorded for this product."
                )
        if "sku" in changed_fields:
            self._assert_unique_sku(data["sku"], exclude_id=product.id)
        if "category_id" in changed_fields:
            self._assert_category(data["category_id"])

        with self.atomic():
            for field, value in data.items():
                setattr(product, field, value)
            self.db.flush()
            if changed_fields & PRICING_FIELDS:
                self._record_price(product, "Direct product update")
            self.log("PRODUCT_UPDATED", "Product", product.id, changes)
        return product

    def _record_price(self, product: Product, reason: str) -> None:
        self.db.add(
            ProductPriceHistory(
                product_id=product.id,
                cost_price=product.cost_price or 0,
                sell_price=product.sell_price or 0,
                reason=reason,
                changed_by=self.actor.id if self.actor else None,
            )
        )

    def price_history(self, product_id: int) -> List[Dict[str, Any]]:
        """Price changes for a product, newest first."""
        self.require(Permission.PRODUCTS_VIEW_DETAIL, "You do not have permission to view product history.")
        product = self.get(product_id)
        entries = (
            self.db.query(ProductPriceHistory)
            .options(joinedload(ProductPriceHistory.changed_by_user))
            .filter(ProductPriceHistory.product_id == product.id)
            .order_by(ProductPriceHistory.effective_at.desc(), ProductPriceHistory.id.desc())
            .all()
        )
        return [
            {
                "cost_price": entry.cost_price,
                "sell_price": entry.sell_price,
                "reason": entry.reason,
                "effective_at": entry.effective_at,
                "created_at": entry.created_at,
                "actor_name": entry.changed_by_user.display_name if entry.changed_by_user else None,
            }
            for entry in entries
        ]

    def delete(self, product_id: int, hard: bool = False) -> None:
        """Soft delete (deactivate) a product, or remove it with ``hard``."""
        permission = Permission.PRODUCTS_DELETE_HARD if hard else Permission.PRODUCTS_MARK_INACTIVE
        self.require(permission, "You do not have permission to delete products.")
        product = self.db.get(Product, product_id)
        if product is None or product.is_deleted:
            raise NotFoundError("Product not found.")

        name, sku = product.name, product.sku
        try:
            with self.atomic():
                if hard:
                    self.db.delete(product)
                else:
                    product.soft_delete()
                    product.is_active = False
                self.db.flush()
                self.log(
                    "PRODUCT_DELETED_HARD" if hard else "PRODUCT_DELETED",
                    "Product",
                    product_id,
                    {"hard_delete": hard, "product_name": name, "sku": sku},
                )
        except IntegrityError:
            raise BusinessRuleError("Product is referenced by stock or orders and cannot be deleted permanently.")
