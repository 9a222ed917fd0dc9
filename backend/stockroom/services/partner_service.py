"""Partner Service - suppliers, customers and product-supplier links."""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import joinedload

from stockroom.core.permissions import Permission
from stockroom.models.customer import Customer
from stockroom.models.product import Product, ProductSupplier
from stockroom.models.supplier import Supplier
from stockroom.services.base import InventoryService, to_decimal
from stockroom.services.errors import BusinessRuleError, NotFoundError

logger = logging.getLogger(__name__)


class _PartnerService(InventoryService):
    """Shared CRUD for code-keyed, soft-deletable business partners."""

    model = None
    entity = ""
    label = ""
    view_permission: Permission
    create_permission: Permission
    edit_permission: Permission
    deactivate_permission: Permission

    def get(self, partner_id: int):
        partner = self.db.get(self.model, partner_id)
        if partner is None or partner.is_deleted:
            raise NotFoundError(f"{self.label.capitalize()} not found.")
        return partner

    def list(self, search: Optional[str] = None, active_only: bool = False, skip: int = 0, limit: int = 50):
        self.require(self.view_permission, f"You do not have permission to view {self.label}s.")
        query = self.db.query(self.model).filter(self.model.not_deleted())
        if active_only:
            query = query.filter(self.model.is_active.is_(True))
        if search:
            pattern = f"%{search.strip()}%"
            query = query.filter(
                or_(self.model.code.ilike(pattern), self.model.name.ilike(pattern), self.model.email.ilike(pattern))
            )
        total = query.count()
        partners = query.order_by(self.model.name.asc(), self.model.id.asc()).offset(skip).limit(limit).all()
        return partners, total

    def _check_fields(self, data: Dict[str, Any], partner=None) -> None:
        """Hook for subclass-specific field permissions."""

    def _assert_unique_code(self, code: str) -> None:
        if self.db.query(self.model.id).filter(self.model.code == code).first():
            raise BusinessRuleError(f"{self.label.capitalize()} code '{code}' already exists")

    def create(self, data: Dict[str, Any]):
        self.require(self.create_permission, f"You do not have permission to create {self.label}s.")
        self._check_fields(data)
        self._assert_unique_code(data["code"])

        with self.atomic():
            partner = self.model(**data)
            self.db.add(partner)
            self.db.flush()
            self.log(f"{self.entity.upper()}_CREATED", self.entity, partner.id, {"after": data})
        logger.info(f"{self.entity} {partner.code} created")
        return partner

    def update(self, partner_id: int, data: Dict[str, Any]):
        self.require(self.edit_permission, f"You do not have permission to update {self.label}s.")
        partner = self.get(partner_id)
        self._check_fields(data, partner)
        if data.get("is_active") is False and partner.is_active:
            self.require(self.deactivate_permission, f"You do not have permission to deactivate {self.label}s.")
        if "code" in data and data["code"] != partner.code:
            self._assert_unique_code(data["code"])

        before = {field: getattr(partner, field) for field in data}
        with self.atomic():
            for field, value in data.items():
                setattr(partner, field, value)
            self.db.flush()
            self.log(f"{self.entity.upper()}_UPDATED", self.entity, partner.id, {"before": before, "after": data})
        return partner

    def deactivate(self, partner_id: int):
        """Soft delete: the row stays for historical orders."""
        self.require(self.deactivate_permission, f"You do not have permission to deactivate {self.label}s.")
        partner = self.get(partner_id)
        with self.atomic():
            partner.is_active = False
            partner.soft_delete()
            self.db.flush()
            self.log(f"{self.entity.upper()}_DEACTIVATED", self.entity, partner.id, {"code": partner.code})
        return partner


class SupplierService(_PartnerService):
    model = Supplier
    entity = "Supplier"
    label = "supplier"
    view_permission = Permission.SUPPLIERS_VIEW_LIST
    create_permission = Permission.SUPPLIERS_CREATE
    edit_permission = Permission.SUPPLIERS_EDIT
    deactivate_permission = Permission.SUPPLIERS_DEACTIVATE

    # ===== PRODUCT LINKS =====

    def product_links(self, product_id: int) -> List[ProductSupplier]:
        """Suppliers linked to a product, preferred first."""
        self.require(
            Permission.SUPPLIERS_MANAGE_PRODUCT_LINKS, "You do not have permission to manage product supplier links."
        )
        return (
            self.db.query(ProductSupplier)
            .options(joinedload(ProductSupplier.supplier))
            .filter(ProductSupplier.product_id == product_id)
            .order_by(ProductSupplier.is_preferred.desc(), ProductSupplier.created_at.asc(), ProductSupplier.id.asc())
            .all()
        )

    def link_product(self, product_id: int, supplier_id: int, data: Dict[str, Any]) -> ProductSupplier:
        """Create or update the link between a product and a supplier.

        Marking a link preferred clears the flag on the product's other links.
        """
        self.require(
            Permission.SUPPLIERS_MANAGE_PRODUCT_LINKS, "You do not have permission to manage product supplier links."
        )
        product = self.db.get(Product, product_id)
        if product is None or product.is_deleted:
            raise NotFoundError("Product not found.")
        supplier = self.db.get(Supplier, supplier_id)
        if supplier is None or supplier.is_deleted or not supplier.is_active:
            raise NotFoundError("Supplier not found.")
        for field in ("cost_price", "lead_time_days", "minimum_order_qty"):
            if data.get(field) is not None and to_decimal(data[field]) < 0:
                raise BusinessRuleError(f"{field.replace('_', ' ').capitalize()} cannot be negative.")

        is_preferred = bool(data.get("is_preferred", False))
        with self.atomic():
            if is_preferred:
                self.db.query(ProductSupplier).filter(
                    ProductSupplier.product_id == product.id, ProductSupplier.supplier_id != supplier.id
                ).update({ProductSupplier.is_preferred: False}, synchronize_session="fetch")
            link = (
                self.db.query(ProductSupplier)
                .filter(ProductSupplier.product_id == product.id, ProductSupplier.supplier_id == supplier.id)
                .first()
            )
            if link is None:
                link = ProductSupplier(product_id=product.id, supplier_id=supplier.id)
                self.db.add(link)
            link.supplier_sku = (data.get("supplier_sku") or "").strip() or None
            link.cost_price = data.get("cost_price")
            link.lead_time_days = data.get("lead_time_days")
            link.minimum_order_qty = data.get("minimum_order_qty")
            link.is_preferred = is_preferred
            self.db.flush()
            self.log(
                "PRODUCT_SUPPLIER_LINKED",
                "Product",
                product.id,
                {"after": {"supplier_id": supplier.id, "is_preferred": is_preferred}},
            )
        logger.info(f"Product {product.sku} linked to supplier {supplier.code}")
        return link

    def unlink_product(self, product_id: int, supplier_id: int) -> None:
        self.require(
            Permission.SUPPLIERS_MANAGE_PRODUCT_LINKS, "You do not have permission to manage product supplier links."
        )
        link = (
            self.db.query(ProductSupplier)
            .filter(ProductSupplier.product_id == product_id, ProductSupplier.supplier_id == supplier_id)
            .first()
        )
        if link is None:
            raise NotFoundError("Product supplier link not found.")
        with self.atomic():
            self.db.delete(link)
            self.db.flush()
            self.log("PRODUCT_SUPPLIER_UNLINKED", "Product", product_id, {"before": {"supplier_id": supplier_id}})


class CustomerService(_PartnerService):
    model = Customer
    entity = "Customer"
    label = "customer"
    view_permission = Permission.CUSTOMERS_VIEW_LIST
    create_permission = Permission.CUSTOMERS_CREATE
    edit_permission = Permission.CUSTOMERS_EDIT
    deactivate_permission = Permission.CUSTOMERS_DEACTIVATE

    def _check_fields(self, data: Dict[str, Any], partner=None) -> None:
        if "credit_limit" not in data:
            return
        current = partner.credit_limit if partner is not None else None
        if data["credit_limit"] != current:
            self.require(
                Permission.CUSTOMERS_SET_CREDIT_LIMIT,
                "You do not have permission to set customer credit limits.",
            )
        if data["credit_limit"] is not None and data["credit_limit"] < 0:
            raise BusinessRuleError("Credit limit cannot be negative.")
