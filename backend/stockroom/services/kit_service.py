"""Kit Service - bills of materials, assembly and disassembly."""

import logging
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import case
from sqlalchemy.orm import selectinload

from stockroom.core import numbering
from stockroom.core.permissions import Permission
from stockroom.models.product import KitComponent, Product
from stockroom.models.stock import (
    InventoryTransaction,
    MovementType,
    StockItem,
    StockMovement,
    StockStatus,
    TransactionType,
)
from stockroom.services.base import (
    ZERO,
    InventoryService,
    assert_positive_quantity,
    clean_optional,
    format_quantity,
    round_minor,
    to_decimal,
    validate_tracking_fields,
)
from stockroom.services.errors import BusinessRuleError, NotFoundError
from stockroom.services.stock_ledger_service import (
    add_movement,
    assert_serial_available,
    get_active_warehouse,
    get_location_in_warehouse,
    get_stock_item_or_404,
    new_transaction,
    upsert_bucket,
)

logger = logging.getLogger(__name__)


# ===== BOM GRAPH =====


def build_kit_graph(kit_ids: Iterable[int], edges: Iterable[Tuple[int, int]]) -> Dict[int, List[int]]:
    """Adjacency list kit -> components from ``(kit_id, component_id)`` edges."""
    graph: Dict[int, List[int]] = {kit_id: [] for kit_id in kit_ids}
    for kit_id, component_id in edges:
        graph.setdefault(kit_id, []).append(component_id)
    return graph


def has_path(graph: Dict[int, List[int]], start: int, target: int) -> bool:
    """Depth-first search for a path ``start`` => ``target``."""
    visited = set()
    stack = [start]
    while stack:
        current = stack.pop()
        if current in visited:
            continue
        if current == target:
            return True
        visited.add(current)
        stack.extend(graph.get(current, []))
    return False


class KitService(InventoryService):
    """Service for kit BOMs and assembly operations."""

    def _get_kit(self, kit_id: int) -> Product:
        kit = (
            self.db.query(Product)
            .options(selectinload(Product.kit_components).selectinload(KitComponent.component))
            .filter(Product.id == kit_id, Product.deleted_at.is_(None))
            .first()
        )
        if kit is None:
            raise NotFoundError("Kit product not found.")
        return kit

    # ===== QUERIES =====

    def list_kits(self) -> List[Dict[str, Any]]:
        self.require(Permission.KITS_VIEW_LIST, "You do not have permission to view kits.")
        kits = (
            self.db.query(Product)
            .options(selectinload(Product.kit_components).selectinload(KitComponent.component))
            .filter(Product.is_kit.is_(True), Product.is_active.is_(True), Product.deleted_at.is_(None))
            .order_by(Product.name.asc())
            .all()
        )
        rows = []
        for kit in kits:
            buckets = (
                self.db.query(StockItem)
                .filter(StockItem.product_id == kit.id, StockItem.status == StockStatus.AVAILABLE.value)
                .all()
            )
            rows.append(
                {
                    "kit": kit,
                    "components": self._bom_rows(kit),
                    "available_quantity": sum((b.available_quantity for b in buckets), ZERO),
                }
            )
        return rows

    def get_bom(self, kit_id: int) -> List[Dict[str, Any]]:
        self.require(Permission.KITS_VIEW_BOM_DETAIL, "You do not have permission to view kit BOM.")
        return self._bom_rows(self._get_kit(kit_id))

    @staticmethod
    def _bom_rows(kit: Product) -> List[Dict[str, Any]]:
        return [
            {
                "component_id": line.component_id,
                "component_name": line.component.name,
                "component_sku": line.component.sku,
                "component_unit": line.component.unit,
                "quantity_per_kit": to_decimal(line.quantity),
            }
            for line in sorted(kit.kit_components, key=lambda c: c.id)
        ]

    def genealogy(
        self,
        kit_id: int,
        batch_number: Optional[str] = None,
        warehouse_id: Optional[int] = None,
        limit: int = 50,
    ) -> List[Dict[str, Any]]:
        """Assembly outputs of a kit with the component stock each consumed."""
        if not (self.can(Permission.BATCHES_GENEALOGY_VIEW) or self.can(Permission.KITS_VIEW_BOM_DETAIL)):
            self.require(Permission.BATCHES_GENEALOGY_VIEW, "You do not have permission to view kit genealogy.")
        if limit < 1 or limit > 200:
            raise BusinessRuleError("Limit must be between 1 and 200.")

        query = (
            self.db.query(StockMovement)
            .join(InventoryTransaction, StockMovement.inventory_transaction_id == InventoryTransaction.id)
            .options(selectinload(StockMovement.inventory_transaction).selectinload(InventoryTransaction.movements))
            .filter(
                StockMovement.product_id == kit_id,
                StockMovement.type == MovementType.ASSEMBLY.value,
                StockMovement.to_warehouse_id.isnot(None),
                InventoryTransaction.type == TransactionType.ASSEMBLY.value,
            )
        )
        if batch_number:
            query = query.filter(StockMovement.batch_number == batch_number)
        if warehouse_id is not None:
            query = query.filter(StockMovement.to_warehouse_id == warehouse_id)
        outputs = query.order_by(StockMovement.created_at.desc(), StockMovement.id.desc()).limit(limit).all()

        results = []
        for output in outputs:
            consumed = [
                {
                    "component_id": movement.product_id,
                    "component_name": movement.product.name if movement.product else str(movement.product_id),
                    "component_sku": movement.product.sku if movement.product else None,
                    "quantity": to_decimal(movement.quantity),
                    "batch_number": movement.batch_number,
                    "serial_number": movement.serial_number,
                }
                for movement in output.inventory_transaction.movements
                if movement.product_id != kit_id and movement.from_warehouse_id is not None
            ]
            results.append(
                {
                    "transaction_number": output.inventory_transaction.transaction_number,
                    "assembled_at": output.created_at,
                    "assembled_quantity": to_decimal(output.quantity),
                    "assembled_batch_number": output.batch_number,
                    "assembled_serial_number": output.serial_number,
                    "warehouse": output.to_warehouse.name if output.to_warehouse else None,
                    "consumed_components": consumed,
                }
            )
        return results

    # ===== BOM EDITING =====

    def set_bom(self, kit_id: int, components: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Replace a kit's components.

        Each component: ``component_id`` and ``quantity`` per kit.

        Raises:
            BusinessRuleError: if the new BOM would make the kit contain itself,
                directly or through nested kits.
        """
        self.require(Permission.KITS_EDIT_BOM, "You do not have permission to edit kit BOM.")
        kit = self._get_kit(kit_id)
        if not kit.is_kit:
            raise BusinessRuleError("Target product must be marked as a kit.")

        seen = set()
        for component in components:
            component_id = component["component_id"]
            if component_id == kit.id:
                raise BusinessRuleError("A kit cannot include itself as a component.")
            if component_id in seen:
                raise BusinessRuleError("Each component can only appear once in a BOM.")
            seen.add(component_id)
            assert_positive_quantity(component.get("quantity"), "Component quantity")
            product = self.db.get(Product, component_id)
            if product is None or product.is_deleted:
                raise NotFoundError(f"Component product not found: {component_id}")

        kit_ids = [row.id for row in self.db.query(Product.id).filter(Product.is_kit.is_(True), Product.deleted_at.is_(None))]
        edges = [
            (row.kit_id, row.component_id)
            for row in self.db.query(KitComponent.kit_id, KitComponent.component_id).filter(KitComponent.kit_id != kit.id)
        ]
        graph = build_kit_graph(kit_ids, edges)
        graph[kit.id] = [c["component_id"] for c in components]
        for component in components:
            if has_path(graph, component["component_id"], kit.id):
                raise BusinessRuleError("Circular BOM detected. Please remove recursive kit dependencies.")

        before = self._bom_rows(kit)
        with self.atomic():
            kit.kit_components.clear()
            self.db.flush()
            kit.kit_components.extend(
                KitComponent(component_id=c["component_id"], quantity=to_decimal(c["quantity"])) for c in components
            )
            self.db.flush()
            self.db.refresh(kit)
            after = self._bom_rows(kit)
            self.log(
                "KIT_BOM_UPDATED",
                "Product",
                kit.id,
                {
                    "before": {"components": [(r["component_id"], r["quantity_per_kit"]) for r in before]},
                    "after": {"components": [(r["component_id"], r["quantity_per_kit"]) for r in after]},
                },
            )
        return after

    # ===== ASSEMBLY =====

    def _component_buckets(self, product_id: int, warehouse_id: int) -> List[StockItem]:
        return (
            self.db.query(StockItem)
            .filter(
                StockItem.product_id == product_id,
                StockItem.warehouse_id == warehouse_id,
                StockItem.status == StockStatus.AVAILABLE.value,
            )
            .order_by(
                case((StockItem.expiry_date.is_(None), 1), else_=0),
                StockItem.expiry_date.asc(),
                StockItem.created_at.asc(),
                StockItem.id.asc(),
            )
            .all()
        )

    def assemble(
        self,
        kit_id: int,
        warehouse_id: int,
        quantity,
        location_id: Optional[int] = None,
        batch_number: Optional[str] = None,
        serial_number: Optional[str] = None,
        expiry_date=None,
        notes: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Consume components in the warehouse, earliest expiry first, and book kit stock.

        The assembled unit cost is the consumed component cost divided by the
        kit quantity, averaged into the kit bucket by quantity.
        """
        self.require(Permission.KITS_ASSEMBLY_PERFORM, "You do not have permission to assemble kits.")
        quantity = assert_positive_quantity(quantity, "Assembly quantity")
        get_active_warehouse(self.db, warehouse_id)
        get_location_in_warehouse(self.db, location_id, warehouse_id, "Kit location not found in selected warehouse.")
        kit = self._get_kit(kit_id)
        if not kit.is_kit:
            raise NotFoundError("Kit product not found.")
        if not kit.is_active:
            raise BusinessRuleError("Kit product is inactive.")
        if not kit.kit_components:
            raise BusinessRuleError("Kit has no BOM components configured.")

        batch_number = clean_optional(batch_number)
        serial_number = clean_optional(serial_number)
        validate_tracking_fields(kit, batch_number, expiry_date, serial_number, quantity)
        assert_serial_available(self.db, serial_number)

        requirements = []
        for line in kit.kit_components:
            required = to_decimal(line.quantity) * quantity
            available = sum(
                (b.available_quantity for b in self._component_buckets(line.component_id, warehouse_id)), ZERO
            )
            if available < required:
                raise BusinessRuleError(
                    f"Insufficient stock for component {line.component.name}. "
                    f"Required {format_quantity(required)}, available {format_quantity(available)}."
                )
            requirements.append((line, required))

        with self.atomic():
            transaction = new_transaction(
                self.db,
                TransactionType.ASSEMBLY,
                self.actor.id,
                reference_type="KitAssembly",
                reference_id=kit.id,
                notes=notes or "Kit assembly",
                transaction_number=numbering.assembly_number(),
            )
            consumed_cost = ZERO
            line_number = 0
            for line, required in requirements:
                remaining = required
                for bucket in self._component_buckets(line.component_id, warehouse_id):
                    if remaining <= 0:
                        break
                    available = bucket.available_quantity
                    if available <= 0:
                        continue
                    take = min(available, remaining)
                    bucket.quantity = to_decimal(bucket.quantity) - take
                    line_number += 1
                    add_movement(
                        self.db,
                        numbering.movement_number(transaction.transaction_number, line_number),
                        MovementType.ASSEMBLY,
                        bucket.product_id,
                        take,
                        self.actor.id,
                        from_warehouse_id=warehouse_id,
                        batch_number=bucket.batch_number,
                        serial_number=bucket.serial_number,
                        reference_number=transaction.transaction_number,
                        transaction=transaction,
                        notes=notes or "Kit assembly component consumption",
                    )
                    consumed_cost += take * (bucket.unit_cost or 0)
                    remaining -= take
                if remaining > 0:
                    raise BusinessRuleError(
                        f"Failed to consume required quantity for component {line.component.name}."
                    )
            self.db.flush()

            unit_cost = round_minor(consumed_cost / quantity)
            kit_bucket = upsert_bucket(
                self.db,
                product_id=kit.id,
                warehouse_id=warehouse_id,
                location_id=location_id,
                quantity=quantity,
                batch_number=batch_number,
                serial_number=serial_number,
                expiry_date=expiry_date,
                unit_cost=unit_cost,
                weighted_cost=True,
            )
            add_movement(
                self.db,
                f"{transaction.transaction_number}-KIT",
                MovementType.ASSEMBLY,
                kit.id,
                quantity,
                self.actor.id,
                to_warehouse_id=warehouse_id,
                batch_number=batch_number,
                serial_number=serial_number,
                reference_number=transaction.transaction_number,
                transaction=transaction,
                notes=notes or "Kit assembly output",
            )
            self.db.flush()
            self.log(
                "KIT_ASSEMBLED",
                "Product",
                kit.id,
                {
                    "after": {
                        "quantity": quantity,
                        "stock_item_id": kit_bucket.id,
                        "transaction_number": transaction.transaction_number,
                        "unit_cost": unit_cost,
                        "warehouse_id": warehouse_id,
                    }
                },
            )

        logger.info(f"Assembled {format_quantity(quantity)} x kit {kit.sku} in warehouse {warehouse_id}")
        return {
            "assembled_quantity": quantity,
            "assembled_unit_cost": unit_cost,
            "kit_stock_item": kit_bucket,
            "transaction_number": transaction.transaction_number,
        }

    def disassemble(self, kit_stock_item_id: int, quantity, notes: Optional[str] = None) -> Dict[str, Any]:
        """Break kit stock back into components in the same warehouse and location."""
        self.require(Permission.KITS_DISASSEMBLY_PERFORM, "You do not have permission to disassemble kits.")
        quantity = assert_positive_quantity(quantity, "Disassembly quantity")
        kit_bucket = get_stock_item_or_404(self.db, kit_stock_item_id)
        if kit_bucket.status != StockStatus.AVAILABLE.value or kit_bucket.available_quantity < quantity:
            raise BusinessRuleError("Disassembly quantity exceeds available kit stock.")
        kit = self._get_kit(kit_bucket.product_id)
        if not kit.is_kit:
            raise BusinessRuleError("Selected stock item is not a valid kit.")
        if not kit.kit_components:
            raise BusinessRuleError("Kit has no BOM components configured.")

        returned = []
        with self.atomic():
            transaction = new_transaction(
                self.db,
                TransactionType.DISASSEMBLY,
                self.actor.id,
                reference_type="KitDisassembly",
                reference_id=kit_bucket.id,
                notes=notes or "Kit disassembly",
                transaction_number=numbering.disassembly_number(),
            )
            kit_bucket.quantity = to_decimal(kit_bucket.quantity) - quantity
            add_movement(
                self.db,
                f"{transaction.transaction_number}-KIT",
                MovementType.DISASSEMBLY,
                kit.id,
                quantity,
                self.actor.id,
                from_warehouse_id=kit_bucket.warehouse_id,
                batch_number=kit_bucket.batch_number,
                serial_number=kit_bucket.serial_number,
                reference_number=transaction.transaction_number,
                transaction=transaction,
                notes=notes or "Kit disassembly input",
            )
            self.db.flush()

            for line_number, line in enumerate(kit.kit_components, start=1):
                return_quantity: Decimal = to_decimal(line.quantity) * quantity
                component_bucket = upsert_bucket(
                    self.db,
                    product_id=line.component_id,
                    warehouse_id=kit_bucket.warehouse_id,
                    location_id=kit_bucket.location_id,
                    quantity=return_quantity,
                )
                add_movement(
                    self.db,
                    numbering.movement_number(transaction.transaction_number, line_number),
                    MovementType.DISASSEMBLY,
                    line.component_id,
                    return_quantity,
                    self.actor.id,
                    to_warehouse_id=kit_bucket.warehouse_id,
                    reference_number=transaction.transaction_number,
                    transaction=transaction,
                    notes=notes or "Kit disassembly component return",
                )
                returned.append(
                    {
                        "component_id": line.component_id,
                        "component_name": line.component.name,
                        "quantity": return_quantity,
                        "stock_item_id": component_bucket.id,
                    }
                )
            self.db.flush()
            self.log(
                "KIT_DISASSEMBLED",
                "StockItem",
                kit_bucket.id,
                {
                    "after": {
                        "quantity": quantity,
                        "returned_components": len(returned),
                        "transaction_number": transaction.transaction_number,
                    }
                },
            )

        logger.info(f"Disassembled {format_quantity(quantity)} x kit {kit.sku}")
        return {
            "disassembled_quantity": quantity,
            "returned_components": returned,
            "transaction_number": transaction.transaction_number,
            "kit_stock_item": kit_bucket,
        }
