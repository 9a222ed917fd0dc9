"""Warehouse Service - warehouses and their storage locations."""

import logging
from typing import Any, Dict, Optional

from sqlalchemy import or_

from stockroom.core.permissions import Permission
from stockroom.models.stock import StockItem
from stockroom.models.warehouse import Location, LocationType, Warehouse
from stockroom.services.base import InventoryService
from stockroom.services.errors import BusinessRuleError, NotFoundError

logger = logging.getLogger(__name__)


class WarehouseService(InventoryService):
    """Warehouse and location master data."""

    # ===== WAREHOUSES =====

    def get_warehouse(self, warehouse_id: int) -> Warehouse:
        warehouse = self.db.get(Warehouse, warehouse_id)
        if warehouse is None or warehouse.is_deleted:
            raise NotFoundError("Warehouse not found.")
        return warehouse

    def list_warehouses(self, search: Optional[str] = None, active_only: bool = False):
        self.require(Permission.WAREHOUSES_VIEW_LIST, "You do not have permission to view warehouses.")
        query = self.db.query(Warehouse).filter(Warehouse.not_deleted())
        if active_only:
            query = query.filter(Warehouse.is_active.is_(True))
        if search:
            pattern = f"%{search.strip()}%"
            query = query.filter(or_(Warehouse.code.ilike(pattern), Warehouse.name.ilike(pattern)))
        return query.order_by(Warehouse.name.asc()).all()

    def create_warehouse(self, data: Dict[str, Any]) -> Warehouse:
        self.require(Permission.WAREHOUSES_CREATE, "You do not have permission to create warehouses.")
        if self.db.query(Warehouse.id).filter(Warehouse.code == data["code"]).first():
            raise BusinessRuleError(f"Warehouse code '{data['code']}' already exists")

        with self.atomic():
            warehouse = Warehouse(**data)
            self.db.add(warehouse)
            self.db.flush()
            self.log("WAREHOUSE_CREATED", "Warehouse", warehouse.id, {"after": data})
        logger.info(f"Warehouse {warehouse.code} created")
        return warehouse

    def update_warehouse(self, warehouse_id: int, data: Dict[str, Any]) -> Warehouse:
        self.require(Permission.WAREHOUSES_EDIT, "You do not have permission to update warehouses.")
        warehouse = self.get_warehouse(warehouse_id)
        if data.get("is_active") is False and warehouse.is_active:
            self.require(Permission.WAREHOUSES_DEACTIVATE, "You do not have permission to deactivate warehouses.")
        if "code" in data and data["code"] != warehouse.code:
            if self.db.query(Warehouse.id).filter(Warehouse.code == data["code"]).first():
                raise BusinessRuleError(f"Warehouse code '{data['code']}' already exists")

        before = {field: getattr(warehouse, field) for field in data}
        with self.atomic():
            for field, value in data.items():
                setattr(warehouse, field, value)
            self.db.flush()
            self.log("WAREHOUSE_UPDATED", "Warehouse", warehouse.id, {"before": before, "after": data})
        return warehouse

    def delete_warehouse(self, warehouse_id: int) -> None:
        self.require(Permission.WAREHOUSES_DELETE, "You do not have permission to delete warehouses.")
        warehouse = self.get_warehouse(warehouse_id)
        holds_stock = (
            self.db.query(StockItem.id)
            .filter(StockItem.warehouse_id == warehouse.id, StockItem.quantity > 0)
            .first()
        )
        if holds_stock:
            raise BusinessRuleError("Warehouse still holds stock and cannot be deleted.")

        with self.atomic():
            warehouse.soft_delete()
            warehouse.is_active = False
            self.db.flush()
            self.log("WAREHOUSE_DELETED", "Warehouse", warehouse.id, {"code": warehouse.code})

    # ===== LOCATIONS =====

    def get_location(self, location_id: int) -> Location:
        location = self.db.get(Location, location_id)
        if location is None:
            raise NotFoundError("Location not found.")
        return location

    def list_locations(self, warehouse_id: Optional[int] = None, type: Optional[str] = None, active_only: bool = False):
        self.require(Permission.LOCATIONS_VIEW, "You do not have permission to view locations.")
        query = self.db.query(Location)
        if warehouse_id is not None:
            query = query.filter(Location.warehouse_id == warehouse_id)
        if type:
            query = query.filter(Location.type == type)
        if active_only:
            query = query.filter(Location.is_active.is_(True))
        return query.order_by(Location.code.asc()).all()

    @staticmethod
    def _location_type(value: str) -> str:
        try:
            return LocationType(value).value
        except ValueError:
            raise BusinessRuleError("Invalid location type.")

    def create_location(self, data: Dict[str, Any]) -> Location:
        self.require(Permission.LOCATIONS_CREATE, "You do not have permission to create locations.")
        self.get_warehouse(data["warehouse_id"])
        if self.db.query(Location.id).filter(Location.code == data["code"]).first():
            raise BusinessRuleError(f"Location code '{data['code']}' already exists")
        location_type = self._location_type(data.get("type") or LocationType.STANDARD.value)
        if location_type != LocationType.STANDARD.value:
            self.require(Permission.LOCATIONS_SET_TYPE, "You do not have permission to set location types.")

        with self.atomic():
            location = Location(**{**data, "type": location_type})
            self.db.add(location)
            self.db.flush()
            self.log("LOCATION_CREATED", "Location", location.id, {"after": {**data, "type": location_type}})
        return location

    def update_location(self, location_id: int, data: Dict[str, Any]) -> Location:
        self.require(Permission.LOCATIONS_EDIT, "You do not have permission to update locations.")
        location = self.get_location(location_id)
        if "type" in data:
            data = {**data, "type": self._location_type(data["type"])}
            if data["type"] != location.type:
                self.require(Permission.LOCATIONS_SET_TYPE, "You do not have permission to set location types.")
        if data.get("is_active") is False and location.is_active:
            self.require(Permission.LOCATIONS_DEACTIVATE, "You do not have permission to deactivate locations.")
        if "warehouse_id" in data and data["warehouse_id"] != location.warehouse_id:
            self.get_warehouse(data["warehouse_id"])
            if self.db.query(StockItem.id).filter(StockItem.location_id == location.id).first():
                raise BusinessRuleError("Location holds stock and cannot be moved to another warehouse.")
        if "code" in data and data["code"] != location.code:
            if self.db.query(Location.id).filter(Location.code == data["code"]).first():
                raise BusinessRuleError(f"Location code '{data['code']}' already exists")

        before = {field: getattr(location, field) for field in data}
        with self.atomic():
            for field, value in data.items():
                setattr(location, field, value)
            self.db.flush()
            self.log("LOCATION_UPDATED", "Location", location.id, {"before": before, "after": data})
        return location
