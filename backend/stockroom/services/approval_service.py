"""Approval inbox - everything waiting on a manager's decision."""

import logging
from typing import Any, Dict, List

from sqlalchemy.orm import joinedload

from stockroom.core.permissions import Permission
from stockroom.models.activity_log import ActivityLog
from stockroom.models.purchase_order import POStatus, PurchaseOrder
from stockroom.models.stock import StockItem
from stockroom.services.base import InventoryService
from stockroom.services.errors import PermissionDeniedError
from stockroom.services.stock_ledger_service import (
    ADJUSTMENT_APPROVAL_APPROVED,
    ADJUSTMENT_APPROVAL_REJECTED,
    ADJUSTMENT_APPROVAL_REQUESTED,
    ADJUSTMENT_REQUEST_ENTITY,
)

logger = logging.getLogger(__name__)

INBOX_LIMIT = 200


class ApprovalService(InventoryService):
    """Builds the approvals inbox for the acting user."""

    def inbox(self) -> Dict[str, Any]:
        if not (self.can(Permission.PURCHASE_ORDERS_VIEW_LIST) or self.can(Permission.PRODUCTS_VIEW_DETAIL)):
            raise PermissionDeniedError("You do not have permission to view approvals.")

        submitted_orders = (
            self.db.query(PurchaseOrder)
            .options(joinedload(PurchaseOrder.supplier))
            .filter(PurchaseOrder.status == POStatus.SUBMITTED.value)
            .order_by(PurchaseOrder.created_at.asc(), PurchaseOrder.id.asc())
            .limit(INBOX_LIMIT)
            .all()
        )

        return {
            "capabilities": {
                "can_resolve_purchase_orders": (
                    self.can(Permission.PURCHASE_ORDERS_APPROVE) or self.can(Permission.PURCHASE_ORDERS_REJECT)
                ),
                "can_resolve_adjustments": (
                    self.can(Permission.INVENTORY_ADJUST_APPROVE) or self.can(Permission.INVENTORY_ADJUST_REJECT)
                ),
            },
            "submitted_purchase_orders": submitted_orders,
            "pending_adjustment_requests": self.pending_adjustment_requests(),
        }

    def pending_adjustment_requests(self) -> List[Dict[str, Any]]:
        """Unresolved large-adjustment requests, oldest first."""
        requests = (
            self.db.query(ActivityLog)
            .options(joinedload(ActivityLog.user))
            .filter(
                ActivityLog.action == ADJUSTMENT_APPROVAL_REQUESTED,
                ActivityLog.entity == ADJUSTMENT_REQUEST_ENTITY,
            )
            .order_by(ActivityLog.created_at.asc(), ActivityLog.id.asc())
            .limit(INBOX_LIMIT)
            .all()
        )
        if not requests:
            return []

        resolved = {
            row.entity_id
            for row in self.db.query(ActivityLog.entity_id).filter(
                ActivityLog.entity == ADJUSTMENT_REQUEST_ENTITY,
                ActivityLog.action.in_([ADJUSTMENT_APPROVAL_APPROVED, ADJUSTMENT_APPROVAL_REJECTED]),
                ActivityLog.entity_id.in_([str(r.id) for r in requests]),
            )
        }

        pending = []
        for request in requests:
            if str(request.id) in resolved:
                continue
            payload = request.changes or {}
            stock_item_id = payload.get("stockItemId")
            stock_item = self.db.get(StockItem, stock_item_id) if stock_item_id is not None else None
            if stock_item is None:
                # Bucket gone; nothing left to approve against
                continue
            pending.append(
                {
                    "id": request.id,
                    "created_at": request.created_at,
                    "counted_quantity": payload.get("countedQuantity"),
                    "requested_difference": payload.get("requestedDifference"),
                    "requested_previous_quantity": payload.get("requestedPreviousQuantity"),
                    "reason": payload.get("reason"),
                    "notes": payload.get("notes"),
                    "requested_by": request.user,
                    "stock_item": stock_item,
                }
            )
        return pending
