"""Kit routes: bill of materials, assembly, disassembly and genealogy."""

from typing import Optional

from fastapi import APIRouter, Query, Request

from stockroom.core.rate_limit import limiter
from stockroom.core.rbac import CurrentUser
from stockroom.core.responses import list_response
from stockroom.db.session import DbSession
from stockroom.schemas.kit import (
    AssembleRequest,
    AssembleResult,
    BomLine,
    DisassembleRequest,
    DisassembleResult,
    GenealogyEntry,
    KitSummary,
    SetBomRequest,
)
from stockroom.services.activity_log_service import get_request_ip_address
from stockroom.services.kit_service import KitService

router = APIRouter()


def _service(request: Request, db, current_user) -> KitService:
    return KitService(db, current_user, get_request_ip_address(request))


@router.get("/")
@limiter.limit("60/minute")
def list_kits(request: Request, db: DbSession, current_user: CurrentUser):
    """Active kits with their components and available stock."""
    kits = _service(request, db, current_user).list_kits()
    return list_response([KitSummary.model_validate(k, from_attributes=True) for k in kits])


@router.get("/{kit_id}/bom")
@limiter.limit("60/minute")
def get_kit_bom(request: Request, kit_id: int, db: DbSession, current_user: CurrentUser):
    lines = _service(request, db, current_user).get_bom(kit_id)
    return list_response([BomLine.model_validate(line) for line in lines])


@router.put("/{kit_id}/bom")
@limiter.limit("30/minute")
def set_kit_bom(request: Request, kit_id: int, data: SetBomRequest, db: DbSession, current_user: CurrentUser):
    """Replace a kit's components. Circular BOMs are rejected."""
    lines = _service(request, db, current_user).set_bom(kit_id, [c.model_dump() for c in data.components])
    return list_response([BomLine.model_validate(line) for line in lines])


@router.post("/{kit_id}/assemble", response_model=AssembleResult, status_code=201)
@limiter.limit("30/minute")
def assemble_kit(request: Request, kit_id: int, data: AssembleRequest, db: DbSession, current_user: CurrentUser):
    """Consume components first-expired-first-out and book the finished kits."""
    return _service(request, db, current_user).assemble(kit_id, **data.model_dump())


@router.post("/disassemble", response_model=DisassembleResult)
@limiter.limit("30/minute")
def disassemble_kit(request: Request, data: DisassembleRequest, db: DbSession, current_user: CurrentUser):
    return _service(request, db, current_user).disassemble(data.kit_stock_item_id, data.quantity, data.notes)


@router.get("/{kit_id}/genealogy")
@limiter.limit("60/minute")
def kit_genealogy(
    request: Request,
    kit_id: int,
    db: DbSession,
    current_user: CurrentUser,
    batch_number: Optional[str] = None,
    warehouse_id: Optional[int] = None,
    limit: int = Query(50),
):
    """Assembly runs of a kit and the component stock each one consumed."""
    entries = _service(request, db, current_user).genealogy(
        kit_id, batch_number=batch_number, warehouse_id=warehouse_id, limit=limit
    )
    return list_response([GenealogyEntry.model_validate(e) for e in entries])
