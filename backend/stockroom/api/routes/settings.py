"""System settings routes."""

from fastapi import APIRouter, Request

from stockroom.core.rate_limit import limiter
from stockroom.core.rbac import CurrentUser
from stockroom.db.session import DbSession
from stockroom.schemas.settings import SettingsExport, SystemSettings
from stockroom.services.activity_log_service import get_request_ip_address
from stockroom.services.settings_service import SettingsService

router = APIRouter()


@router.get("/", response_model=SystemSettings)
@limiter.limit("60/minute")
def get_system_settings(request: Request, db: DbSession, current_user: CurrentUser):
    return SettingsService(db, current_user).get_settings()


@router.put("/", response_model=SystemSettings)
@limiter.limit("10/minute")
def update_system_settings(request: Request, data: SystemSettings, db: DbSession, current_user: CurrentUser):
    """Replace the whole settings document."""
    return SettingsService(db, current_user, get_request_ip_address(request)).update_settings(data)


@router.get("/export", response_model=SettingsExport)
@limiter.limit("10/minute")
def export_system_settings(request: Request, db: DbSession, current_user: CurrentUser):
    return SettingsService(db, current_user).export_settings()


@router.post("/import", response_model=SystemSettings)
@limiter.limit("5/minute")
def import_system_settings(request: Request, data: SystemSettings, db: DbSession, current_user: CurrentUser):
    """Restore a previously exported settings document."""
    return SettingsService(db, current_user, get_request_ip_address(request)).import_settings(data)
