"""FastAPI routes for device bindings."""

from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from attendguard.auth import ADMIN, require_role
from attendguard.db import get_db
from attendguard.devices.schemas import SuspiciousDevicesResponse
from attendguard.devices.service import DeviceService
from attendguard.settings import settings

router = APIRouter(prefix="/devices", tags=["devices"])


@router.get("/suspicious", response_model=SuspiciousDevicesResponse)
async def get_suspicious_devices(
    threshold: Optional[int] = Query(None, ge=0, le=100, description="Trust score cut-off"),
    limit: int = Query(100, ge=1, le=500),
    db: Session = Depends(get_db),
    current_user: dict = Depends(require_role(ADMIN)),
):
    """Devices whose trust has decayed below the threshold."""
    threshold = settings.trust_floor if threshold is None else threshold
    devices = DeviceService(db).suspicious_devices(threshold, limit=limit)
    return SuspiciousDevicesResponse(threshold=threshold, devices=devices)
