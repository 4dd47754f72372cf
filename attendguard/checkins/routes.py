"""FastAPI routes for student check-ins."""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from attendguard.auth import STUDENT, require_role
from attendguard.checkins.service import CheckInService
from attendguard.db import get_db
from attendguard.schemas import CheckInRequest, CheckInResponse

router = APIRouter(prefix="/checkins", tags=["checkins"])


@router.post("", response_model=CheckInResponse, response_model_by_alias=True)
async def submit_checkin(
    request: CheckInRequest,
    db: Session = Depends(get_db),
    current_user: dict = Depends(require_role(STUDENT)),
):
    """Score a scanned code plus location and device for the calling student."""
    return CheckInService(db).submit(request, current_user["sub"])
