"""FastAPI routes for class sessions."""

from typing import Optional

from fastapi import APIRouter, Body, Depends, Query
from sqlalchemy.orm import Session
from starlette.responses import Response

from attendguard import qr
from attendguard.auth import ADMIN, INSTRUCTOR, require_role
from attendguard.clock import now_ms
from attendguard.db import get_db
from attendguard.sessions.schemas import (
    GeofenceUpdate,
    QRTokenResponse,
    SessionCreate,
    SessionResponse,
    SessionStart,
    SessionStatsResponse,
    SessionStopResponse,
)
from attendguard.sessions.service import SessionService
from attendguard.tokens.service import to_qr_payload

router = APIRouter(prefix="/sessions", tags=["sessions"])

staff = require_role(INSTRUCTOR, ADMIN)


@router.post("", response_model=SessionResponse, status_code=201)
async def create_session(
    body: SessionCreate,
    db: Session = Depends(get_db),
    current_user: dict = Depends(staff),
):
    """Schedule a session, and by default start it right away."""
    service = SessionService(db)
    options = body.model_dump(exclude={"start"})
    if body.start:
        return service.open(current_user["sub"], **options)
    return service.schedule(current_user["sub"], **options)


@router.get("/{session_id}", response_model=SessionResponse)
async def get_session(
    session_id: str,
    db: Session = Depends(get_db),
    current_user: dict = Depends(staff),
):
    return SessionService(db).get(session_id)


@router.get("/{session_id}/stats", response_model=SessionStatsResponse)
async def get_session_stats(
    session_id: str,
    db: Session = Depends(get_db),
    current_user: dict = Depends(staff),
):
    """Verdict counts and average distance."""
    return SessionService(db).stats(session_id)


@router.post("/{session_id}/start", response_model=SessionResponse)
async def start_session(
    session_id: str,
    body: Optional[SessionStart] = Body(None),
    db: Session = Depends(get_db),
    current_user: dict = Depends(staff),
):
    body = body or SessionStart()
    return SessionService(db).start(session_id, current_user["sub"], **body.model_dump())


@router.put("/{session_id}/stop", response_model=SessionStopResponse)
async def stop_session(
    session_id: str,
    db: Session = Depends(get_db),
    current_user: dict = Depends(staff),
):
    """End the session; stopping an ended session is a no-op."""
    session, changed = SessionService(db).stop(session_id, current_user["sub"])
    return SessionStopResponse(session=session, changed=changed)


@router.patch("/{session_id}/geofence", response_model=SessionResponse)
async def update_geofence(
    session_id: str,
    body: GeofenceUpdate,
    db: Session = Depends(get_db),
    current_user: dict = Depends(staff),
):
    return SessionService(db).update_geofence(session_id, current_user["sub"], **body.model_dump())


def _qr_response(token: dict, output: str):
    payload = to_qr_payload(token)
    if output == "png":
        return Response(
            content=qr.render_png(payload),
            media_type="image/png",
            headers={"Cache-Control": "no-store"},
        )
    return QRTokenResponse(
        payload=payload,
        qr_data=qr.encode_payload(payload),
        expires_at=token["expires_at"],
        refresh_in_ms=max(0, token["expires_at"] - now_ms()),
    )


@router.get("/{session_id}/qr", response_model=None)
async def get_session_qr(
    session_id: str,
    format: str = Query("json", pattern="^(json|png)$", description="json or png"),
    db: Session = Depends(get_db),
    current_user: dict = Depends(staff),
):
    """Live token for the presenting screen; poll it to follow rotations."""
    token = SessionService(db).live_token(session_id, current_user["sub"])
    return _qr_response(token, format)


@router.post("/{session_id}/refresh-qr", response_model=None)
async def refresh_session_qr(
    session_id: str,
    format: str = Query("json", pattern="^(json|png)$"),
    db: Session = Depends(get_db),
    current_user: dict = Depends(staff),
):
    """Force a new token; the previous one stops validating at once."""
    token = SessionService(db).refresh_token(session_id, current_user["sub"])
    return _qr_response(token, format)
