"""FastAPI routes for reading the audit trail."""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from attendguard.audit.schemas import AuditCategory, AuditEventListResponse
from attendguard.audit.service import AuditService
from attendguard.auth import ADMIN, INSTRUCTOR, get_current_user, require_role
from attendguard.db import get_db

router = APIRouter(prefix="/audit", tags=["audit"])


@router.get("/students/{student_id}", response_model=AuditEventListResponse)
async def get_student_timeline(
    student_id: str,
    category: Optional[AuditCategory] = Query(None, description="Filter by category"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    current_user: dict = Depends(get_current_user),
):
    """Per-student timeline, newest first. Students may only read their own."""
    if current_user.get("role") not in (INSTRUCTOR, ADMIN) and current_user["sub"] != student_id:
        raise HTTPException(status_code=403, detail="Insufficient permissions")
    events, total = AuditService(db).get_student_timeline(
        student_id, category=category, limit=limit, offset=offset
    )
    return AuditEventListResponse(events=events, total=total, limit=limit, offset=offset)


@router.get("/sessions/{session_id}", response_model=AuditEventListResponse)
async def get_session_trail(
    session_id: str,
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    current_user: dict = Depends(require_role(INSTRUCTOR, ADMIN)),
):
    """Everything that happened in one session, in order."""
    events, total = AuditService(db).get_session_trail(session_id, limit=limit, offset=offset)
    return AuditEventListResponse(events=events, total=total, limit=limit, offset=offset)
