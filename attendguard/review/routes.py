"""FastAPI routes for the review queue."""

from typing import Optional

from fastapi import APIRouter, Body, Depends, Query
from sqlalchemy.orm import Session

from attendguard.auth import ADMIN, INSTRUCTOR, require_role
from attendguard.db import get_db
from attendguard.review.schemas import (
    BulkReviewResponse,
    FlaggedAttemptsResponse,
    PendingAttemptResponse,
    ReviewDecision,
    ReviewQueueResponse,
)
from attendguard.review.service import ReviewService
from attendguard.schemas import Flag

router = APIRouter(tags=["review"])

staff = require_role(INSTRUCTOR, ADMIN)


@router.get("/sessions/{session_id}/review", response_model=ReviewQueueResponse)
async def get_review_queue(
    session_id: str,
    db: Session = Depends(get_db),
    current_user: dict = Depends(staff),
):
    """Attempts of the session waiting for a decision."""
    pending = ReviewService(db).pending(session_id, current_user["sub"])
    return ReviewQueueResponse(session_id=session_id, pending=pending, total=len(pending))


@router.get("/review/flagged", response_model=FlaggedAttemptsResponse)
async def get_flagged_attempts(
    session_id: Optional[str] = Query(None, alias="sessionId", description="Limit to one session"),
    flag: Optional[Flag] = Query(None, description="Only attempts carrying this flag"),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    current_user: dict = Depends(require_role(ADMIN)),
):
    """Suspicious and flagged attempts across sessions, newest first."""
    attempts = ReviewService(db).flagged(
        session_id, flag.value if flag else None, limit=limit, offset=offset
    )
    return FlaggedAttemptsResponse(
        session_id=session_id, flag=flag, attempts=attempts, total=len(attempts)
    )


@router.post("/review/{attempt_id}/accept", response_model=PendingAttemptResponse)
async def accept_attempt(
    attempt_id: str,
    body: Optional[ReviewDecision] = Body(None),
    db: Session = Depends(get_db),
    current_user: dict = Depends(staff),
):
    note = body.note if body else None
    return ReviewService(db).accept_one(attempt_id, current_user["sub"], note)


@router.post("/review/{attempt_id}/reject", response_model=PendingAttemptResponse)
async def reject_attempt(
    attempt_id: str,
    body: Optional[ReviewDecision] = Body(None),
    db: Session = Depends(get_db),
    current_user: dict = Depends(staff),
):
    note = body.note if body else None
    return ReviewService(db).reject_one(attempt_id, current_user["sub"], note)


def _bulk(session_id: str, results: list) -> BulkReviewResponse:
    decided = sum(1 for r in results if r["ok"])
    return BulkReviewResponse(
        session_id=session_id, results=results, decided=decided, failed=len(results) - decided
    )


@router.post("/sessions/{session_id}/review/accept-all", response_model=BulkReviewResponse)
async def accept_all(
    session_id: str,
    body: Optional[ReviewDecision] = Body(None),
    db: Session = Depends(get_db),
    current_user: dict = Depends(staff),
):
    note = body.note if body else None
    return _bulk(session_id, ReviewService(db).accept_all(session_id, current_user["sub"], note))


@router.post("/sessions/{session_id}/review/reject-all", response_model=BulkReviewResponse)
async def reject_all(
    session_id: str,
    body: Optional[ReviewDecision] = Body(None),
    db: Session = Depends(get_db),
    current_user: dict = Depends(staff),
):
    note = body.note if body else None
    return _bulk(session_id, ReviewService(db).reject_all(session_id, current_user["sub"], note))
