"""Pydantic schemas for the review queue."""
from typing import List, Optional

from pydantic import BaseModel, Field

from attendguard.schemas import Flag, Verdict


class PendingAttemptResponse(BaseModel):
    """Schema for an attempt awaiting review."""
    id: str
    session_id: str
    student_id: str
    latitude: float
    longitude: float
    accuracy: Optional[float] = None
    distance_m: float
    trust_score: Optional[int] = None
    flags: List[str] = Field(default_factory=list)
    verdict: Verdict
    message: Optional[str] = None
    submitted_at: int
    minutes_after_start: Optional[float] = None
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[int] = None
    review_note: Optional[str] = None


class ReviewQueueResponse(BaseModel):
    session_id: str
    pending: List[PendingAttemptResponse]
    total: int


class ReviewDecision(BaseModel):
    """Optional note recorded with a decision."""
    note: Optional[str] = Field(None, max_length=500)


class BulkReviewItem(BaseModel):
    attempt_id: str
    ok: bool
    verdict: Optional[Verdict] = None
    error: Optional[str] = None


class BulkReviewResponse(BaseModel):
    session_id: str
    results: List[BulkReviewItem]
    decided: int
    failed: int


class FlaggedAttemptsResponse(BaseModel):
    """Admin report of attempts that raised integrity flags."""
    session_id: Optional[str] = None
    flag: Optional[Flag] = None
    attempts: List[PendingAttemptResponse]
    total: int
