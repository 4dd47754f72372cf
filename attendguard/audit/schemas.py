"""Pydantic schemas for audit events."""
from typing import Any, Dict, List, Optional
from enum import Enum

from pydantic import BaseModel, Field, ConfigDict


class AuditCategory(str, Enum):
    """Audit event category enumeration."""
    attendance = "attendance"
    security = "security"
    authentication = "authentication"
    session = "session"
    review = "review"


class AuditEventType(str, Enum):
    checkin_accepted = "CHECKIN_ACCEPTED"
    checkin_flagged = "CHECKIN_FLAGGED"
    checkin_pending_review = "CHECKIN_PENDING_REVIEW"
    checkin_rejected = "CHECKIN_REJECTED"
    token_rejected = "TOKEN_REJECTED"
    validation_failed = "VALIDATION_FAILED"
    rate_limited = "RATE_LIMITED"
    device_bound = "DEVICE_BOUND"
    device_mismatch = "DEVICE_MISMATCH"
    token_issued = "TOKEN_ISSUED"
    session_scheduled = "SESSION_SCHEDULED"
    session_started = "SESSION_STARTED"
    session_ended = "SESSION_ENDED"
    geofence_updated = "GEOFENCE_UPDATED"
    review_accepted = "REVIEW_ACCEPTED"
    review_rejected = "REVIEW_REJECTED"
    login_succeeded = "LOGIN_SUCCEEDED"
    login_failed = "LOGIN_FAILED"


CATEGORY_BY_TYPE = {
    AuditEventType.checkin_accepted: AuditCategory.attendance,
    AuditEventType.checkin_flagged: AuditCategory.attendance,
    AuditEventType.checkin_pending_review: AuditCategory.attendance,
    AuditEventType.checkin_rejected: AuditCategory.attendance,
    AuditEventType.token_rejected: AuditCategory.security,
    AuditEventType.validation_failed: AuditCategory.security,
    AuditEventType.rate_limited: AuditCategory.security,
    AuditEventType.device_bound: AuditCategory.security,
    AuditEventType.device_mismatch: AuditCategory.security,
    AuditEventType.token_issued: AuditCategory.session,
    AuditEventType.session_scheduled: AuditCategory.session,
    AuditEventType.session_started: AuditCategory.session,
    AuditEventType.session_ended: AuditCategory.session,
    AuditEventType.geofence_updated: AuditCategory.session,
    AuditEventType.review_accepted: AuditCategory.review,
    AuditEventType.review_rejected: AuditCategory.review,
    AuditEventType.login_succeeded: AuditCategory.authentication,
    AuditEventType.login_failed: AuditCategory.authentication,
}


class AuditEventResponse(BaseModel):
    """Schema for audit event response."""
    id: int
    event_type: AuditEventType
    category: AuditCategory
    subject_id: Optional[str] = None
    session_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    origin: str
    created_at: int = Field(..., description="Epoch milliseconds")

    model_config = ConfigDict(from_attributes=True)


class AuditEventListResponse(BaseModel):
    """Schema for audit event list response."""
    events: List[AuditEventResponse]
    total: int
    limit: int
    offset: int
