"""Pydantic schemas for sessions."""
from typing import Dict, Optional

from pydantic import BaseModel, Field, model_validator

from attendguard.schemas import SecurityLevel, SessionState


class GeofenceFields(BaseModel):
    center_lat: Optional[float] = Field(None, ge=-90, le=90, description="Geofence center latitude")
    center_lng: Optional[float] = Field(None, ge=-180, le=180, description="Geofence center longitude")
    radius_m: Optional[float] = Field(None, gt=0, le=10000, description="Allowed radius in meters")

    @model_validator(mode="after")
    def center_is_complete(self):
        if (self.center_lat is None) != (self.center_lng is None):
            raise ValueError("center_lat and center_lng must be given together")
        return self


class SessionCreate(GeofenceFields):
    """Schema for creating a session; ``start`` activates it immediately."""
    course_code: Optional[str] = Field(None, max_length=64)
    duration_minutes: Optional[int] = Field(None, gt=0, le=600)
    late_threshold_minutes: Optional[int] = Field(None, ge=0, le=600)
    rotation_interval_ms: Optional[int] = Field(None, ge=1000, le=600000)
    required_accuracy_m: Optional[float] = Field(None, gt=0)
    security_level: SecurityLevel = SecurityLevel.standard
    start: bool = True


class SessionStart(GeofenceFields):
    pass


class GeofenceUpdate(GeofenceFields):
    pass


class SessionResponse(BaseModel):
    """Schema for session response."""
    id: str
    instructor_id: str
    course_code: Optional[str] = None
    center_lat: Optional[float] = None
    center_lng: Optional[float] = None
    radius_m: float
    required_accuracy_m: float
    duration_minutes: int
    late_threshold_minutes: int
    rotation_interval_ms: int
    security_level: SecurityLevel
    state: SessionState
    ended_reason: Optional[str] = None
    start_at: Optional[int] = None
    end_at: Optional[int] = None
    created_at: int


class SessionStopResponse(BaseModel):
    session: SessionResponse
    changed: bool


class SessionStatsResponse(BaseModel):
    session_id: str
    total: int
    counts: Dict[str, int]
    average_distance: float


class QRTokenResponse(BaseModel):
    """Payload the presenting screen encodes, plus timing for its refresh loop."""
    payload: Dict[str, object]
    qr_data: str
    expires_at: int
    refresh_in_ms: int
