"""Pydantic schemas shared across the integrity engine."""
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from typing import List, Optional, Dict, Any
from enum import Enum


class Verdict(str, Enum):
    """Final classification of a check-in attempt."""
    present = "PRESENT"
    late = "LATE"
    suspicious = "SUSPICIOUS"
    pending_review = "PENDING_REVIEW"
    rejected = "REJECTED"


class SecurityLevel(str, Enum):
    standard = "standard"
    elevated = "elevated"


class SessionState(str, Enum):
    scheduled = "scheduled"
    active = "active"
    ended = "ended"


class Flag(str, Enum):
    """Explainable flags attached to an attempt."""
    token_invalid = "tokenInvalid"
    device_mismatch = "deviceMismatch"
    outside_geofence = "outsideGeofence"
    low_trust = "lowTrust"
    multiple_devices = "multipleDevices"
    near_edge = "nearEdge"
    perfect_accuracy = "perfectAccuracy"
    low_accuracy = "lowAccuracy"
    low_precision_coordinates = "lowPrecisionCoordinates"
    zero_altitude = "zeroAltitude"


class CamelModel(BaseModel):
    """Wire models use camelCase, Python code uses snake_case."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# Check-in schemas
class CheckInRequest(CamelModel):
    """Schema for a student check-in submission."""
    session_id: Optional[str] = Field(None, description="Session id (s)")
    token: Optional[str] = Field(None, description="Token signature (t)")
    nonce: Optional[str] = Field(None, description="Single-use nonce (n)")
    timestamp: Optional[int] = Field(None, description="Token issuedAt, epoch ms (ts)")
    qr: Optional[str] = Field(None, description="Raw scanned QR text, any supported form")
    latitude: Optional[float] = Field(None, description="Latitude")
    longitude: Optional[float] = Field(None, description="Longitude")
    accuracy: Optional[float] = Field(None, description="Accuracy in meters")
    altitude: Optional[float] = None
    heading: Optional[float] = None
    speed: Optional[float] = None
    device_fingerprint: Optional[str] = Field(None, description="Opaque client fingerprint")
    fingerprint_components: Dict[str, Any] = Field(default_factory=dict)
    device_type: str = Field(default="unknown")
    browser: Optional[str] = None
    os: Optional[str] = None


class CheckInResponse(CamelModel):
    """Schema for a check-in outcome."""
    verdict: Verdict
    distance: Optional[float] = None
    allowed_radius: Optional[float] = None
    flags: List[str] = Field(default_factory=list)
    message: str
    retry_after: Optional[int] = None
    attempt_id: Optional[str] = None


class QRPayload(BaseModel):
    """Compact payload encoded in the projected QR code."""
    s: str
    t: str
    n: str
    ts: int
    e: Optional[int] = None


# Auth schemas
class LoginRequest(BaseModel):
    """Schema for login request."""
    username: str
    password: str


class LoginResponse(BaseModel):
    """Schema for login response."""
    access_token: str
    token_type: str = "bearer"
