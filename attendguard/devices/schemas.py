"""Pydantic schemas for device bindings."""
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class DeviceBindingResponse(BaseModel):
    """Schema for a device binding as shown to administrators."""
    fingerprint_hash: str
    student_id: str
    trust_score: int = Field(..., ge=0, le=100)
    mismatch_count: int
    multi_device_count: int
    usage_count: int
    device_type: Optional[str] = None
    browser: Optional[str] = None
    os: Optional[str] = None
    first_seen_at: int
    last_used_at: int

    model_config = ConfigDict(from_attributes=True)


class SuspiciousDevicesResponse(BaseModel):
    threshold: int
    devices: List[DeviceBindingResponse]
