"""Geofence utilities: great-circle distance and radius checks.

Everything here is pure: no database access and no side effects, so the
suspicion rules can be tested without I/O.
"""
import math
from dataclasses import dataclass
from typing import List, Optional

from attendguard.errors import ValidationError
from attendguard.schemas import Flag

EARTH_RADIUS_M = 6_371_000.0

# share of the radius, measured from the boundary inwards, counted as "near edge"
NEAR_EDGE_BAND = 0.1

PERFECT_ACCURACY_M = 3.0
MIN_COORDINATE_DECIMALS = 4


@dataclass(frozen=True)
class GeofenceResult:
    distance: float
    within_radius: bool
    allowed_radius: float
    near_edge: bool


def distance(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Haversine distance in meters between two WGS84 points."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lng2 - lng1)

    a = (
        math.sin(d_phi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    )
    # clamp against float drift pushing a a hair past 1
    a = min(1.0, max(0.0, a))
    return EARTH_RADIUS_M * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def evaluate(
    center_lat: float, center_lng: float, radius: float, lat: float, lng: float
) -> GeofenceResult:
    """
    Test a reported location against a circular geofence.

    The boundary is inclusive: a distance exactly equal to the radius is
    inside.
    """
    d = distance(center_lat, center_lng, lat, lng)
    within = d <= radius
    return GeofenceResult(
        distance=d,
        within_radius=within,
        allowed_radius=radius,
        near_edge=within and d > radius * (1 - NEAR_EDGE_BAND),
    )


def evaluate_session(session: dict, lat: float, lng: float) -> GeofenceResult:
    return evaluate(
        session["center_lat"], session["center_lng"], session["radius_m"], lat, lng
    )


def validate_location_format(
    lat: Optional[float], lng: Optional[float], accuracy: Optional[float] = None
) -> None:
    """Raise ValidationError with an actionable message for unusable input."""
    if lat is None or lng is None:
        raise ValidationError(
            "Location is required: enable location services and try again"
        )
    if not (math.isfinite(lat) and math.isfinite(lng)):
        raise ValidationError("Location coordinates must be finite numbers")
    if lat < -90 or lat > 90:
        raise ValidationError("Latitude must be between -90 and 90")
    if lng < -180 or lng > 180:
        raise ValidationError("Longitude must be between -180 and 180")
    if accuracy is not None and accuracy < 0:
        raise ValidationError("Location accuracy cannot be negative")


def _decimals(value: float) -> int:
    text = repr(float(value))
    if "e" in text or "E" in text:
        return MIN_COORDINATE_DECIMALS
    _, _, frac = text.partition(".")
    return len(frac.rstrip("0"))


def spoofing_indicators(
    lat: float,
    lng: float,
    accuracy: Optional[float],
    altitude: Optional[float],
    required_accuracy: float,
) -> List[str]:
    """
    Heuristic signs of a mocked location.

    None of these decide a verdict on their own; they are recorded as flags
    and only matter when combined with a trust or multi-device signal.
    """
    flags: List[str] = []
    if accuracy is not None:
        if accuracy < PERFECT_ACCURACY_M:
            flags.append(Flag.perfect_accuracy.value)
        elif accuracy > required_accuracy:
            flags.append(Flag.low_accuracy.value)
    if _decimals(lat) < MIN_COORDINATE_DECIMALS or _decimals(lng) < MIN_COORDINATE_DECIMALS:
        flags.append(Flag.low_precision_coordinates.value)
    if altitude is not None and altitude == 0:
        flags.append(Flag.zero_altitude.value)
    return flags
