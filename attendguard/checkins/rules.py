"""
Suspicion engine: an ordered rule table over the signals of one attempt.

The table is pure so every rule can be exercised without a database. Rules
run in order; the first one that returns a verdict decides it, but every
rule still gets to add its flags so the outcome stays explainable.
"""
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence, Tuple

from attendguard.schemas import Flag, Verdict

MESSAGES = {
    Verdict.present: "Attendance marked present",
    Verdict.late: "Attendance marked late",
    Verdict.suspicious: "Attendance recorded and flagged for instructor attention",
    Verdict.pending_review: (
        "You appear to be outside the classroom area; "
        "your check-in is waiting for instructor review"
    ),
    Verdict.rejected: "This device is registered to another student",
}

TOKEN_REJECTED_MESSAGE = "Check-in code expired or invalid; scan the current code and try again"

# flags that never count as corroboration for lowTrust / multipleDevices
_INFORMATIONAL = {Flag.near_edge.value}
_CORROBORATED = {Flag.low_trust.value, Flag.multiple_devices.value}


@dataclass(frozen=True)
class Signals:
    """Everything the engine looks at for one attempt."""

    token_ok: bool
    within_radius: bool = False
    minutes_after_start: float = 0.0
    late_threshold_minutes: float = 15.0
    device_mismatch: bool = False
    elevated: bool = False
    low_trust: bool = False
    multiple_devices: bool = False
    near_edge: bool = False
    spoofing: Sequence[str] = field(default_factory=tuple)


@dataclass(frozen=True)
class Decision:
    verdict: Verdict
    flags: Tuple[str, ...]
    message: str


Rule = Callable[[Signals, List[str]], Optional[Verdict]]


def device_mismatch(s: Signals, flags: List[str]) -> Optional[Verdict]:
    if not s.device_mismatch:
        return None
    flags.append(Flag.device_mismatch.value)
    return Verdict.rejected if s.elevated else None


def outside_geofence(s: Signals, flags: List[str]) -> Optional[Verdict]:
    if s.within_radius:
        if s.near_edge:
            flags.append(Flag.near_edge.value)
        return None
    flags.append(Flag.outside_geofence.value)
    return Verdict.pending_review


def location_spoofing(s: Signals, flags: List[str]) -> Optional[Verdict]:
    flags.extend(f for f in s.spoofing if f not in flags)
    return None


def on_time(s: Signals, flags: List[str]) -> Optional[Verdict]:
    if s.within_radius and s.minutes_after_start <= s.late_threshold_minutes:
        return Verdict.present
    return None


def late(s: Signals, flags: List[str]) -> Optional[Verdict]:
    if s.within_radius:
        return Verdict.late
    return None


RULES: Tuple[Rule, ...] = (
    device_mismatch,
    outside_geofence,
    location_spoofing,
    on_time,
    late,
)


def _apply_corroboration(s: Signals, verdict: Verdict, flags: List[str]) -> Verdict:
    if s.low_trust:
        flags.append(Flag.low_trust.value)
    if s.multiple_devices:
        flags.append(Flag.multiple_devices.value)
    if verdict not in (Verdict.present, Verdict.late):
        return verdict

    raised = [f for f in flags if f in _CORROBORATED]
    others = [f for f in flags if f not in _CORROBORATED and f not in _INFORMATIONAL]
    if len(raised) >= 2 or (raised and others):
        return Verdict.suspicious
    return verdict


def evaluate(s: Signals, rules: Sequence[Rule] = RULES) -> Decision:
    """Run the rule table and return the verdict with its flags."""
    if not s.token_ok:
        return Decision(Verdict.rejected, (Flag.token_invalid.value,), TOKEN_REJECTED_MESSAGE)

    flags: List[str] = []
    verdict: Optional[Verdict] = None
    for rule in rules:
        outcome = rule(s, flags)
        if verdict is None and outcome is not None:
            verdict = outcome
    if verdict is None:
        # no location rule matched; never let an attempt through unscored
        verdict = Verdict.pending_review

    verdict = _apply_corroboration(s, verdict, flags)
    return Decision(verdict, tuple(flags), MESSAGES[verdict])
