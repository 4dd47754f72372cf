"""Session lifecycle: scheduled -> active -> ended.

Every transition is a conditional UPDATE on the expected state. When two
callers race, the one whose UPDATE matched a row performs the side effects
(token issue or invalidation, audit); the other simply re-reads the row and
observes the resulting state.
"""
import logging
import secrets
from typing import Any, Dict, Optional, Tuple

from sqlalchemy import text
from sqlalchemy.orm import Session

from attendguard.audit.schemas import AuditEventType
from attendguard.audit.service import AuditService
from attendguard.clock import minutes_ms, now_ms
from attendguard.errors import InvalidTransition, PermissionDenied, SessionNotFound, ValidationError
from attendguard.schemas import SecurityLevel, SessionState, Verdict
from attendguard.settings import settings
from attendguard.tokens.service import TokenService

logger = logging.getLogger(__name__)

STOPPED = "stopped"
EXPIRED = "expired"

_SESSION_COLUMNS = """
    id, instructor_id, course_code, center_lat, center_lng, radius_m,
    required_accuracy_m, duration_minutes, late_threshold_minutes,
    rotation_interval_ms, security_level, state, ended_reason,
    start_at, end_at, created_at
"""


class SessionService:
    """Service class for session lifecycle operations."""

    def __init__(self, db: Session):
        self.db = db
        self.audit = AuditService(db)
        self.tokens = TokenService(db)

    # ---------- reads ----------

    def find(self, session_id: str) -> Optional[Dict[str, Any]]:
        row = self.db.execute(
            text(f"SELECT {_SESSION_COLUMNS} FROM class_sessions WHERE id = :id"),
            {"id": session_id},
        ).fetchone()
        return dict(row._mapping) if row else None

    def get(self, session_id: str) -> Dict[str, Any]:
        session = self.find(session_id)
        if not session:
            raise SessionNotFound(session_id)
        return session

    def get_owned(self, session_id: str, instructor_id: str) -> Dict[str, Any]:
        session = self.get(session_id)
        if session["instructor_id"] != instructor_id:
            raise PermissionDenied("Only the session's instructor may do this")
        return session

    def stats(self, session_id: str) -> Dict[str, Any]:
        """Verdict counts and average distance for one session."""
        self.get(session_id)
        rows = self.db.execute(
            text(
                """
                SELECT verdict, COUNT(*) AS n, AVG(distance_m) AS avg_distance
                  FROM checkin_attempts
                 WHERE session_id = :sid
                 GROUP BY verdict
                """
            ),
            {"sid": session_id},
        ).fetchall()

        counts = {v.value: 0 for v in Verdict}
        total = 0
        weighted = 0.0
        for r in rows:
            counts[r.verdict] = r.n
            total += r.n
            weighted += (r.avg_distance or 0) * r.n
        return {
            "session_id": session_id,
            "total": total,
            "counts": counts,
            "average_distance": round(weighted / total, 1) if total else 0.0,
        }

    # ---------- transitions ----------

    def schedule(
        self,
        instructor_id: str,
        *,
        course_code: Optional[str] = None,
        center_lat: Optional[float] = None,
        center_lng: Optional[float] = None,
        radius_m: Optional[float] = None,
        duration_minutes: Optional[int] = None,
        late_threshold_minutes: Optional[int] = None,
        rotation_interval_ms: Optional[int] = None,
        required_accuracy_m: Optional[float] = None,
        security_level: SecurityLevel = SecurityLevel.standard,
        now: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Create a session in the scheduled state."""
        now = now if now is not None else now_ms()
        if (center_lat is None) != (center_lng is None):
            raise ValidationError("Geofence center needs both latitude and longitude")

        params = {
            "id": secrets.token_hex(8),
            "instructor_id": instructor_id,
            "course_code": course_code,
            "center_lat": center_lat,
            "center_lng": center_lng,
            "radius_m": radius_m or settings.default_radius_m,
            "required_accuracy_m": required_accuracy_m or settings.required_accuracy_m,
            "duration_minutes": duration_minutes or settings.default_duration_minutes,
            "late_threshold_minutes": (
                late_threshold_minutes
                if late_threshold_minutes is not None
                else settings.late_threshold_minutes
            ),
            "rotation_interval_ms": rotation_interval_ms or settings.rotation_interval_ms,
            "security_level": SecurityLevel(security_level).value,
            "state": SessionState.scheduled.value,
            "created_at": now,
        }
        try:
            self.db.execute(
                text(
                    """
                    INSERT INTO class_sessions
                        (id, instructor_id, course_code, center_lat, center_lng, radius_m,
                         required_accuracy_m, duration_minutes, late_threshold_minutes,
                         rotation_interval_ms, security_level, state, created_at)
                    VALUES
                        (:id, :instructor_id, :course_code, :center_lat, :center_lng, :radius_m,
                         :required_accuracy_m, :duration_minutes, :late_threshold_minutes,
                         :rotation_interval_ms, :security_level, :state, :created_at)
                    """
                ),
                params,
            )
            self.audit.record(
                AuditEventType.session_scheduled,
                subject_id=instructor_id,
                session_id=params["id"],
                metadata={"course_code": course_code, "security_level": params["security_level"]},
                origin=instructor_id,
                now=now,
                commit=False,
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        return self.get(params["id"])

    def start(
        self,
        session_id: str,
        instructor_id: str,
        *,
        center_lat: Optional[float] = None,
        center_lng: Optional[float] = None,
        radius_m: Optional[float] = None,
        now: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        Activate a scheduled session and issue its first token.

        A geofence center is required, either stored at scheduling time or
        given here. Starting an already-active session returns it unchanged.
        """
        now = now if now is not None else now_ms()
        session = self.get_owned(session_id, instructor_id)

        if session["state"] == SessionState.active.value:
            return session
        if session["state"] == SessionState.ended.value:
            raise InvalidTransition("Session has already ended")

        lat = center_lat if center_lat is not None else session["center_lat"]
        lng = center_lng if center_lng is not None else session["center_lng"]
        if lat is None or lng is None:
            raise ValidationError("A geofence center is required to start a session")

        end_at = now + minutes_ms(session["duration_minutes"])
        try:
            started = self.db.execute(
                text(
                    """
                    UPDATE class_sessions
                       SET state = :active, start_at = :now, end_at = :end_at,
                           center_lat = :lat, center_lng = :lng, radius_m = :radius
                     WHERE id = :id AND state = :scheduled
                    """
                ),
                {
                    "active": SessionState.active.value,
                    "scheduled": SessionState.scheduled.value,
                    "now": now,
                    "end_at": end_at,
                    "lat": lat,
                    "lng": lng,
                    "radius": radius_m or session["radius_m"],
                    "id": session_id,
                },
            ).rowcount
            if started:
                self.audit.record(
                    AuditEventType.session_started,
                    subject_id=instructor_id,
                    session_id=session_id,
                    metadata={
                        "center": [lat, lng],
                        "radius_m": radius_m or session["radius_m"],
                        "end_at": end_at,
                        "security_level": session["security_level"],
                    },
                    origin=instructor_id,
                    now=now,
                    commit=False,
                )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        session = self.get(session_id)
        if started:
            logger.info("session %s started by %s", session_id, instructor_id)
            self.tokens.issue(session, now=now, origin=instructor_id)
        return session

    def open(self, instructor_id: str, *, now: Optional[int] = None, **options) -> Dict[str, Any]:
        """Instructor "start session": schedule and activate in one step."""
        if options.get("center_lat") is None or options.get("center_lng") is None:
            raise ValidationError("A geofence center is required to start a session")
        session = self.schedule(instructor_id, now=now, **options)
        return self.start(session["id"], instructor_id, now=now)

    def stop(
        self, session_id: str, instructor_id: str, *, now: Optional[int] = None
    ) -> Tuple[Dict[str, Any], bool]:
        """Manually end a session. Idempotent: returns (session, changed)."""
        self.get_owned(session_id, instructor_id)
        changed = self._end(session_id, STOPPED, origin=instructor_id, now=now)
        return self.get(session_id), changed

    def expire_if_due(self, session: Dict[str, Any], *, now: Optional[int] = None) -> Dict[str, Any]:
        """End an active session whose window has passed; return the fresh row."""
        now = now if now is not None else now_ms()
        if session["state"] == SessionState.active.value and now > session["end_at"]:
            self._end(session["id"], EXPIRED, origin="sweep", now=now)
            return self.get(session["id"])
        return session

    def expire_due(self, *, now: Optional[int] = None) -> int:
        """Periodic sweep: end every active session with now > end time."""
        now = now if now is not None else now_ms()
        due = self.db.execute(
            text(
                """
                SELECT id FROM class_sessions
                 WHERE state = :active AND end_at < :now
                """
            ),
            {"active": SessionState.active.value, "now": now},
        ).fetchall()

        ended = 0
        for row in due:
            if self._end(row.id, EXPIRED, origin="sweep", now=now):
                ended += 1
        if ended:
            logger.info("expiry sweep ended %d session(s)", ended)
        return ended

    def update_geofence(
        self,
        session_id: str,
        instructor_id: str,
        *,
        center_lat: Optional[float] = None,
        center_lng: Optional[float] = None,
        radius_m: Optional[float] = None,
        now: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Move or resize the geofence in place; rotation cadence is untouched."""
        now = now if now is not None else now_ms()
        session = self.get_owned(session_id, instructor_id)
        if (center_lat is None) != (center_lng is None):
            raise ValidationError("Geofence center needs both latitude and longitude")
        if radius_m is not None and radius_m <= 0:
            raise ValidationError("Radius must be positive")

        lat = center_lat if center_lat is not None else session["center_lat"]
        lng = center_lng if center_lng is not None else session["center_lng"]
        radius = radius_m if radius_m is not None else session["radius_m"]
        try:
            updated = self.db.execute(
                text(
                    """
                    UPDATE class_sessions
                       SET center_lat = :lat, center_lng = :lng, radius_m = :radius
                     WHERE id = :id AND state != :ended
                    """
                ),
                {"lat": lat, "lng": lng, "radius": radius, "id": session_id,
                 "ended": SessionState.ended.value},
            ).rowcount
            if not updated:
                self.db.rollback()
                raise InvalidTransition("Geofence of an ended session cannot change")
            self.audit.record(
                AuditEventType.geofence_updated,
                subject_id=instructor_id,
                session_id=session_id,
                metadata={
                    "from": {"center": [session["center_lat"], session["center_lng"]],
                             "radius_m": session["radius_m"]},
                    "to": {"center": [lat, lng], "radius_m": radius},
                },
                origin=instructor_id,
                now=now,
                commit=False,
            )
            self.db.commit()
        except InvalidTransition:
            raise
        except Exception:
            self.db.rollback()
            raise
        return self.get(session_id)

    # ---------- tokens on behalf of the instructor ----------

    def live_token(
        self, session_id: str, instructor_id: str, *, now: Optional[int] = None
    ) -> Dict[str, Any]:
        """Token for the presenting screen; polled, rotated lazily."""
        now = now if now is not None else now_ms()
        session = self.expire_if_due(self.get_owned(session_id, instructor_id), now=now)
        if session["state"] != SessionState.active.value:
            raise InvalidTransition("Session is not active")
        return self.tokens.current(session, now=now)

    def refresh_token(
        self, session_id: str, instructor_id: str, *, now: Optional[int] = None
    ) -> Dict[str, Any]:
        """Force-refresh: the prior token is invalid as soon as this returns."""
        now = now if now is not None else now_ms()
        session = self.expire_if_due(self.get_owned(session_id, instructor_id), now=now)
        if session["state"] != SessionState.active.value:
            raise InvalidTransition("Session is not active")
        return self.tokens.issue(session, now=now, origin=instructor_id)

    def _end(self, session_id: str, reason: str, *, origin: str, now: Optional[int] = None) -> bool:
        now = now if now is not None else now_ms()
        try:
            ended = self.db.execute(
                text(
                    """
                    UPDATE class_sessions
                       SET state = :ended, ended_reason = :reason,
                           end_at = CASE WHEN :reason = 'stopped' OR end_at IS NULL
                                         THEN :now ELSE end_at END
                     WHERE id = :id AND state != :ended
                    """
                ),
                {"ended": SessionState.ended.value, "reason": reason, "now": now, "id": session_id},
            ).rowcount
            if ended:
                self.tokens.invalidate(session_id, commit=False)
                self.audit.record(
                    AuditEventType.session_ended,
                    subject_id=origin,
                    session_id=session_id,
                    metadata={"reason": reason},
                    origin=origin,
                    now=now,
                    commit=False,
                )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        if ended:
            logger.info("session %s ended (%s)", session_id, reason)
        return bool(ended)
