"""Check-in pipeline: token, geofence, device, rules, audit."""
import json
import logging
import secrets
from typing import Any, Dict, Optional

from sqlalchemy import text
from sqlalchemy.orm import Session

from attendguard import geo, qr
from attendguard.audit.schemas import AuditEventType
from attendguard.audit.service import AuditService
from attendguard.checkins import rules
from attendguard.clock import now_ms
from attendguard.devices.service import DeviceService, is_suspicious, validate_fingerprint
from attendguard.errors import (
    AlreadyCheckedIn,
    RateLimited,
    SessionNotFound,
    TokenInvalid,
    ValidationError,
)
from attendguard.metrics import CHECKIN_REQUESTS, CHECKIN_VERDICTS, RATE_LIMITED, TOKEN_REJECTIONS
from attendguard.ratelimit import RateLimiter
from attendguard.schemas import CheckInRequest, CheckInResponse, Flag, SecurityLevel, Verdict
from attendguard.sessions.service import SessionService
from attendguard.settings import settings
from attendguard.tokens.service import TokenService

logger = logging.getLogger(__name__)

AUDIT_BY_VERDICT = {
    Verdict.present: AuditEventType.checkin_accepted,
    Verdict.late: AuditEventType.checkin_accepted,
    Verdict.suspicious: AuditEventType.checkin_flagged,
    Verdict.pending_review: AuditEventType.checkin_pending_review,
    Verdict.rejected: AuditEventType.checkin_rejected,
}

# attempts that already count for the session; a rejected one may be retried
COUNTED_VERDICTS = (
    Verdict.present.value,
    Verdict.late.value,
    Verdict.suspicious.value,
    Verdict.pending_review.value,
)

RECOVERY_TOLERATED_FLAGS = {Flag.near_edge.value, Flag.low_trust.value}


class CheckInService:
    """Service class for scoring student check-ins."""

    def __init__(self, db: Session):
        self.db = db
        self.audit = AuditService(db)
        self.sessions = SessionService(db)
        self.tokens = TokenService(db)
        self.devices = DeviceService(db)
        self.limiter = RateLimiter(db)

    def submit(
        self, request: CheckInRequest, student_id: str, *, now: Optional[int] = None
    ) -> CheckInResponse:
        """
        Score one submission and persist the outcome.

        Raises RateLimited, ValidationError, SessionNotFound, AlreadyCheckedIn
        or TokenInvalid for hard rejections; each is audited before it
        propagates. Everything else yields a verdict that is written to the
        attempt table and the audit log in a single commit.
        """
        now = now if now is not None else now_ms()
        CHECKIN_REQUESTS.inc()

        self._throttle(student_id, now)

        try:
            session_id, signature, nonce, issued_at = self._token_fields(request)
        except ValidationError as exc:
            self._audit_validation(student_id, request.session_id, exc, now)
            raise

        session = self.sessions.find(session_id)
        if session is None:
            self.audit.record(
                AuditEventType.checkin_rejected,
                subject_id=student_id,
                metadata={"reason": "session-not-found", "session_id": session_id},
                now=now,
            )
            raise SessionNotFound(session_id)
        session = self.sessions.expire_if_due(session, now=now)

        try:
            geo.validate_location_format(request.latitude, request.longitude, request.accuracy)
            fingerprint = validate_fingerprint(request.device_fingerprint)
        except ValidationError as exc:
            self._audit_validation(student_id, session_id, exc, now)
            raise

        if self._already_counted(session_id, student_id):
            self.audit.record(
                AuditEventType.checkin_rejected,
                subject_id=student_id,
                session_id=session_id,
                metadata={"reason": "already-checked-in"},
                now=now,
            )
            raise AlreadyCheckedIn(session_id)

        check = self.tokens.validate(session, signature, nonce, issued_at, student_id, now=now)
        if not check.ok:
            TOKEN_REJECTIONS.labels(reason=check.reason).inc()
            self.audit.record(
                AuditEventType.token_rejected,
                subject_id=student_id,
                session_id=session_id,
                metadata={"reason": check.reason, "nonce": nonce},
                now=now,
            )
            logger.info("token rejected for %s in %s: %s", student_id, session_id, check.reason)
            raise TokenInvalid(check.reason, rules.TOKEN_REJECTED_MESSAGE)

        fence = geo.evaluate_session(session, request.latitude, request.longitude)
        bound = self.devices.lookup_or_bind(
            fingerprint,
            student_id,
            device_type=request.device_type,
            browser=request.browser,
            os=request.os,
            components=request.fingerprint_components,
            session_id=session_id,
            now=now,
        )
        fingerprint_hash = bound.binding["fingerprint_hash"]
        multiple = self.devices.check_multiple_devices(student_id, fingerprint_hash, now=now)

        minutes_after_start = (now - session["start_at"]) / 60_000
        decision = rules.evaluate(
            rules.Signals(
                token_ok=True,
                within_radius=fence.within_radius,
                minutes_after_start=minutes_after_start,
                late_threshold_minutes=session["late_threshold_minutes"],
                device_mismatch=bound.mismatch,
                elevated=session["security_level"] == SecurityLevel.elevated.value,
                low_trust=is_suspicious(bound.binding),
                multiple_devices=multiple,
                near_edge=fence.near_edge,
                spoofing=geo.spoofing_indicators(
                    request.latitude,
                    request.longitude,
                    request.accuracy,
                    request.altitude,
                    session["required_accuracy_m"],
                ),
            )
        )

        attempt_id = self._persist(
            session_id, student_id, request, fence, bound.binding, decision, minutes_after_start, now
        )

        # lowTrust is a consequence of past penalties, not of this attempt
        if (
            decision.verdict in (Verdict.present, Verdict.late)
            and not bound.mismatch
            and set(decision.flags) <= RECOVERY_TOLERATED_FLAGS
        ):
            self.devices.recover(fingerprint_hash)

        CHECKIN_VERDICTS.labels(verdict=decision.verdict.value).inc()
        logger.info(
            "check-in %s by %s in %s: %s %s",
            attempt_id,
            student_id,
            session_id,
            decision.verdict.value,
            ",".join(decision.flags) or "-",
        )
        return CheckInResponse(
            verdict=decision.verdict,
            distance=round(fence.distance, 1),
            allowed_radius=fence.allowed_radius,
            flags=list(decision.flags),
            message=decision.message,
            attempt_id=attempt_id,
        )

    # ---------- pipeline steps ----------

    def _throttle(self, student_id: str, now: int) -> None:
        result = self.limiter.hit(
            f"checkin:{student_id}",
            settings.checkin_rate_limit,
            settings.checkin_rate_window_seconds,
            now=now,
        )
        if result["allowed"]:
            return
        RATE_LIMITED.inc()
        self.audit.record(
            AuditEventType.rate_limited,
            subject_id=student_id,
            metadata={"retry_after": result["retry_after"]},
            now=now,
        )
        raise RateLimited(result["retry_after"])

    def _token_fields(self, request: CheckInRequest):
        session_id, signature, nonce, issued_at = (
            request.session_id,
            request.token,
            request.nonce,
            request.timestamp,
        )
        if request.qr:
            payload = qr.parse_payload(request.qr)
            if session_id and session_id != payload.s:
                raise ValidationError("Scanned code belongs to a different session")
            session_id, signature, nonce, issued_at = payload.s, payload.t, payload.n, payload.ts

        if not session_id or not signature:
            raise ValidationError("Session and token are required; scan the class QR code")
        if not nonce or issued_at is None:
            raise ValidationError("QR code is outdated; scan the code currently shown in class")
        return session_id, signature, nonce, issued_at

    def _already_counted(self, session_id: str, student_id: str) -> bool:
        params = {"sid": session_id, "student_id": student_id}
        params.update({f"v{i}": v for i, v in enumerate(COUNTED_VERDICTS)})
        verdicts = ", ".join(f":v{i}" for i in range(len(COUNTED_VERDICTS)))
        row = self.db.execute(
            text(
                f"""
                SELECT id FROM checkin_attempts
                 WHERE session_id = :sid AND student_id = :student_id
                   AND verdict IN ({verdicts})
                 LIMIT 1
                """
            ),
            params,
        ).fetchone()
        return row is not None

    def _audit_validation(
        self, student_id: str, session_id: Optional[str], exc: ValidationError, now: int
    ) -> None:
        self.audit.record(
            AuditEventType.validation_failed,
            subject_id=student_id,
            session_id=session_id,
            metadata={"reason": exc.message},
            now=now,
        )

    def _persist(
        self,
        session_id: str,
        student_id: str,
        request: CheckInRequest,
        fence: geo.GeofenceResult,
        binding: Dict[str, Any],
        decision: rules.Decision,
        minutes_after_start: float,
        now: int,
    ) -> str:
        attempt_id = secrets.token_hex(12)
        try:
            self.db.execute(
                text(
                    """
                    INSERT INTO checkin_attempts
                        (id, session_id, student_id, latitude, longitude, accuracy, altitude,
                         heading, speed, distance_m, fingerprint_hash, device_type, browser, os,
                         trust_score, flags, verdict, message, submitted_at, minutes_after_start)
                    VALUES
                        (:id, :session_id, :student_id, :latitude, :longitude, :accuracy, :altitude,
                         :heading, :speed, :distance_m, :fingerprint_hash, :device_type, :browser, :os,
                         :trust_score, :flags, :verdict, :message, :submitted_at, :minutes_after_start)
                    """
                ),
                {
                    "id": attempt_id,
                    "session_id": session_id,
                    "student_id": student_id,
                    "latitude": request.latitude,
                    "longitude": request.longitude,
                    "accuracy": request.accuracy,
                    "altitude": request.altitude,
                    "heading": request.heading,
                    "speed": request.speed,
                    "distance_m": fence.distance,
                    "fingerprint_hash": binding["fingerprint_hash"],
                    "device_type": request.device_type,
                    "browser": request.browser,
                    "os": request.os,
                    "trust_score": binding["trust_score"],
                    "flags": json.dumps(list(decision.flags)),
                    "verdict": decision.verdict.value,
                    "message": decision.message,
                    "submitted_at": now,
                    "minutes_after_start": round(minutes_after_start, 2),
                },
            )
            self.audit.record(
                AUDIT_BY_VERDICT[decision.verdict],
                subject_id=student_id,
                session_id=session_id,
                metadata={
                    "attempt_id": attempt_id,
                    "verdict": decision.verdict.value,
                    "flags": list(decision.flags),
                    "distance": round(fence.distance, 1),
                    "allowed_radius": fence.allowed_radius,
                    "trust_score": binding["trust_score"],
                },
                now=now,
                commit=False,
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        return attempt_id
