"""Manual review of borderline check-ins."""
import json
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from attendguard.audit.schemas import AuditEventType
from attendguard.audit.service import AuditService
from attendguard.clock import now_ms
from attendguard.errors import DomainError, NotFound, NotPending
from attendguard.schemas import Flag, Verdict
from attendguard.sessions.service import SessionService

logger = logging.getLogger(__name__)

_ATTEMPT_COLUMNS = """
    id, session_id, student_id, latitude, longitude, accuracy, distance_m,
    fingerprint_hash, trust_score, flags, verdict, message, submitted_at,
    minutes_after_start, reviewed_by, reviewed_at, review_note
"""


def _attempt(row) -> Dict[str, Any]:
    attempt = dict(row._mapping)
    attempt["flags"] = json.loads(attempt["flags"] or "[]")
    return attempt


class ReviewService:
    """
    Service class for the review queue.

    The queue is simply the session's attempts whose verdict is
    PENDING_REVIEW. A decision is a conditional UPDATE on that verdict, so
    deciding the same attempt twice fails with NotPending instead of
    writing a second audit event.
    """

    def __init__(self, db: Session):
        self.db = db
        self.audit = AuditService(db)
        self.sessions = SessionService(db)

    def pending(self, session_id: str, instructor_id: str) -> List[Dict[str, Any]]:
        self.sessions.get_owned(session_id, instructor_id)
        rows = self.db.execute(
            text(
                f"""
                SELECT {_ATTEMPT_COLUMNS}
                  FROM checkin_attempts
                 WHERE session_id = :sid AND verdict = :pending
                 ORDER BY submitted_at ASC, id ASC
                """
            ),
            {"sid": session_id, "pending": Verdict.pending_review.value},
        ).fetchall()
        return [_attempt(r) for r in rows]

    def flagged(
        self,
        session_id: Optional[str] = None,
        flag: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        """
        Attempts that raised a flag or were judged SUSPICIOUS, newest first.

        ``nearEdge`` alone is informational and does not make an attempt
        flagged. ``flag`` narrows the report to attempts carrying that flag.
        """
        clauses = [
            "(verdict = :suspicious OR (flags IS NOT NULL AND flags NOT IN ('[]', :edge_only)))"
        ]
        params: Dict[str, Any] = {
            "suspicious": Verdict.suspicious.value,
            "edge_only": json.dumps([Flag.near_edge.value]),
            "limit": limit,
            "offset": offset,
        }
        if session_id:
            clauses.append("session_id = :sid")
            params["sid"] = session_id
        if flag:
            clauses.append("flags LIKE :pattern")
            params["pattern"] = f'%"{flag}"%'
        where = " AND ".join(clauses)

        rows = self.db.execute(
            text(
                f"""
                SELECT {_ATTEMPT_COLUMNS}
                  FROM checkin_attempts
                 WHERE {where}
                 ORDER BY submitted_at DESC, id DESC
                 LIMIT :limit OFFSET :offset
                """
            ),
            params,
        ).fetchall()
        return [_attempt(r) for r in rows]

    def get_attempt(self, attempt_id: str) -> Dict[str, Any]:
        row = self.db.execute(
            text(f"SELECT {_ATTEMPT_COLUMNS} FROM checkin_attempts WHERE id = :id"),
            {"id": attempt_id},
        ).fetchone()
        if not row:
            raise NotFound("Attempt not found")
        return _attempt(row)

    def accept_one(
        self, attempt_id: str, instructor_id: str, note: Optional[str] = None, *, now: Optional[int] = None
    ) -> Dict[str, Any]:
        """Override a pending attempt to PRESENT."""
        return self._decide(
            attempt_id, instructor_id, Verdict.present, AuditEventType.review_accepted, note, now
        )

    def reject_one(
        self, attempt_id: str, instructor_id: str, reason: Optional[str] = None, *, now: Optional[int] = None
    ) -> Dict[str, Any]:
        """Mark a pending attempt REJECTED; the student counts as absent."""
        return self._decide(
            attempt_id, instructor_id, Verdict.rejected, AuditEventType.review_rejected, reason, now
        )

    def accept_all(
        self, session_id: str, instructor_id: str, note: Optional[str] = None, *, now: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        return self._decide_all(session_id, instructor_id, self.accept_one, note, now)

    def reject_all(
        self, session_id: str, instructor_id: str, reason: Optional[str] = None, *, now: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        return self._decide_all(session_id, instructor_id, self.reject_one, reason, now)

    def _decide_all(self, session_id, instructor_id, decide, note, now) -> List[Dict[str, Any]]:
        # each item commits on its own; one failure leaves the others decided
        results = []
        for attempt in self.pending(session_id, instructor_id):
            try:
                decided = decide(attempt["id"], instructor_id, note, now=now)
                results.append({"attempt_id": attempt["id"], "ok": True, "verdict": decided["verdict"]})
            except (DomainError, SQLAlchemyError) as exc:
                logger.warning("bulk review of %s failed: %s", attempt["id"], exc)
                results.append({"attempt_id": attempt["id"], "ok": False, "error": str(exc)})
        return results

    def _decide(
        self,
        attempt_id: str,
        instructor_id: str,
        verdict: Verdict,
        event_type: AuditEventType,
        note: Optional[str],
        now: Optional[int],
    ) -> Dict[str, Any]:
        now = now if now is not None else now_ms()
        attempt = self.get_attempt(attempt_id)
        self.sessions.get_owned(attempt["session_id"], instructor_id)

        try:
            changed = self.db.execute(
                text(
                    """
                    UPDATE checkin_attempts
                       SET verdict = :verdict, reviewed_by = :reviewer,
                           reviewed_at = :now, review_note = :note
                     WHERE id = :id AND verdict = :pending
                    """
                ),
                {
                    "verdict": verdict.value,
                    "reviewer": instructor_id,
                    "now": now,
                    "note": note,
                    "id": attempt_id,
                    "pending": Verdict.pending_review.value,
                },
            ).rowcount
            if not changed:
                self.db.rollback()
                raise NotPending(attempt_id)
            self.audit.record(
                event_type,
                subject_id=attempt["student_id"],
                session_id=attempt["session_id"],
                metadata={
                    "attempt_id": attempt_id,
                    "from": Verdict.pending_review.value,
                    "to": verdict.value,
                    "note": note,
                    "flags": attempt["flags"],
                },
                origin=instructor_id,
                now=now,
                commit=False,
            )
            self.db.commit()
        except NotPending:
            raise
        except Exception:
            self.db.rollback()
            raise

        logger.info("attempt %s reviewed by %s: %s", attempt_id, instructor_id, verdict.value)
        return self.get_attempt(attempt_id)
