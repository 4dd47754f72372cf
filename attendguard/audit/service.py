"""Business logic for the append-only audit trail."""
import json
import logging
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import text
from sqlalchemy.orm import Session

from attendguard.audit.schemas import AuditCategory, AuditEventType, CATEGORY_BY_TYPE
from attendguard.clock import now_ms

logger = logging.getLogger(__name__)


class AuditService:
    """
    Service class for audit operations.

    Only inserts and reads are exposed; nothing in the code base updates or
    deletes an audit row.
    """

    def __init__(self, db: Session):
        self.db = db

    def record(
        self,
        event_type: AuditEventType,
        *,
        subject_id: Optional[str] = None,
        session_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        origin: str = "system",
        now: Optional[int] = None,
        commit: bool = True,
    ) -> None:
        """Append one event; with commit=False it joins the caller's transaction."""
        event_type = AuditEventType(event_type)
        self.db.execute(
            text(
                """
                INSERT INTO audit_events
                    (event_type, category, subject_id, session_id, metadata, origin, created_at)
                VALUES (:event_type, :category, :subject_id, :session_id, :metadata, :origin, :created_at)
                """
            ),
            {
                "event_type": event_type.value,
                "category": CATEGORY_BY_TYPE[event_type].value,
                "subject_id": subject_id,
                "session_id": session_id,
                "metadata": json.dumps(metadata or {}, default=str, sort_keys=True),
                "origin": origin,
                "created_at": now if now is not None else now_ms(),
            },
        )
        if commit:
            self.db.commit()
        logger.debug("audit %s subject=%s session=%s", event_type.value, subject_id, session_id)

    def get_student_timeline(
        self,
        student_id: str,
        category: Optional[AuditCategory] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[Dict[str, Any]], int]:
        """Per-student event timeline, newest first, optionally by category."""
        conditions = ["subject_id = :subject_id"]
        params: Dict[str, Any] = {"subject_id": student_id, "limit": limit, "offset": offset}
        if category:
            conditions.append("category = :category")
            params["category"] = AuditCategory(category).value
        return self._query(conditions, params, order="DESC")

    def get_session_trail(
        self, session_id: str, limit: int = 100, offset: int = 0
    ) -> Tuple[List[Dict[str, Any]], int]:
        """Chronological trail for one session."""
        params = {"session_id": session_id, "limit": limit, "offset": offset}
        return self._query(["session_id = :session_id"], params, order="ASC")

    def count(self, event_type: AuditEventType, session_id: Optional[str] = None) -> int:
        query = "SELECT COUNT(*) AS total FROM audit_events WHERE event_type = :event_type"
        params = {"event_type": AuditEventType(event_type).value}
        if session_id:
            query += " AND session_id = :session_id"
            params["session_id"] = session_id
        return self.db.execute(text(query), params).fetchone().total

    def _query(
        self, conditions: List[str], params: Dict[str, Any], order: str
    ) -> Tuple[List[Dict[str, Any]], int]:
        where_clause = "WHERE " + " AND ".join(conditions)

        total = self.db.execute(
            text(f"SELECT COUNT(*) AS total FROM audit_events {where_clause}"), params
        ).fetchone().total

        rows = self.db.execute(
            text(
                f"""
                SELECT id, event_type, category, subject_id, session_id,
                       metadata, origin, created_at
                  FROM audit_events
                  {where_clause}
                 ORDER BY created_at {order}, id {order}
                 LIMIT :limit OFFSET :offset
                """
            ),
            params,
        ).fetchall()

        return [
            {
                "id": r.id,
                "event_type": r.event_type,
                "category": r.category,
                "subject_id": r.subject_id,
                "session_id": r.session_id,
                "metadata": json.loads(r.metadata or "{}"),
                "origin": r.origin,
                "created_at": r.created_at,
            }
            for r in rows
        ], total
