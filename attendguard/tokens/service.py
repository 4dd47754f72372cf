"""Rotating, signed, single-use check-in tokens.

The live token of a session is a stored row. Whether it is valid is decided
purely by comparing wall-clock time at validation with the stored
``expires_at``, so any worker process reaches the same answer without an
in-process timer.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from attendguard import security_hmac
from attendguard.audit.schemas import AuditEventType
from attendguard.audit.service import AuditService
from attendguard.clock import now_ms
from attendguard.errors import InvalidTransition
from attendguard.metrics import TOKENS_ISSUED
from attendguard.schemas import SessionState

logger = logging.getLogger(__name__)

EXPIRED = "expired"
SIGNATURE_MISMATCH = "signature-mismatch"
NONCE_REUSED = "nonce-reused"
SESSION_NOT_ACTIVE = "session-not-active"


@dataclass(frozen=True)
class TokenCheck:
    ok: bool
    reason: Optional[str] = None
    expires_at: Optional[int] = None


def to_qr_payload(token: Dict[str, Any]) -> Dict[str, Any]:
    """Compact form projected in the QR code."""
    return {
        "s": token["session_id"],
        "t": token["signature"],
        "n": token["nonce"],
        "ts": token["issued_at"],
        "e": token["expires_at"],
    }


class TokenService:
    """Issues, rotates, validates and invalidates session tokens."""

    def __init__(self, db: Session):
        self.db = db
        self.audit = AuditService(db)

    def get(self, session_id: str) -> Optional[Dict[str, Any]]:
        row = self.db.execute(
            text(
                """
                SELECT session_id, nonce, signature, issued_at, expires_at, rotation_count
                  FROM rotating_tokens
                 WHERE session_id = :sid
                """
            ),
            {"sid": session_id},
        ).fetchone()
        return dict(row._mapping) if row else None

    def issue(
        self, session: Dict[str, Any], *, now: Optional[int] = None, origin: str = "system"
    ) -> Dict[str, Any]:
        """
        Mint a fresh token for the session, replacing any prior one.

        Used at session start and for manual force-refresh; the previous
        token stops validating the moment this commits.
        """
        now = now if now is not None else now_ms()
        token = self._mint(session, now)
        params = dict(token)

        try:
            updated = self.db.execute(
                text(
                    """
                    UPDATE rotating_tokens
                       SET nonce = :nonce, signature = :signature,
                           issued_at = :issued_at, expires_at = :expires_at,
                           rotation_count = rotation_count + 1
                     WHERE session_id = :session_id
                    """
                ),
                params,
            ).rowcount
            if not updated:
                self.db.execute(
                    text(
                        """
                        INSERT INTO rotating_tokens
                            (session_id, nonce, signature, issued_at, expires_at, rotation_count)
                        VALUES (:session_id, :nonce, :signature, :issued_at, :expires_at, 0)
                        """
                    ),
                    params,
                )
            self._audit_issue(token, origin, now)
            self.db.commit()
        except IntegrityError:
            # a concurrent first issue won the insert; replace its token instead
            self.db.rollback()
            return self.issue(session, now=now, origin=origin)
        except Exception:
            self.db.rollback()
            raise

        logger.info("issued token for session %s (expires %s)", token["session_id"], token["expires_at"])
        return self.get(token["session_id"])

    def current(self, session: Dict[str, Any], *, now: Optional[int] = None) -> Dict[str, Any]:
        """
        Return the live token, rotating it first when its epoch is over or
        its nonce has already been consumed.

        Rotation is conditional on the nonce being replaced, so many pollers
        hitting the boundary together rotate exactly once.
        """
        if session["state"] != SessionState.active.value:
            raise InvalidTransition("Session is not active")
        now = now if now is not None else now_ms()

        existing = self.get(session["id"])
        if existing is None:
            return self.issue(session, now=now)
        if now <= existing["expires_at"] and not self.is_consumed(session["id"], existing["nonce"]):
            return existing

        token = self._mint(session, now)
        try:
            rotated = self.db.execute(
                text(
                    """
                    UPDATE rotating_tokens
                       SET nonce = :nonce, signature = :signature,
                           issued_at = :issued_at, expires_at = :expires_at,
                           rotation_count = rotation_count + 1
                     WHERE session_id = :session_id AND nonce = :old_nonce
                    """
                ),
                {**token, "old_nonce": existing["nonce"]},
            ).rowcount
            if rotated:
                self._audit_issue(token, "rotation", now)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        return self.get(session["id"])

    def is_consumed(self, session_id: str, nonce: str) -> bool:
        row = self.db.execute(
            text("SELECT 1 FROM consumed_nonces WHERE session_id = :sid AND nonce = :nonce"),
            {"sid": session_id, "nonce": nonce},
        ).fetchone()
        return row is not None

    def invalidate(self, session_id: str, *, commit: bool = True) -> None:
        self.db.execute(
            text("DELETE FROM rotating_tokens WHERE session_id = :sid"), {"sid": session_id}
        )
        if commit:
            self.db.commit()

    def validate(
        self,
        session: Dict[str, Any],
        signature: str,
        nonce: str,
        claimed_timestamp: int,
        student_id: str,
        *,
        now: Optional[int] = None,
    ) -> TokenCheck:
        """
        Authenticate a presented token and consume its nonce.

        Expiry is judged against wall-clock time now, not at generation,
        and is boundary-inclusive. The nonce is consumed last, with a
        primary-key insert, so concurrent submissions of one nonce yield a
        single pass.
        """
        now = now if now is not None else now_ms()
        session_id = session["id"]

        if session["state"] != SessionState.active.value:
            return TokenCheck(False, SESSION_NOT_ACTIVE)

        if not security_hmac.verify_token_signature(
            session_id, nonce, claimed_timestamp, signature
        ):
            return TokenCheck(False, SIGNATURE_MISMATCH)

        live = self.get(session_id)
        if live is None or live["nonce"] != nonce:
            # superseded by a rotation or refresh
            return TokenCheck(False, EXPIRED)
        if now > live["expires_at"]:
            return TokenCheck(False, EXPIRED, live["expires_at"])

        try:
            self.db.execute(
                text(
                    """
                    INSERT INTO consumed_nonces (session_id, nonce, student_id, consumed_at)
                    VALUES (:sid, :nonce, :student_id, :now)
                    """
                ),
                {"sid": session_id, "nonce": nonce, "student_id": student_id, "now": now},
            )
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            return TokenCheck(False, NONCE_REUSED, live["expires_at"])

        return TokenCheck(True, None, live["expires_at"])

    def _mint(self, session: Dict[str, Any], now: int) -> Dict[str, Any]:
        nonce = security_hmac.new_nonce()
        return {
            "session_id": session["id"],
            "nonce": nonce,
            "signature": security_hmac.sign_token(session["id"], nonce, now),
            "issued_at": now,
            "expires_at": now + int(session["rotation_interval_ms"]),
        }

    def _audit_issue(self, token: Dict[str, Any], origin: str, now: int) -> None:
        TOKENS_ISSUED.inc()
        self.audit.record(
            AuditEventType.token_issued,
            session_id=token["session_id"],
            metadata={"expires_at": token["expires_at"]},
            origin=origin,
            now=now,
            commit=False,
        )
