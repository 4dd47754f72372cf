"""Business logic for device bindings and trust scores."""
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from attendguard import security_hmac
from attendguard.audit.schemas import AuditEventType
from attendguard.audit.service import AuditService
from attendguard.clock import minutes_ms, now_ms
from attendguard.errors import ValidationError
from attendguard.schemas import Verdict
from attendguard.settings import settings

logger = logging.getLogger(__name__)

MIN_FINGERPRINT_LENGTH = 16
MAX_FINGERPRINT_LENGTH = 512
MAX_TRUST = 100

# verdicts that count as the student having been marked from a device
SUCCESS_VERDICTS = (Verdict.present.value, Verdict.late.value, Verdict.suspicious.value)

_BINDING_COLUMNS = """
    fingerprint_hash, student_id, trust_score, mismatch_count,
    multi_device_count, usage_count, device_type, browser, os,
    first_seen_at, last_used_at
"""


@dataclass(frozen=True)
class BindingResult:
    binding: Dict[str, Any]
    is_new: bool
    mismatch: bool


def validate_fingerprint(fingerprint: Optional[str]) -> str:
    if not fingerprint or not isinstance(fingerprint, str):
        raise ValidationError("Device fingerprint is required")
    fingerprint = fingerprint.strip()
    if not MIN_FINGERPRINT_LENGTH <= len(fingerprint) <= MAX_FINGERPRINT_LENGTH:
        raise ValidationError(
            f"Device fingerprint must be {MIN_FINGERPRINT_LENGTH}-{MAX_FINGERPRINT_LENGTH} characters"
        )
    return fingerprint


def is_suspicious(binding: Dict[str, Any]) -> bool:
    return binding["trust_score"] < settings.trust_floor


class DeviceService:
    """
    Service class for the device registry.

    Ownership of a binding never changes after the first bind. Trust and
    counters move through single UPDATE statements of the form
    ``col = col + :n`` so concurrent attempts never lose an increment.
    """

    def __init__(self, db: Session):
        self.db = db
        self.audit = AuditService(db)

    def get(self, fingerprint_hash: str) -> Optional[Dict[str, Any]]:
        row = self.db.execute(
            text(f"SELECT {_BINDING_COLUMNS} FROM device_bindings WHERE fingerprint_hash = :h"),
            {"h": fingerprint_hash},
        ).fetchone()
        return dict(row._mapping) if row else None

    def lookup_or_bind(
        self,
        fingerprint: str,
        student_id: str,
        *,
        device_type: Optional[str] = None,
        browser: Optional[str] = None,
        os: Optional[str] = None,
        components: Optional[Dict[str, Any]] = None,
        session_id: Optional[str] = None,
        now: Optional[int] = None,
    ) -> BindingResult:
        """Resolve the binding for a fingerprint, binding it on first sight."""
        now = now if now is not None else now_ms()
        fingerprint_hash = security_hmac.hash_fingerprint(validate_fingerprint(fingerprint))

        binding = self.get(fingerprint_hash)
        if binding is None:
            try:
                self.db.execute(
                    text(
                        """
                        INSERT INTO device_bindings
                            (fingerprint_hash, student_id, trust_score, mismatch_count,
                             multi_device_count, usage_count, device_type, browser, os,
                             components, first_seen_at, last_used_at)
                        VALUES
                            (:h, :student_id, :trust, 0, 0, 1, :device_type, :browser, :os,
                             :components, :now, :now)
                        """
                    ),
                    {
                        "h": fingerprint_hash,
                        "student_id": student_id,
                        "trust": MAX_TRUST,
                        "device_type": device_type,
                        "browser": browser,
                        "os": os,
                        "components": json.dumps(components or {}, default=str, sort_keys=True),
                        "now": now,
                    },
                )
                self.audit.record(
                    AuditEventType.device_bound,
                    subject_id=student_id,
                    session_id=session_id,
                    metadata={"fingerprint_hash": fingerprint_hash, "device_type": device_type},
                    now=now,
                    commit=False,
                )
                self.db.commit()
                logger.info("bound device %s to student %s", fingerprint_hash, student_id)
                return BindingResult(self.get(fingerprint_hash), is_new=True, mismatch=False)
            except IntegrityError:
                # lost the first-bind race; the winner's row is authoritative
                self.db.rollback()
                binding = self.get(fingerprint_hash)

        if binding["student_id"] == student_id:
            self.db.execute(
                text(
                    """
                    UPDATE device_bindings
                       SET usage_count = usage_count + 1, last_used_at = :now
                     WHERE fingerprint_hash = :h
                    """
                ),
                {"h": fingerprint_hash, "now": now},
            )
            self.db.commit()
            return BindingResult(self.get(fingerprint_hash), is_new=False, mismatch=False)

        return self._record_mismatch(binding, student_id, session_id, now)

    def _record_mismatch(
        self, binding: Dict[str, Any], student_id: str, session_id: Optional[str], now: int
    ) -> BindingResult:
        fingerprint_hash = binding["fingerprint_hash"]
        try:
            self.db.execute(
                text(
                    """
                    UPDATE device_bindings
                       SET trust_score = CASE WHEN trust_score - :penalty < 0
                                              THEN 0 ELSE trust_score - :penalty END,
                           mismatch_count = mismatch_count + 1,
                           usage_count = usage_count + 1,
                           last_used_at = :now
                     WHERE fingerprint_hash = :h
                    """
                ),
                {"h": fingerprint_hash, "penalty": settings.trust_mismatch_penalty, "now": now},
            )
            updated = self.get(fingerprint_hash)
            self.audit.record(
                AuditEventType.device_mismatch,
                subject_id=student_id,
                session_id=session_id,
                metadata={
                    "fingerprint_hash": fingerprint_hash,
                    "owner_id": updated["student_id"],
                    "trust_score": updated["trust_score"],
                    "mismatch_count": updated["mismatch_count"],
                },
                now=now,
                commit=False,
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.warning(
            "device %s owned by %s presented by %s (trust now %s)",
            fingerprint_hash,
            updated["student_id"],
            student_id,
            updated["trust_score"],
        )
        return BindingResult(updated, is_new=False, mismatch=True)

    def recover(self, fingerprint_hash: str, step: Optional[int] = None) -> None:
        """Raise trust after a clean owner check-in, capped at 100."""
        step = settings.trust_recovery_step if step is None else step
        if step <= 0:
            return
        self.db.execute(
            text(
                """
                UPDATE device_bindings
                   SET trust_score = CASE WHEN trust_score + :step > :cap
                                          THEN :cap ELSE trust_score + :step END
                 WHERE fingerprint_hash = :h
                """
            ),
            {"h": fingerprint_hash, "step": step, "cap": MAX_TRUST},
        )
        self.db.commit()

    def check_multiple_devices(
        self, student_id: str, fingerprint_hash: str, *, now: Optional[int] = None
    ) -> bool:
        """
        True when the student was recently marked from another device.

        The window is ``multi_device_window_minutes``; a hit increments the
        binding's ``multi_device_count``.
        """
        now = now if now is not None else now_ms()
        since = now - minutes_ms(settings.multi_device_window_minutes)
        params = {"sid": student_id, "h": fingerprint_hash, "since": since}
        params.update({f"v{i}": v for i, v in enumerate(SUCCESS_VERDICTS)})
        verdicts = ", ".join(f":v{i}" for i in range(len(SUCCESS_VERDICTS)))

        other = self.db.execute(
            text(
                f"""
                SELECT COUNT(*) AS n
                  FROM checkin_attempts
                 WHERE student_id = :sid
                   AND fingerprint_hash IS NOT NULL
                   AND fingerprint_hash != :h
                   AND submitted_at >= :since
                   AND verdict IN ({verdicts})
                """
            ),
            params,
        ).fetchone().n
        if not other:
            return False

        self.db.execute(
            text(
                """
                UPDATE device_bindings
                   SET multi_device_count = multi_device_count + 1
                 WHERE fingerprint_hash = :h
                """
            ),
            {"h": fingerprint_hash},
        )
        self.db.commit()
        return True

    def suspicious_devices(
        self, threshold: Optional[int] = None, limit: int = 100
    ) -> List[Dict[str, Any]]:
        """Bindings below the trust threshold, least trusted first."""
        threshold = settings.trust_floor if threshold is None else threshold
        rows = self.db.execute(
            text(
                f"""
                SELECT {_BINDING_COLUMNS}
                  FROM device_bindings
                 WHERE trust_score < :threshold
                 ORDER BY trust_score ASC, mismatch_count DESC
                 LIMIT :limit
                """
            ),
            {"threshold": threshold, "limit": limit},
        ).fetchall()
        return [dict(r._mapping) for r in rows]
