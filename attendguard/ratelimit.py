"""Sliding-window request throttling stored in the database."""
import logging
from typing import Any, Dict

from sqlalchemy import Column, Integer, String, BigInteger, Index, text
from sqlalchemy.orm import Session

from attendguard.clock import now_ms
from attendguard.db import Base

logger = logging.getLogger(__name__)


class RateLimitHit(Base):
    """One counted request for a throttling key."""

    __tablename__ = "rate_limit_hits"

    id = Column(Integer, primary_key=True, autoincrement=True)
    key = Column(String(128), nullable=False)
    hit_at = Column(BigInteger, nullable=False)

    __table_args__ = (Index("ix_rate_limit_key_hit", "key", "hit_at"),)


class RateLimiter:
    """
    Sliding-window limiter.

    Usage:
        limiter = RateLimiter(db)
        result = limiter.hit(f"checkin:{student_id}", 10, 60)
        if not result["allowed"]:
            raise RateLimited(result["retry_after"])
    """

    def __init__(self, db: Session):
        self.db = db

    def check(self, key: str, max_requests: int, window_seconds: int, *, now: int = None) -> Dict[str, Any]:
        """Report the window state for ``key`` without counting a request."""
        now = now if now is not None else now_ms()
        window_start = now - window_seconds * 1000

        row = self.db.execute(
            text(
                """
                SELECT COUNT(*) AS n, MIN(hit_at) AS oldest
                  FROM rate_limit_hits
                 WHERE key = :key AND hit_at > :window_start
                """
            ),
            {"key": key, "window_start": window_start},
        ).fetchone()

        count = row.n or 0
        allowed = count < max_requests
        retry_after = 0
        if not allowed and row.oldest is not None:
            # seconds until the oldest hit leaves the window, rounded up
            retry_after = max(1, -(-(row.oldest + window_seconds * 1000 - now) // 1000))
        return {
            "allowed": allowed,
            "remaining": max(0, max_requests - count),
            "retry_after": int(retry_after),
        }

    def hit(self, key: str, max_requests: int, window_seconds: int, *, now: int = None) -> Dict[str, Any]:
        """
        Count this request, then decide against the window.

        The hit is committed before counting, so every request sees at least
        the hits committed ahead of it and concurrent callers cannot all
        slip under the limit. A refused hit is withdrawn again.
        """
        now = now if now is not None else now_ms()
        window_start = now - window_seconds * 1000
        try:
            hit_id = self.db.execute(
                text("INSERT INTO rate_limit_hits (key, hit_at) VALUES (:key, :now) RETURNING id"),
                {"key": key, "now": now},
            ).scalar_one()
            # prune what has left the window for this key
            self.db.execute(
                text("DELETE FROM rate_limit_hits WHERE key = :key AND hit_at <= :window_start"),
                {"key": key, "window_start": window_start},
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        result = self.check(key, max_requests + 1, window_seconds, now=now)
        if result["allowed"]:
            result["remaining"] = max(0, result["remaining"] - 1)
            return result

        logger.warning("rate limit exceeded for %s", key)
        try:
            self.db.execute(text("DELETE FROM rate_limit_hits WHERE id = :id"), {"id": hit_id})
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        return {
            "allowed": False,
            "remaining": 0,
            "retry_after": result["retry_after"],
        }
