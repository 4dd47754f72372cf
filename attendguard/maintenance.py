"""Background expiry sweep for sessions past their end time."""
import asyncio
import logging
from typing import Callable, Optional

from sqlalchemy.orm import Session

from attendguard.db import SessionLocal
from attendguard.sessions.service import SessionService

logger = logging.getLogger(__name__)


def sweep(session_factory: Callable[[], Session] = SessionLocal, now: Optional[int] = None) -> int:
    """Run one expiry pass; returns how many sessions were ended."""
    db = session_factory()
    try:
        return SessionService(db).expire_due(now=now)
    finally:
        db.close()


async def sweep_forever(
    interval_seconds: float, session_factory: Callable[[], Session] = SessionLocal
) -> None:
    """Sweep every ``interval_seconds`` until cancelled."""
    while True:
        try:
            await asyncio.to_thread(sweep, session_factory)
        except Exception:
            # keep sweeping; the next pass retries whatever was missed
            logger.exception("expiry sweep failed")
        await asyncio.sleep(interval_seconds)
