"""Shared fixtures: a throwaway SQLite database and authenticated clients."""
import os
import tempfile

# configure before any attendguard module reads settings
_TMP = tempfile.mkdtemp(prefix="attendguard-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_TMP, 'test.db')}"
os.environ["SIGNING_SECRET"] = "test-signing-secret"
os.environ["JWT_SECRET_KEY"] = "test-jwt-secret-with-at-least-32-bytes"
os.environ["SWEEP_INTERVAL_SECONDS"] = "0"
os.environ["CHECKIN_RATE_LIMIT"] = "1000"

import pytest
from sqlalchemy import text

from attendguard.auth import create_access_token
from attendguard.db import Base, SessionLocal, engine, init_db
from attendguard.schemas import CheckInRequest
from attendguard.sessions.service import SessionService
from attendguard.tokens.service import TokenService

T0 = 1_700_000_000_000  # fixed wall clock for service-level tests

CENTER = (28.6139, 77.2090)
INSIDE = (28.6141, 77.2091)
OUTSIDE = (28.6200, 77.2200)


@pytest.fixture(scope="session", autouse=True)
def _schema():
    init_db()
    yield
    engine.dispose()


@pytest.fixture(autouse=True)
def _clean_tables():
    yield
    with engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(text(f"DELETE FROM {table.name}"))


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def open_session(db):
    """Factory: an active session owned by ``prof-1`` started at ``now``."""

    def _open(instructor_id="prof-1", now=T0, **options):
        options.setdefault("center_lat", CENTER[0])
        options.setdefault("center_lng", CENTER[1])
        options.setdefault("radius_m", 50)
        return SessionService(db).open(instructor_id, now=now, **options)

    return _open


@pytest.fixture
def live_token(db):
    """Factory: the session's current token, reissued at ``now`` when given."""

    def _token(session, now=None):
        tokens = TokenService(db)
        if now is None:
            return tokens.get(session["id"])
        return tokens.issue(session, now=now)

    return _token


@pytest.fixture
def checkin_request():
    """Factory building a check-in body from a stored token."""

    def _build(token, location=INSIDE, fingerprint="fp-device-alpha-000001", **extra):
        body = {
            "session_id": token["session_id"],
            "token": token["signature"],
            "nonce": token["nonce"],
            "timestamp": token["issued_at"],
            "latitude": location[0],
            "longitude": location[1],
            "accuracy": 12.0,
            "altitude": 215.0,
            "device_fingerprint": fingerprint,
            "device_type": "mobile",
            "browser": "Chrome",
            "os": "Android",
        }
        body.update(extra)
        return CheckInRequest(**body)

    return _build


def bearer(sub: str, role: str) -> dict:
    return {"Authorization": f"Bearer {create_access_token({'sub': sub, 'role': role})}"}


@pytest.fixture
def client():
    from fastapi.testclient import TestClient

    from attendguard.main import app

    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def auth():
    return bearer
