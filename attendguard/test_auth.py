"""Unit tests for authentication functionality."""
from datetime import timedelta

from attendguard.audit.schemas import AuditEventType
from attendguard.audit.service import AuditService
from attendguard.auth import authenticate_user, create_access_token, verify_token
from attendguard.settings import settings


class TestAuthentication:
    """Test cases for authentication functionality."""

    def test_authenticate_user_valid(self):
        """Test valid user authentication."""
        assert authenticate_user(settings.admin_user, settings.admin_pass) is True

    def test_authenticate_user_invalid_username(self):
        """Test invalid username authentication."""
        assert authenticate_user("wrong_user", settings.admin_pass) is False

    def test_authenticate_user_invalid_password(self):
        """Test invalid password authentication."""
        assert authenticate_user(settings.admin_user, "wrong_pass") is False

    def test_create_access_token(self):
        """Test JWT token creation."""
        token = create_access_token({"sub": "test_user"})

        assert isinstance(token, str)
        assert len(token) > 0

    def test_verify_token_valid(self):
        """Test valid token verification keeps the role claim."""
        token = create_access_token({"sub": "prof-1", "role": "instructor"}, timedelta(minutes=60))

        payload = verify_token(token)
        assert payload is not None
        assert payload["sub"] == "prof-1"
        assert payload["role"] == "instructor"

    def test_verify_token_invalid(self):
        """Test invalid token verification."""
        assert verify_token("invalid.jwt.token") is None

    def test_verify_token_expired(self):
        """Test expired token verification."""
        token = create_access_token({"sub": "test_user"}, timedelta(seconds=-1))
        assert verify_token(token) is None


class TestLoginEndpoint:
    """Test cases for /auth/login."""

    def test_login_success_is_audited(self, client, db):
        """A good login returns a bearer token and records the event."""
        response = client.post(
            "/auth/login", json={"username": settings.admin_user, "password": settings.admin_pass}
        )
        assert response.status_code == 200
        assert verify_token(response.json()["access_token"])["role"] == "admin"
        assert AuditService(db).count(AuditEventType.login_succeeded) == 1

    def test_login_failure_is_audited(self, client, db):
        """A bad login is refused and recorded."""
        response = client.post("/auth/login", json={"username": "x", "password": "y"})
        assert response.status_code == 401
        assert AuditService(db).count(AuditEventType.login_failed) == 1

    def test_protected_route_requires_token(self, client):
        """Routes refuse requests without a bearer token."""
        assert client.get("/devices/suspicious").status_code == 401

    def test_role_is_enforced(self, client, auth):
        """A student token cannot open the admin report."""
        response = client.get("/devices/suspicious", headers=auth("stu-1", "student"))
        assert response.status_code == 403
