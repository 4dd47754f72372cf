"""Domain exceptions raised by the services and mapped to HTTP in main."""
from typing import Optional


class DomainError(Exception):
    """Base exception for integrity and business rule violations."""

    status_code = 400

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message


class ValidationError(DomainError):
    """Malformed payload, missing location or bad fingerprint."""

    status_code = 422


class TokenInvalid(DomainError):
    """Check-in token failed authentication."""

    status_code = 400

    def __init__(self, reason: str, message: Optional[str] = None):
        super().__init__(message or f"Check-in token rejected: {reason}")
        self.reason = reason


class RateLimited(DomainError):
    status_code = 429

    def __init__(self, retry_after: int):
        super().__init__(f"Too many attempts, retry in {retry_after} seconds")
        self.retry_after = retry_after


class PermissionDenied(DomainError):
    status_code = 403


class NotFound(DomainError):
    status_code = 404


class SessionNotFound(NotFound):
    def __init__(self, session_id: str = ""):
        super().__init__("Session not found")
        self.session_id = session_id


class InvalidTransition(DomainError):
    """Lifecycle or review state does not allow the requested action."""

    status_code = 409


class NotPending(InvalidTransition):
    def __init__(self, attempt_id: str):
        super().__init__(f"Attempt {attempt_id} is not awaiting review")
        self.attempt_id = attempt_id


class SigningKeyMisconfigured(DomainError):
    """Fatal: the server signing secret is missing."""

    status_code = 500


class AlreadyCheckedIn(InvalidTransition):
    """The student already holds a counted attempt for the session."""

    def __init__(self, session_id: str = ""):
        super().__init__("Attendance already recorded for this session")
        self.session_id = session_id
