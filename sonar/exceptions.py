"""Domain exceptions raised by the service layer.

Every error carries a stable ``error_code`` from ``schemas.ErrorCode``, a
human readable message, and a ``details`` dict. ``to_dict()`` produces the
same shape as ``schemas.ErrorResponse`` so callers can hand it straight to
whatever transport they sit behind.
"""

from typing import Any


class SonarError(Exception):
    """Base exception for all service-level failures."""

    def __init__(self, message: str, error_code: str = "SONAR_ERROR", details: dict[str, Any] | None = None):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.error_code, "message": self.message, "details": self.details}


class NotFoundError(SonarError):
    """Raised when a user, ping, or token does not exist."""


class ConflictError(SonarError):
    """Raised when an operation collides with existing state (taken username, zero counter)."""


class InvalidInputError(SonarError):
    """Raised when input fails validation beyond what the schemas check."""


class InvalidCredentialsError(SonarError):
    """Raised when a username/password pair does not match a stored user."""


class PermissionDeniedError(SonarError):
    """Raised when a user acts on something that is not theirs."""
