"""
auth/errors.py -- Exception taxonomy for the identity core.

Every error carries the HTTP status and machine-readable code it maps to, so
the API layer translates them 1:1 with a single exception handler. The message
is always safe to show to clients: PersistenceError and HashingError use a
fixed generic message and keep the underlying cause only on __cause__.

Token verification failures are NOT represented here -- TokenCodec.verify()
returns None and the caller decides which of these to raise.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from typing import Any


class AuthError(Exception):
    """Base class. Subclasses fix status_code and the default code/message."""

    status_code: int = 500
    code: str = "INTERNAL_ERROR"
    message: str = "An unexpected error occurred."

    def __init__(self, message: str | None = None, *, code: str | None = None, details: Any = None) -> None:
        self.message = message or self.message
        self.code = code or self.code
        self.details = details
        super().__init__(self.message)


class ValidationError(AuthError):
    """Field-level input problem. details maps field name -> message(s)."""

    status_code = 422
    code = "VALIDATION_ERROR"
    message = "Validation failed"

    def __init__(self, details: dict[str, Any], message: str | None = None) -> None:
        super().__init__(message, details=details)


class AuthenticationError(AuthError):
    """Bad credentials or a bad/expired/wrong-type token."""

    status_code = 401
    code = "UNAUTHORIZED"
    message = "Authentication required"


class AuthorizationError(AuthError):
    status_code = 403
    code = "FORBIDDEN"
    message = "You do not have access to this resource"


class ConflictError(AuthError):
    status_code = 409
    code = "EMAIL_EXISTS"
    message = "Email already registered"


class PersistenceError(AuthError):
    """Storage failure (constraint violation, timeout, lost connection)."""

    status_code = 500
    code = "INTERNAL_ERROR"
    message = "An unexpected error occurred."


class HashingError(AuthError):
    """The password hashing primitive could not produce a digest."""

    status_code = 500
    code = "INTERNAL_ERROR"
    message = "An unexpected error occurred."


class NotifierError(AuthError):
    """Mail delivery failed. The state change that preceded it stays committed."""

    status_code = 500
    code = "MAIL_SEND_FAILED"
    message = "Unable to send email"
