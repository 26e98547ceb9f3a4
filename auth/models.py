"""
auth/models.py -- Domain dataclasses for identity entities.

Pattern: Data class (pure data containers). Stores map rows onto these; the
service and routes work only with these types, never with raw rows.

Timestamps on persisted records are timezone-aware UTC datetimes. Token claim
times (issued_at / expires_at on TokenClaims) are integer epoch seconds, which
is what the JWT carries on the wire.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


class TokenType(str, Enum):
    """The closed set of signed token uses. Stored in the "type" claim."""

    ACCESS = "access"
    REFRESH = "refresh"
    VERIFY = "verify"


@dataclass
class User:
    """An account that can authenticate with email + password.

    roles and permissions are hydrated from user_roles / user_permissions on
    every read. password_hash is never serialized into API responses.
    """

    email: str
    password_hash: str
    id: int | None = None
    first_name: str | None = None
    last_name: str | None = None
    phone: str | None = None
    email_verified: bool = False
    email_verified_at: str | None = None
    is_active: bool = True
    created_at: str | None = None
    updated_at: str | None = None
    last_login_at: str | None = None
    roles: list[str] = field(default_factory=list)
    permissions: list[str] = field(default_factory=list)

    @property
    def full_name(self) -> str:
        if self.first_name and self.last_name:
            return f"{self.first_name} {self.last_name}"
        return self.first_name or self.last_name or self.email


@dataclass
class RefreshToken:
    """Persisted record of an issued refresh token (the token itself is never stored).

    revoked_at is set exactly once: at logout, rotation, password change/reset
    or revoke-all. replaced_by points at the successor record after rotation.
    """

    user_id: int
    token_hash: str
    expires_at: datetime
    id: int | None = None
    revoked_at: datetime | None = None
    replaced_by: int | None = None
    created_at: datetime | None = None

    @property
    def is_revoked(self) -> bool:
        return self.revoked_at is not None

    def is_expired(self, now: datetime | None = None) -> bool:
        return self.expires_at <= (now or datetime.now(timezone.utc))


@dataclass
class PasswordReset:
    """Single-use password reset record. Valid only while unused and unexpired."""

    user_id: int
    token_hash: str
    expires_at: datetime
    id: int | None = None
    used_at: datetime | None = None
    created_at: datetime | None = None

    @property
    def is_used(self) -> bool:
        return self.used_at is not None

    def is_expired(self, now: datetime | None = None) -> bool:
        return self.expires_at <= (now or datetime.now(timezone.utc))


@dataclass(frozen=True)
class TokenClaims:
    """Typed view of a signed token's payload.

    subject is the user id as a string (the JWT "sub" claim must be a string).
    email/roles/permissions are only meaningful for ACCESS and VERIFY tokens;
    jti only for REFRESH tokens.
    """

    type: TokenType
    subject: str
    issuer: str
    issued_at: int
    expires_at: int
    email: str | None = None
    roles: frozenset[str] = frozenset()
    permissions: frozenset[str] = frozenset()
    jti: str | None = None


@dataclass(frozen=True)
class Identity:
    """What the authentication gate attaches to request.state after a valid access token."""

    user_id: int
    email: str | None
    roles: frozenset[str] = frozenset()
    permissions: frozenset[str] = frozenset()


@dataclass(frozen=True)
class Violation:
    """One failed password strength rule."""

    rule: str  # "min_length", "uppercase", "lowercase", "digit"
    message: str
