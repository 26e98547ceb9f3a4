"""
auth/service.py -- Credential lifecycle flows: register, login, refresh, logout,
password reset/change, email verification, and profile updates.

Pattern: Service layer. AuthenticationService holds no per-request state; every
collaborator (stores, hasher, codec, notifier) is injected at construction and
shared across requests. Route handlers call exactly one method per request and
translate the returned dataclass into a response envelope.

Failure semantics (see auth/errors.py):
  ValidationError      -- field map of problems with the caller's input.
  AuthenticationError  -- bad credentials or a bad/expired/revoked token. Token
                          failures use one message per flow so the response
                          never reveals which check failed.
  AuthorizationError   -- valid credentials, but the account is inactive.
  ConflictError        -- email already registered.
  NotifierError        -- raised AFTER the state change is committed.

Security:
  [C1] login() calls dummy_verify() for unknown emails so both failure paths
       cost one bcrypt verification.
  [C2] forgot_password() returns the same message whether or not the email is
       registered. The raw reset token is only echoed when expose_reset_token
       is set (never in production).
  [C3] Refresh rotation and reset-token consumption rely on conditional
       updates in SessionStore; a caller that loses a race gets
       AuthenticationError and no new credential.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from auth.errors import AuthenticationError, AuthorizationError, ConflictError, NotifierError, ValidationError
from auth.models import TokenType, User
from auth.notifier import Notifier, redact_email
from auth.passwords import PasswordHasher
from auth.sessions import SessionStore
from auth.store import UserStore
from auth.tokens import TokenCodec

logger = logging.getLogger("authcore.auth")

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

RESET_REQUESTED_MESSAGE = "If the account exists, a reset link has been generated."
_INVALID_CREDENTIALS = "Invalid email or password"
_INVALID_REFRESH = "Invalid or expired refresh token"
_INVALID_RESET = "Invalid or expired reset token"
_INVALID_VERIFY = "Invalid or expired verification token"


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TokenPair:
    user: User
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "Bearer"


@dataclass(frozen=True)
class RegistrationResult:
    user: User
    verification_email_sent: bool


@dataclass(frozen=True)
class ProfileUpdateResult:
    """verification_email_sent is None when the email did not change."""

    user: User
    verification_email_sent: bool | None = None


@dataclass(frozen=True)
class ResetRequestResult:
    """reset_token/expires_in are only populated outside production."""

    message: str
    reset_token: str | None = None
    expires_in: int | None = None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _normalize_email(email: str | None) -> str:
    return (email or "").strip().lower()


def _expiry(seconds: int) -> datetime:
    return datetime.now(timezone.utc) + timedelta(seconds=seconds)


def _strength_messages(hasher: PasswordHasher, password: str) -> list[str]:
    return [v.message for v in hasher.validate_strength(password)]


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class AuthenticationService:
    """Orchestrates the credential flows over the injected collaborators.

    Usage:
        service = AuthenticationService(users, sessions, hasher, codec, notifier)
        pair = service.login("alice@example.com", "Abcd1234")
        pair = service.refresh(pair.refresh_token)
    """

    def __init__(
        self,
        users: UserStore,
        sessions: SessionStore,
        hasher: PasswordHasher,
        codec: TokenCodec,
        notifier: Notifier,
        *,
        reset_ttl: int = 3600,
        expose_reset_token: bool = False,
        default_role: str = "subscriber",
        admin_emails: frozenset[str] = frozenset(),
    ) -> None:
        self.users = users
        self.sessions = sessions
        self.hasher = hasher
        self.codec = codec
        self.notifier = notifier
        self.reset_ttl = reset_ttl
        self.expose_reset_token = expose_reset_token
        self.default_role = default_role
        self.admin_emails = frozenset(e.lower() for e in admin_emails)

    # ------------------------------------------------------------------
    # Registration and login
    # ------------------------------------------------------------------

    def register(
        self,
        email: str,
        password: str,
        first_name: str | None = None,
        last_name: str | None = None,
        phone: str | None = None,
    ) -> RegistrationResult:
        """Create an account and send a verification email (best effort).

        Order: shape validation, duplicate check, strength policy, hash,
        persist. The UNIQUE(email) constraint still backs the duplicate check
        for concurrent registrations.
        """
        email = _normalize_email(email)
        errors: dict[str, str | list[str]] = {}
        if not email:
            errors["email"] = "Email is required"
        elif not _EMAIL_RE.match(email):
            errors["email"] = "Invalid email format"
        if not password:
            errors["password"] = "Password is required"
        if errors:
            raise ValidationError(errors)

        if self.users.get_by_email(email) is not None:
            raise ConflictError()

        violations = _strength_messages(self.hasher, password)
        if violations:
            raise ValidationError({"password": violations})

        roles = [self.default_role]
        if email in self.admin_emails:
            roles.append("admin")
        user = self.users.create_user(
            User(
                email=email,
                password_hash=self.hasher.hash(password),
                first_name=first_name,
                last_name=last_name,
                phone=phone,
                roles=roles,
            )
        )
        logger.info("Registered user %s (%s)", user.id, redact_email(email))

        sent = True
        try:
            self._send_verification(user)
        except NotifierError:
            sent = False
            logger.warning("Verification email for user %s could not be sent", user.id)
        return RegistrationResult(user=user, verification_email_sent=sent)

    def login(self, email: str, password: str) -> TokenPair:
        """Exchange email + password for an access/refresh pair.

        Unknown email and wrong password raise the identical
        AuthenticationError(INVALID_CREDENTIALS) after the same amount of
        bcrypt work [C1].
        """
        email = _normalize_email(email)
        errors: dict[str, str] = {}
        if not email:
            errors["email"] = "Email is required"
        if not password:
            errors["password"] = "Password is required"
        if errors:
            raise ValidationError(errors)

        user = self.users.get_by_email(email)
        if user is None:
            self.hasher.dummy_verify(password)
            raise AuthenticationError(_INVALID_CREDENTIALS, code="INVALID_CREDENTIALS")
        if not self.hasher.verify(password, user.password_hash):
            raise AuthenticationError(_INVALID_CREDENTIALS, code="INVALID_CREDENTIALS")
        if not user.is_active:
            raise AuthorizationError("Account is inactive", code="ACCOUNT_INACTIVE")

        if self.hasher.needs_rehash(user.password_hash):
            self.users.update_password(user.id, self.hasher.hash(password))
            logger.info("Re-hashed password for user %s at cost %d", user.id, self.hasher.cost)
        self.users.update_last_login(user.id)

        access = self.codec.issue_access(user)
        refresh = self.codec.issue_refresh(user.id)
        self.sessions.create_refresh_token(user.id, refresh, _expiry(self.codec.refresh_ttl))
        logger.info("User %s logged in", user.id)
        return TokenPair(user=user, access_token=access, refresh_token=refresh, expires_in=self.codec.access_ttl)

    # ------------------------------------------------------------------
    # Refresh and logout
    # ------------------------------------------------------------------

    def refresh(self, refresh_token: str) -> TokenPair:
        """Rotate a refresh token: the presented one is revoked, a new pair is returned.

        Every rejection raises the same AuthenticationError so callers cannot
        tell a forged token from a revoked or expired one.
        """
        if not refresh_token:
            raise ValidationError({"refresh_token": "Refresh token is required"})

        claims = self.codec.verify(refresh_token, expected=TokenType.REFRESH)
        if claims is None:
            raise AuthenticationError(_INVALID_REFRESH)

        record = self.sessions.find_refresh_token(refresh_token)
        if record is None or record.is_revoked or record.is_expired():
            raise AuthenticationError(_INVALID_REFRESH)
        if str(record.user_id) != claims.subject:
            logger.warning("Refresh token subject mismatch for record %s", record.id)
            raise AuthenticationError(_INVALID_REFRESH)

        user = self.users.get_by_id(record.user_id)
        if user is None or not user.is_active:
            raise AuthenticationError(_INVALID_REFRESH)

        access = self.codec.issue_access(user)
        new_refresh = self.codec.issue_refresh(user.id)
        rotated = self.sessions.rotate_refresh_token(
            record.id, user.id, new_refresh, _expiry(self.codec.refresh_ttl)
        )
        if rotated is None:
            raise AuthenticationError(_INVALID_REFRESH)
        return TokenPair(user=user, access_token=access, refresh_token=new_refresh, expires_in=self.codec.access_ttl)

    def logout(self, refresh_token: str) -> None:
        """Revoke the presented refresh token if it is known. Idempotent."""
        if not refresh_token:
            raise ValidationError({"refresh_token": "Refresh token is required"})
        record = self.sessions.find_refresh_token(refresh_token)
        if record is not None:
            self.sessions.revoke_refresh_token(record.id)

    def logout_all(self, user_id: int) -> int:
        """Revoke every live refresh token of user_id. Returns the number revoked."""
        revoked = self.sessions.revoke_all_for_user(user_id)
        logger.info("Revoked %d session(s) for user %s", revoked, user_id)
        return revoked

    # ------------------------------------------------------------------
    # Password reset and change
    # ------------------------------------------------------------------

    def forgot_password(self, email: str) -> ResetRequestResult:
        """Create a single-use reset record and mail its token [C2]."""
        email = _normalize_email(email)
        if not email:
            raise ValidationError({"email": "Email is required"})
        if not _EMAIL_RE.match(email):
            raise ValidationError({"email": "Invalid email format"})

        user = self.users.get_by_email(email)
        if user is None:
            return ResetRequestResult(message=RESET_REQUESTED_MESSAGE)

        token = self.hasher.generate_token(16)
        self.sessions.create_reset_token(user.id, token, _expiry(self.reset_ttl))
        self.sessions.sweep_expired_reset_tokens()

        try:
            self.notifier.send_password_reset(user.email, token, user.full_name)
        except NotifierError as exc:
            raise NotifierError("Unable to send password reset email") from exc

        if self.expose_reset_token:
            return ResetRequestResult(message=RESET_REQUESTED_MESSAGE, reset_token=token, expires_in=self.reset_ttl)
        return ResetRequestResult(message=RESET_REQUESTED_MESSAGE)

    def reset_password(self, token: str, password: str, confirm_password: str | None = None) -> None:
        """Consume a reset token and set a new password; all sessions are revoked.

        The record is claimed with a conditional update before the password is
        written, so two concurrent resets with one token cannot both succeed.
        """
        if not token:
            raise ValidationError({"token": "Reset token is required"})
        if confirm_password is not None and password != confirm_password:
            raise ValidationError({"confirm_password": "Passwords do not match"})
        violations = _strength_messages(self.hasher, password or "")
        if violations:
            raise ValidationError({"password": violations})

        record = self.sessions.find_valid_reset_token(token)
        if record is None:
            raise AuthenticationError(_INVALID_RESET)
        user = self.users.get_by_id(record.user_id)
        if user is None:
            raise AuthenticationError(_INVALID_RESET)

        digest = self.hasher.hash(password)
        if not self.sessions.mark_reset_token_used(record.id):
            raise AuthenticationError(_INVALID_RESET)
        self.users.update_password(user.id, digest)
        self.sessions.revoke_all_for_user(user.id)
        logger.info("Password reset completed for user %s", user.id)

    def change_password(
        self,
        user_id: int,
        current_password: str,
        new_password: str,
        confirm_password: str | None = None,
    ) -> None:
        """Replace the password of an authenticated user; all sessions are revoked."""
        errors: dict[str, str | list[str]] = {}
        if not current_password:
            errors["current_password"] = "Current password is required"
        if not new_password:
            errors["new_password"] = "New password is required"
        else:
            violations = _strength_messages(self.hasher, new_password)
            if violations:
                errors["new_password"] = violations
        if confirm_password is not None and new_password != confirm_password:
            errors["confirm_password"] = "Passwords do not match"
        if errors:
            raise ValidationError(errors)

        user = self.users.get_by_id(user_id)
        if user is None:
            raise AuthenticationError()
        if not self.hasher.verify(current_password, user.password_hash):
            raise ValidationError({"current_password": "Current password is incorrect"})
        if current_password == new_password:
            raise ValidationError({"new_password": "New password must be different from current password"})

        self.users.update_password(user.id, self.hasher.hash(new_password))
        self.sessions.revoke_all_for_user(user.id)
        logger.info("Password changed for user %s", user.id)

    # ------------------------------------------------------------------
    # Profile
    # ------------------------------------------------------------------

    def update_profile(
        self,
        user_id: int,
        *,
        email: str | None = None,
        first_name: str | None = None,
        last_name: str | None = None,
        phone: str | None = None,
    ) -> ProfileUpdateResult:
        """Update the caller's own profile. None leaves a field unchanged.

        A changed email must be well formed and unused; the account becomes
        unverified and a verification email goes to the new address (best
        effort). Verification tokens issued for the old address stop working
        because verify_email() compares the token's email claim.
        """
        user = self.users.get_by_id(user_id)
        if user is None:
            raise AuthenticationError()

        new_email = None
        if email is not None:
            normalized = _normalize_email(email)
            if normalized != user.email.lower():
                if not normalized or not _EMAIL_RE.match(normalized):
                    raise ValidationError({"email": "Valid email is required"})
                existing = self.users.get_by_email(normalized)
                if existing is not None and existing.id != user.id:
                    raise ValidationError({"email": "This email is already in use"})
                new_email = normalized

        if not self.users.update_profile(
            user.id, email=new_email, first_name=first_name, last_name=last_name, phone=phone
        ):
            raise AuthenticationError()
        updated = self.users.get_by_id(user.id)
        if updated is None:
            raise AuthenticationError()
        if new_email is None:
            return ProfileUpdateResult(user=updated)

        logger.info("User %s changed email to %s", user.id, redact_email(new_email))
        sent = True
        try:
            self._send_verification(updated)
        except NotifierError:
            sent = False
            logger.warning("Verification email for user %s could not be sent", user.id)
        return ProfileUpdateResult(user=updated, verification_email_sent=sent)

    # ------------------------------------------------------------------
    # Email verification
    # ------------------------------------------------------------------

    def verify_email(self, token: str) -> bool:
        """Mark the token's user verified. Returns False if already verified."""
        if not token:
            raise ValidationError({"token": "Verification token is required"})
        claims = self.codec.verify(token, expected=TokenType.VERIFY)
        if claims is None:
            raise AuthenticationError(_INVALID_VERIFY)
        try:
            user_id = int(claims.subject)
        except ValueError:
            raise AuthenticationError(_INVALID_VERIFY) from None

        user = self.users.get_by_id(user_id)
        if user is None or user.email.lower() != (claims.email or "").lower():
            raise AuthenticationError(_INVALID_VERIFY)
        if user.email_verified:
            return False
        return self.users.mark_email_verified(user.id)

    def resend_verification(self, user_id: int) -> bool:
        """Send a fresh verification email. Returns False if already verified."""
        user = self.users.get_by_id(user_id)
        if user is None:
            raise AuthenticationError()
        if user.email_verified:
            return False
        try:
            self._send_verification(user)
        except NotifierError as exc:
            raise NotifierError("Unable to send verification email") from exc
        return True

    def _send_verification(self, user: User) -> None:
        token = self.codec.issue_email_verification(user.id, user.email)
        self.notifier.send_email_verification(user.email, token, user.full_name)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_user(self, user_id: int) -> User | None:
        return self.users.get_by_id(user_id)

    def list_users(self, limit: int = 20, offset: int = 0) -> tuple[list[User], int]:
        """One page of users plus the total count."""
        return self.users.list_users(limit=limit, offset=offset), self.users.count_users()
