"""
auth/tokens.py -- Signed, expiring, typed tokens (JWT via python-jose).

Security design decisions:
  Signing: one shared HMAC secret and one declared algorithm (HS256 by
       default). Both come from Settings at startup and never change at
       runtime. decode() is always called with algorithms=[<that one>], so a
       token claiming "none" or an RSA algorithm is rejected.

  Verification returns None on ANY failure -- malformed, bad signature, wrong
       issuer, expired, missing claims, unknown type. Callers handle "invalid
       token" as data, not as an exception.

  Token types are a closed enum (TokenType). verify(token, expected=...)
       performs the signature check and the intended-use check in one place,
       so call sites never compare "type" strings themselves.

  Refresh tokens carry a random jti so two tokens issued to the same user in
       the same second never collide (their SHA-256 lookup hashes must be
       unique in the store).

Layer rule: no imports from api/. Import from core/ is allowed for Settings.
"""

from __future__ import annotations

import logging
import secrets
import time
from typing import TYPE_CHECKING

from jose import JWTError, jwt

from auth.models import TokenClaims, TokenType

if TYPE_CHECKING:
    from auth.models import User
    from core.config import Settings

logger = logging.getLogger("authcore.auth.tokens")

_DECODE_OPTIONS = {
    "require_exp": True,
    "require_iat": True,
    "require_sub": True,
    "require_iss": True,
}


class TokenCodec:
    """Issue and verify access, refresh, and email-verification tokens.

    Usage:
        codec = TokenCodec.from_settings(get_settings())
        token = codec.issue_access(user)
        claims = codec.verify(token, expected=TokenType.ACCESS)  # TokenClaims | None
    """

    def __init__(
        self,
        secret: str,
        *,
        algorithm: str = "HS256",
        issuer: str = "authcore",
        access_ttl: int = 900,
        refresh_ttl: int = 604800,
        verify_ttl: int = 86400,
    ) -> None:
        self._secret = secret
        self._algorithm = algorithm
        self.issuer = issuer
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self.verify_ttl = verify_ttl

    @classmethod
    def from_settings(cls, settings: Settings) -> TokenCodec:
        return cls(
            settings.jwt_secret,
            algorithm=settings.jwt_algorithm,
            issuer=settings.jwt_issuer,
            access_ttl=settings.access_token_ttl,
            refresh_ttl=settings.refresh_token_ttl,
            verify_ttl=settings.email_verification_ttl,
        )

    # ------------------------------------------------------------------
    # Issue
    # ------------------------------------------------------------------

    def issue_access(self, user: User) -> str:
        """Access token carrying the identity attributes the request gate needs."""
        now = int(time.time())
        return self.encode(
            TokenClaims(
                type=TokenType.ACCESS,
                subject=str(user.id),
                issuer=self.issuer,
                issued_at=now,
                expires_at=now + self.access_ttl,
                email=user.email,
                roles=frozenset(user.roles),
                permissions=frozenset(user.permissions),
            )
        )

    def issue_refresh(self, user_id: int) -> str:
        now = int(time.time())
        return self.encode(
            TokenClaims(
                type=TokenType.REFRESH,
                subject=str(user_id),
                issuer=self.issuer,
                issued_at=now,
                expires_at=now + self.refresh_ttl,
                jti=secrets.token_hex(16),
            )
        )

    def issue_email_verification(self, user_id: int, email: str) -> str:
        now = int(time.time())
        return self.encode(
            TokenClaims(
                type=TokenType.VERIFY,
                subject=str(user_id),
                issuer=self.issuer,
                issued_at=now,
                expires_at=now + self.verify_ttl,
                email=email,
            )
        )

    def encode(self, claims: TokenClaims) -> str:
        """Sign an arbitrary claim set. Sets are serialized as sorted lists."""
        payload: dict = {
            "iss": claims.issuer,
            "sub": claims.subject,
            "iat": claims.issued_at,
            "exp": claims.expires_at,
            "type": claims.type.value,
        }
        if claims.type is TokenType.ACCESS:
            payload["email"] = claims.email
            payload["roles"] = sorted(claims.roles)
            payload["permissions"] = sorted(claims.permissions)
        elif claims.type is TokenType.VERIFY:
            payload["email"] = claims.email
        if claims.jti is not None:
            payload["jti"] = claims.jti
        return jwt.encode(payload, self._secret, algorithm=self._algorithm)

    # ------------------------------------------------------------------
    # Verify
    # ------------------------------------------------------------------

    def verify(self, token: str, expected: TokenType | None = None) -> TokenClaims | None:
        """Decode and verify token. Returns TokenClaims or None on any failure.

        Without expected, any well-formed token type is returned and the caller
        must check claims.type itself. With expected, a token of another type
        is treated exactly like a forged one.
        """
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[self._algorithm],
                issuer=self.issuer,
                options=_DECODE_OPTIONS,
            )
        except JWTError:
            return None
        except (AttributeError, TypeError, ValueError):
            # Non-string input or a payload jose cannot parse as claims.
            return None

        claims = _claims_from_payload(payload)
        if claims is None:
            logger.debug("Rejected structurally invalid token")
            return None
        if expected is not None and claims.type is not expected:
            return None
        return claims


def _claims_from_payload(payload: dict) -> TokenClaims | None:
    """Map a decoded payload onto TokenClaims; None if any claim has the wrong shape."""
    try:
        token_type = TokenType(payload["type"])
    except (KeyError, ValueError):
        return None

    subject = payload.get("sub")
    issued_at = payload.get("iat")
    expires_at = payload.get("exp")
    if not isinstance(subject, str) or not subject:
        return None
    if not isinstance(issued_at, int) or not isinstance(expires_at, int):
        return None

    email = payload.get("email")
    if token_type in (TokenType.ACCESS, TokenType.VERIFY) and not isinstance(email, str):
        return None
    roles = payload.get("roles", [])
    permissions = payload.get("permissions", [])
    for values in (roles, permissions):
        if not isinstance(values, list) or not all(isinstance(v, str) for v in values):
            return None
    jti = payload.get("jti")
    if token_type is TokenType.REFRESH and not isinstance(jti, str):
        return None

    return TokenClaims(
        type=token_type,
        subject=subject,
        issuer=payload["iss"],
        issued_at=issued_at,
        expires_at=expires_at,
        email=email,
        roles=frozenset(roles),
        permissions=frozenset(permissions),
        jti=jti,
    )
