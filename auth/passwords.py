"""
auth/passwords.py -- Password hashing, strength policy, and opaque token helpers.

Security design decisions:
  Passwords: bcrypt, used directly (no passlib wrapper). Its cost factor makes
       brute-force of low-entropy secrets expensive. The cost is embedded in
       every digest ("$2b$12$..."), which is what needs_rehash() reads to
       support online cost migration: login re-hashes stale digests.

  Opaque tokens (refresh / reset lookup): SHA-256, deliberately NOT bcrypt.
       Reset tokens are 256-bit random values and refresh tokens are signed
       JWTs with a random jti, so the input already has enough entropy. A
       fast deterministic digest lets the store look rows up by hash in O(1).

  Timing equalization [C1]: dummy_verify() runs bcrypt against a digest
       computed once per hasher, so a login for an unknown email costs the
       same as a wrong password and response time does not reveal which
       emails are registered.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import hashlib
import re
import secrets

import bcrypt

from auth.errors import HashingError
from auth.models import Violation

_MIN_LENGTH = 8

# bcrypt only reads the first 72 bytes of its input.
MAX_PASSWORD_BYTES = 72

_RULES: tuple[tuple[str, re.Pattern, str], ...] = (
    ("uppercase", re.compile(r"[A-Z]"), "Password must contain at least one uppercase letter"),
    ("lowercase", re.compile(r"[a-z]"), "Password must contain at least one lowercase letter"),
    ("digit", re.compile(r"[0-9]"), "Password must contain at least one number"),
)


class PasswordHasher:
    """bcrypt hashing with a fixed, configuration-sourced cost.

    Usage:
        hasher = PasswordHasher(cost=12)
        digest = hasher.hash("Abcd1234")
        hasher.verify("Abcd1234", digest)  # True
    """

    def __init__(self, cost: int = 12) -> None:
        self.cost = cost
        self._dummy_hash = bcrypt.hashpw(b"authcore_timing_dummy", bcrypt.gensalt(rounds=cost))

    # ------------------------------------------------------------------
    # Passwords
    # ------------------------------------------------------------------

    def hash(self, plaintext: str) -> str:
        """Return a bcrypt digest of plaintext.

        Inputs over MAX_PASSWORD_BYTES are refused with HashingError instead of
        being truncated. The API layer rejects them earlier with a 422; callers
        that skip it (the CLI) get the error here.
        """
        encoded = plaintext.encode("utf-8")
        if len(encoded) > MAX_PASSWORD_BYTES:
            raise HashingError()
        try:
            digest = bcrypt.hashpw(encoded, bcrypt.gensalt(rounds=self.cost))
        except (ValueError, TypeError) as exc:
            raise HashingError() from exc
        return digest.decode("utf-8")

    def verify(self, plaintext: str, digest: str) -> bool:
        """Return True if plaintext matches digest. Never raises."""
        encoded = plaintext.encode("utf-8")
        if len(encoded) > MAX_PASSWORD_BYTES:
            return False
        try:
            return bcrypt.checkpw(encoded, digest.encode("utf-8"))
        except (ValueError, TypeError):
            return False

    def dummy_verify(self, plaintext: str) -> None:
        """Burn one bcrypt verification for a user that does not exist [C1]."""
        try:
            bcrypt.checkpw(plaintext.encode("utf-8")[:MAX_PASSWORD_BYTES], self._dummy_hash)
        except ValueError:
            pass

    def needs_rehash(self, digest: str) -> bool:
        """True if digest was produced with a different cost (or is not bcrypt at all)."""
        parts = digest.split("$")
        if len(parts) != 4 or not parts[2].isdigit():
            return True
        return int(parts[2]) != self.cost

    # ------------------------------------------------------------------
    # Strength policy
    # ------------------------------------------------------------------

    @staticmethod
    def validate_strength(plaintext: str) -> list[Violation]:
        """Return every violated rule (empty list = acceptable).

        Special characters are intentionally not required.
        """
        violations: list[Violation] = []
        if len(plaintext) < _MIN_LENGTH:
            violations.append(Violation("min_length", f"Password must be at least {_MIN_LENGTH} characters long"))
        for rule, pattern, message in _RULES:
            if not pattern.search(plaintext):
                violations.append(Violation(rule, message))
        return violations

    # ------------------------------------------------------------------
    # Opaque tokens
    # ------------------------------------------------------------------

    @staticmethod
    def generate_token(byte_length: int = 32) -> str:
        """Return byte_length random bytes as hex (2 * byte_length chars)."""
        return secrets.token_hex(byte_length)

    @staticmethod
    def hash_token(token: str) -> str:
        """SHA-256 hex digest used for refresh/reset lookup-by-hash."""
        return hashlib.sha256(token.encode("utf-8")).hexdigest()
