"""
auth/sessions.py -- Persistence for refresh-token and password-reset records.

Pattern: Repository + Data Mapper (same as auth/store.py). SessionStore is the
only code that reads or writes the refresh_tokens and password_resets tables.

Invariants enforced here:
  Plaintext tokens are never stored. Rows are keyed by SHA-256(token), computed
  with PasswordHasher.hash_token(), and looked up by that hash.

  Revocation and reset consumption are conditional updates
  ("... WHERE revoked_at IS NULL" / "... WHERE used_at IS NULL"). The database
  applies them atomically per row, so a second caller is a no-op and learns it
  lost via the returned bool. No application-level locking is used.

  Rotation inserts the successor and revokes the predecessor in ONE
  transaction. If the predecessor was already revoked (a concurrent rotation
  or logout won), the transaction rolls back and the successor never becomes
  visible -- at most one rotation wins each link of the chain.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import Column, Integer, MetaData, String, Table
from sqlalchemy.engine import Engine

from auth.models import PasswordReset, RefreshToken
from auth.passwords import PasswordHasher
from auth.store import storage_errors

logger = logging.getLogger("authcore.auth.sessions")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_refresh_tokens = Table(
    "refresh_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("token_hash", String(64), nullable=False, unique=True),  # SHA-256 hex
    Column("expires_at", String(32), nullable=False),
    Column("revoked_at", String(32)),
    Column("replaced_by", Integer),  # id of the successor after rotation
    Column("created_at", String(32), nullable=False),
)

_password_resets = Table(
    "password_resets",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("token_hash", String(64), nullable=False, unique=True),  # SHA-256 hex
    Column("expires_at", String(32), nullable=False),
    Column("used_at", String(32)),
    Column("created_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _to_iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _now_iso() -> str:
    return _to_iso(datetime.now(timezone.utc))


def _from_iso(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class _RotationLost(Exception):
    """Raised inside the rotation transaction to roll it back."""


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class SessionStore:
    """Repository for RefreshToken and PasswordReset records.

    Usage:
        sessions = SessionStore(engine, hasher)
        record = sessions.create_refresh_token(user.id, token, expires_at)
        sessions.find_refresh_token(token)         # -> RefreshToken | None
        sessions.revoke_refresh_token(record.id)   # -> True (False on repeat)
    """

    def __init__(self, engine: Engine, hasher: PasswordHasher) -> None:
        self.engine = engine
        self._hasher = hasher
        with storage_errors("schema setup"):
            _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Refresh tokens
    # ------------------------------------------------------------------

    def create_refresh_token(self, user_id: int, plaintext: str, expires_at: datetime) -> RefreshToken:
        """Persist the hash of a freshly issued refresh token.

        A duplicate hash (constraint violation) raises PersistenceError.
        """
        token_hash = self._hasher.hash_token(plaintext)
        now = _now_iso()
        with storage_errors("create_refresh_token"), self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.insert().values(
                    user_id=user_id,
                    token_hash=token_hash,
                    expires_at=_to_iso(expires_at),
                    created_at=now,
                )
            )
            token_id = result.inserted_primary_key[0]
        return RefreshToken(
            id=token_id,
            user_id=user_id,
            token_hash=token_hash,
            expires_at=_from_iso(_to_iso(expires_at)),
            created_at=_from_iso(now),
        )

    def find_refresh_token(self, plaintext: str) -> RefreshToken | None:
        """Return the record for plaintext regardless of state; None on miss."""
        token_hash = self._hasher.hash_token(plaintext)
        with storage_errors("find_refresh_token"), self.engine.connect() as conn:
            row = conn.execute(_refresh_tokens.select().where(_refresh_tokens.c.token_hash == token_hash)).fetchone()
        return _row_to_refresh_token(row) if row is not None else None

    def revoke_refresh_token(self, token_id: int, replaced_by: int | None = None) -> bool:
        """Revoke one record if it is still live. Idempotent.

        replaced_by is audit metadata only and is written only by the call that
        actually revokes. Returns True if this call revoked the record.
        """
        values: dict = {"revoked_at": _now_iso()}
        if replaced_by is not None:
            values["replaced_by"] = replaced_by
        with storage_errors("revoke_refresh_token"), self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.id == token_id) & (_refresh_tokens.c.revoked_at.is_(None)))
                .values(**values)
            )
        return result.rowcount > 0

    def rotate_refresh_token(
        self, old_id: int, user_id: int, plaintext: str, expires_at: datetime
    ) -> RefreshToken | None:
        """Atomically replace record old_id with a new one for plaintext.

        Returns the new record, or None if old_id had already been revoked by
        someone else (the caller lost the race and must not hand out the new
        token). A storage failure rolls back both writes.
        """
        token_hash = self._hasher.hash_token(plaintext)
        now = _now_iso()
        try:
            with storage_errors("rotate_refresh_token"), self.engine.begin() as conn:
                result = conn.execute(
                    _refresh_tokens.insert().values(
                        user_id=user_id,
                        token_hash=token_hash,
                        expires_at=_to_iso(expires_at),
                        created_at=now,
                    )
                )
                new_id = result.inserted_primary_key[0]
                revoked = conn.execute(
                    _refresh_tokens.update()
                    .where((_refresh_tokens.c.id == old_id) & (_refresh_tokens.c.revoked_at.is_(None)))
                    .values(revoked_at=now, replaced_by=new_id)
                )
                if revoked.rowcount != 1:
                    raise _RotationLost()
        except _RotationLost:
            logger.warning("Refresh token %s was already revoked; rotation rolled back", old_id)
            return None
        return RefreshToken(
            id=new_id,
            user_id=user_id,
            token_hash=token_hash,
            expires_at=_from_iso(_to_iso(expires_at)),
            created_at=_from_iso(now),
        )

    def revoke_all_for_user(self, user_id: int) -> int:
        """Revoke every live refresh token of user_id. Returns the number revoked."""
        with storage_errors("revoke_all_for_user"), self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.user_id == user_id) & (_refresh_tokens.c.revoked_at.is_(None)))
                .values(revoked_at=_now_iso())
            )
        return result.rowcount

    def sweep_expired_refresh_tokens(self) -> int:
        """Delete refresh records past their expiry. Returns rows removed."""
        with storage_errors("sweep_expired_refresh_tokens"), self.engine.begin() as conn:
            result = conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.expires_at < _now_iso()))
        return result.rowcount

    # ------------------------------------------------------------------
    # Password resets
    # ------------------------------------------------------------------

    def create_reset_token(self, user_id: int, plaintext: str, expires_at: datetime) -> PasswordReset:
        token_hash = self._hasher.hash_token(plaintext)
        now = _now_iso()
        with storage_errors("create_reset_token"), self.engine.begin() as conn:
            result = conn.execute(
                _password_resets.insert().values(
                    user_id=user_id,
                    token_hash=token_hash,
                    expires_at=_to_iso(expires_at),
                    created_at=now,
                )
            )
            reset_id = result.inserted_primary_key[0]
        return PasswordReset(
            id=reset_id,
            user_id=user_id,
            token_hash=token_hash,
            expires_at=_from_iso(_to_iso(expires_at)),
            created_at=_from_iso(now),
        )

    def find_valid_reset_token(self, plaintext: str) -> PasswordReset | None:
        """Return the record only if it is unused and unexpired."""
        token_hash = self._hasher.hash_token(plaintext)
        with storage_errors("find_valid_reset_token"), self.engine.connect() as conn:
            row = conn.execute(
                _password_resets.select()
                .where(
                    (_password_resets.c.token_hash == token_hash)
                    & (_password_resets.c.used_at.is_(None))
                    & (_password_resets.c.expires_at > _now_iso())
                )
                .order_by(_password_resets.c.created_at.desc())
                .limit(1)
            ).fetchone()
        return _row_to_password_reset(row) if row is not None else None

    def mark_reset_token_used(self, reset_id: int) -> bool:
        """Consume the record. Returns False if it was already used (no-op)."""
        with storage_errors("mark_reset_token_used"), self.engine.begin() as conn:
            result = conn.execute(
                _password_resets.update()
                .where((_password_resets.c.id == reset_id) & (_password_resets.c.used_at.is_(None)))
                .values(used_at=_now_iso())
            )
        return result.rowcount > 0

    def sweep_expired_reset_tokens(self) -> int:
        """Delete used or expired reset records. Safe to run at any time.

        Only rows that can never validate again are removed, so there is no
        ordering requirement with concurrent find_valid_reset_token() calls.
        """
        with storage_errors("sweep_expired_reset_tokens"), self.engine.begin() as conn:
            result = conn.execute(
                _password_resets.delete().where(
                    (_password_resets.c.used_at.is_not(None)) | (_password_resets.c.expires_at < _now_iso())
                )
            )
        return result.rowcount


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_refresh_token(row) -> RefreshToken:
    return RefreshToken(
        id=row.id,
        user_id=row.user_id,
        token_hash=row.token_hash,
        expires_at=_from_iso(row.expires_at),
        revoked_at=_from_iso(row.revoked_at),
        replaced_by=row.replaced_by,
        created_at=_from_iso(row.created_at),
    )


def _row_to_password_reset(row) -> PasswordReset:
    return PasswordReset(
        id=row.id,
        user_id=row.user_id,
        token_hash=row.token_hash,
        expires_at=_from_iso(row.expires_at),
        used_at=_from_iso(row.used_at),
        created_at=_from_iso(row.created_at),
    )
