"""
auth/store.py -- SQLAlchemy Core persistence layer for user accounts.

Pattern: Repository + Data Mapper. UserStore is the repository; _row_to_user
is the mapper. Route, service, and dependency code never touches SQL directly.

The Engine is injected (see core/database.py) so UserStore and SessionStore
share one connection pool per process. The store never disposes the engine --
its owner (API lifespan, CLI) does.

Security:
  All queries use bound parameters. No f-strings in SQL.
  Emails are stored lower-cased; lookups lower-case their input, so the
  UNIQUE(email) constraint is effectively case-insensitive.

Errors:
  Every SQLAlchemyError is translated to PersistenceError by storage_errors()
  -- callers never see driver exceptions. A duplicate email on insert becomes
  ConflictError (EMAIL_EXISTS) instead.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, UniqueConstraint, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.errors import ConflictError, PersistenceError
from auth.models import User

logger = logging.getLogger("authcore.auth.store")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("password_hash", Text, nullable=False),
    Column("first_name", String(100)),
    Column("last_name", String(100)),
    Column("phone", String(30)),
    Column("email_verified", Integer, nullable=False, server_default="0"),
    Column("email_verified_at", String(32)),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32)),
    Column("last_login_at", String(32)),
)

_user_roles = Table(
    "user_roles",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("role", String(50), nullable=False),
    UniqueConstraint("user_id", "role", name="uq_user_role"),
)

_user_permissions = Table(
    "user_permissions",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("permission", String(100), nullable=False),
    UniqueConstraint("user_id", "permission", name="uq_user_permission"),
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    # Fixed microsecond precision keeps stored timestamps lexicographically ordered.
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


@contextmanager
def storage_errors(operation: str) -> Iterator[None]:
    """Translate any SQLAlchemyError raised inside the block into PersistenceError.

    The driver exception is logged here (server side only) and chained onto
    the PersistenceError; the client-facing message stays generic.
    """
    try:
        yield
    except SQLAlchemyError as exc:
        logger.error("Storage failure during %s: %s", operation, exc.__class__.__name__, exc_info=True)
        raise PersistenceError() from exc


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User accounts, their roles, and their permissions.

    Usage:
        store = UserStore(engine)
        user = store.create_user(User(email="a@example.com", password_hash=hasher.hash("Abcd1234")))
        store.get_by_email("A@example.com")  # same user
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        with storage_errors("schema setup"):
            _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Create / read
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> User:
        """Insert a user with its roles/permissions and return the hydrated record.

        Raises ConflictError if the email is already registered. The UNIQUE
        constraint is the arbiter, so two concurrent registrations for the same
        email cannot both succeed.
        """
        now = _now_iso()
        with storage_errors("create_user"):
            try:
                with self.engine.begin() as conn:
                    result = conn.execute(
                        _users.insert().values(
                            email=user.email.strip().lower(),
                            password_hash=user.password_hash,
                            first_name=user.first_name,
                            last_name=user.last_name,
                            phone=user.phone,
                            email_verified=1 if user.email_verified else 0,
                            is_active=1 if user.is_active else 0,
                            created_at=now,
                            updated_at=now,
                        )
                    )
                    user_id = result.inserted_primary_key[0]
                    roles = sorted(set(user.roles))
                    if roles:
                        conn.execute(_user_roles.insert(), [{"user_id": user_id, "role": r} for r in roles])
                    permissions = sorted(set(user.permissions))
                    if permissions:
                        conn.execute(
                            _user_permissions.insert(),
                            [{"user_id": user_id, "permission": p} for p in permissions],
                        )
            except IntegrityError as exc:
                raise ConflictError() from exc
        created = self.get_by_id(user_id)
        if created is None:
            raise PersistenceError()
        return created

    def get_by_id(self, user_id: int) -> User | None:
        """Look up a user by primary key. Returns None if not found."""
        with storage_errors("get_by_id"), self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
            return self._hydrate(conn, row) if row is not None else None

    def get_by_email(self, email: str) -> User | None:
        """Look up a user by email (case-insensitive). Returns None if not found."""
        with storage_errors("get_by_email"), self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email.strip().lower())).fetchone()
            return self._hydrate(conn, row) if row is not None else None

    def list_users(self, limit: int = 20, offset: int = 0) -> list[User]:
        """Return one page of users, newest first. Admin-only operation."""
        with storage_errors("list_users"), self.engine.connect() as conn:
            rows = conn.execute(
                _users.select().order_by(_users.c.created_at.desc(), _users.c.id.desc()).limit(limit).offset(offset)
            ).fetchall()
            return [self._hydrate(conn, r) for r in rows]

    def count_users(self) -> int:
        with storage_errors("count_users"), self.engine.connect() as conn:
            return conn.execute(select(func.count()).select_from(_users)).scalar() or 0

    # ------------------------------------------------------------------
    # Updates
    # ------------------------------------------------------------------

    def update_last_login(self, user_id: int) -> None:
        """Stamp the current UTC time as last_login_at. Called on every successful login."""
        with storage_errors("update_last_login"), self.engine.begin() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(last_login_at=_now_iso()))

    def update_password(self, user_id: int, password_hash: str) -> bool:
        """Replace the stored digest. Returns False if the user no longer exists."""
        with storage_errors("update_password"), self.engine.begin() as conn:
            result = conn.execute(
                _users.update().where(_users.c.id == user_id).values(password_hash=password_hash, updated_at=_now_iso())
            )
        return result.rowcount > 0

    def mark_email_verified(self, user_id: int) -> bool:
        """Set email_verified once. Returns False if it was already verified (or no such user)."""
        now = _now_iso()
        with storage_errors("mark_email_verified"), self.engine.begin() as conn:
            result = conn.execute(
                _users.update()
                .where((_users.c.id == user_id) & (_users.c.email_verified == 0))
                .values(email_verified=1, email_verified_at=now, updated_at=now)
            )
        return result.rowcount > 0

    def update_profile(
        self,
        user_id: int,
        *,
        email: str | None = None,
        first_name: str | None = None,
        last_name: str | None = None,
        phone: str | None = None,
    ) -> bool:
        """Overwrite the profile fields that are not None.

        A new email clears email_verified and email_verified_at in the same
        statement. Raises ConflictError if the email belongs to another account.
        Returns False if the user no longer exists.
        """
        values: dict[str, object] = {"updated_at": _now_iso()}
        if first_name is not None:
            values["first_name"] = first_name
        if last_name is not None:
            values["last_name"] = last_name
        if phone is not None:
            values["phone"] = phone
        if email is not None:
            values.update(email=email.strip().lower(), email_verified=0, email_verified_at=None)
        with storage_errors("update_profile"):
            try:
                with self.engine.begin() as conn:
                    result = conn.execute(_users.update().where(_users.c.id == user_id).values(**values))
            except IntegrityError as exc:
                raise ConflictError() from exc
        return result.rowcount > 0

    def set_active(self, user_id: int, is_active: bool) -> bool:
        with storage_errors("set_active"), self.engine.begin() as conn:
            result = conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(is_active=1 if is_active else 0, updated_at=_now_iso())
            )
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Roles and permissions
    # ------------------------------------------------------------------

    def add_role(self, user_id: int, role: str) -> bool:
        """Grant role. Returns False if the user already had it."""
        with storage_errors("add_role"):
            try:
                with self.engine.begin() as conn:
                    conn.execute(_user_roles.insert().values(user_id=user_id, role=role.strip().lower()))
            except IntegrityError:
                return False
        return True

    def remove_role(self, user_id: int, role: str) -> bool:
        with storage_errors("remove_role"), self.engine.begin() as conn:
            result = conn.execute(
                _user_roles.delete().where(
                    (_user_roles.c.user_id == user_id) & (_user_roles.c.role == role.strip().lower())
                )
            )
        return result.rowcount > 0

    def add_permission(self, user_id: int, permission: str) -> bool:
        """Grant permission. Returns False if the user already had it."""
        with storage_errors("add_permission"):
            try:
                with self.engine.begin() as conn:
                    conn.execute(
                        _user_permissions.insert().values(user_id=user_id, permission=permission.strip().lower())
                    )
            except IntegrityError:
                return False
        return True

    # ------------------------------------------------------------------
    # Mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _hydrate(conn, row) -> User:
        roles = conn.execute(
            select(_user_roles.c.role).where(_user_roles.c.user_id == row.id).order_by(_user_roles.c.role)
        ).scalars()
        permissions = conn.execute(
            select(_user_permissions.c.permission)
            .where(_user_permissions.c.user_id == row.id)
            .order_by(_user_permissions.c.permission)
        ).scalars()
        return _row_to_user(row, list(roles), list(permissions))


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row, roles: list[str], permissions: list[str]) -> User:
    return User(
        id=row.id,
        email=row.email,
        password_hash=row.password_hash,
        first_name=row.first_name,
        last_name=row.last_name,
        phone=row.phone,
        email_verified=bool(row.email_verified),
        email_verified_at=row.email_verified_at,
        is_active=bool(row.is_active),
        created_at=row.created_at,
        updated_at=row.updated_at,
        last_login_at=row.last_login_at,
        roles=roles,
        permissions=permissions,
    )
