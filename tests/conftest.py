"""
tests/conftest.py -- Shared test fixtures for authcore unit and integration tests.

This module provides:
  - _memory_engine(): an isolated named shared-memory SQLite engine
  - unit fixtures: engine, hasher, codec, users, sessions, notifier, service
  - _patch_lifespan(): wires test collaborators into app.state, bypassing real startup
  - api_client: TestClient over the real app with an admin account pre-created

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs sync route handlers in a thread pool. Plain :memory:
DBs are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares one
in-memory instance across all connections in the same process.

bcrypt runs at cost 4 (its minimum) so the suite stays fast; nothing in the
code under test depends on the cost value except needs_rehash().

The DEBUG env var must be set before any auth/core import so get_settings()
auto-generates JWT_SECRET in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate JWT_SECRET in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.engine import Engine

from api.main import app, init_state
from auth.errors import NotifierError
from auth.models import User
from auth.passwords import PasswordHasher
from auth.service import AuthenticationService
from auth.sessions import SessionStore
from auth.store import UserStore
from auth.tokens import TokenCodec
from core.config import Settings
from core.database import create_db_engine

TEST_SECRET = "test-secret-key-that-is-long-enough-0123456789"
ADMIN_EMAIL = "root@example.com"
ADMIN_PASSWORD = "Rootpass123"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _memory_engine(name: str = "") -> Engine:
    """Create an engine on a fresh named shared-memory SQLite database."""
    name = name or uuid.uuid4().hex
    return create_db_engine(f"sqlite:///file:test_{name}?mode=memory&cache=shared&uri=true")


def _test_settings(**overrides) -> Settings:
    values = {
        "debug": True,
        "app_env": "testing",
        "jwt_secret": TEST_SECRET,
        "password_hash_cost": 4,
        "admin_emails": "boss@example.com",
    }
    values.update(overrides)
    return Settings(**values)


class FakeNotifier:
    """Records every send; raises NotifierError when fail is set."""

    def __init__(self) -> None:
        self.resets: list[tuple[str, str, str | None]] = []
        self.verifications: list[tuple[str, str, str | None]] = []
        self.fail = False

    def send_password_reset(self, email: str, token: str, display_name: str | None = None) -> None:
        if self.fail:
            raise NotifierError()
        self.resets.append((email, token, display_name))

    def send_email_verification(self, email: str, token: str, display_name: str | None = None) -> None:
        if self.fail:
            raise NotifierError()
        self.verifications.append((email, token, display_name))


# ---------------------------------------------------------------------------
# Unit fixtures -- one fresh database per test
# ---------------------------------------------------------------------------


@pytest.fixture
def engine() -> Generator[Engine, None, None]:
    eng = _memory_engine()
    yield eng
    eng.dispose()


@pytest.fixture
def hasher() -> PasswordHasher:
    return PasswordHasher(cost=4)


@pytest.fixture
def codec() -> TokenCodec:
    return TokenCodec(TEST_SECRET, issuer="authcore-test")


@pytest.fixture
def users(engine: Engine) -> UserStore:
    return UserStore(engine)


@pytest.fixture
def sessions(engine: Engine, hasher: PasswordHasher) -> SessionStore:
    return SessionStore(engine, hasher)


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture
def service(
    users: UserStore,
    sessions: SessionStore,
    hasher: PasswordHasher,
    codec: TokenCodec,
    notifier: FakeNotifier,
) -> AuthenticationService:
    """Service as configured outside production: reset tokens are echoed."""
    return AuthenticationService(
        users,
        sessions,
        hasher,
        codec,
        notifier,
        expose_reset_token=True,
        admin_emails=frozenset({"boss@example.com"}),
    )


# ---------------------------------------------------------------------------
# Integration fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(settings: Settings, engine: Engine, notifier: FakeNotifier):
    """Return an async context manager that replaces the real lifespan.

    Wires the test engine and recording notifier into app.state so TestClient
    routes see an isolated database and never touch SMTP. The sweep_task is a
    long-sleeping coroutine (a real asyncio.Task is required for .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        init_state(app, settings, engine, notifier=notifier)
        app.state.sweep_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.sweep_task.cancel()

    return test_lifespan


@pytest.fixture(scope="module")
def api_client() -> Generator[tuple[TestClient, str, FakeNotifier], None, None]:
    """Yield (client, admin_access_token, notifier) for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so tests
    hit real route handlers, dependencies and exception handlers. An admin
    account is created directly in the store before the client starts.
    """
    settings = _test_settings()
    engine = _memory_engine(f"api_{uuid.uuid4().hex}")
    notifier = FakeNotifier()

    hasher = PasswordHasher(cost=settings.password_hash_cost)
    admin = UserStore(engine).create_user(
        User(
            email=ADMIN_EMAIL,
            password_hash=hasher.hash(ADMIN_PASSWORD),
            roles=["subscriber", "admin"],
        )
    )
    token = TokenCodec.from_settings(settings).issue_access(admin)

    app.router.lifespan_context = _patch_lifespan(settings, engine, notifier)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, token, notifier

    engine.dispose()
