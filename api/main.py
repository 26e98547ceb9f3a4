"""
api/main.py -- FastAPI application entry point for authcore.

Run with:  uvicorn asgi:app --reload

Lifespan builds the shared, immutable collaborators once and stores them on
app.state:
  engine        -- one SQLAlchemy Engine (connection pool) per process
  hasher/codec  -- PasswordHasher and TokenCodec built from Settings
  user_store / session_store / notifier
  auth_service  -- AuthenticationService wired over all of the above
  sweep_task    -- background cleanup of used/expired reset and refresh rows

Route handlers read only from app.state; nothing is created per request.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from api.models import ErrorDetail, ErrorResponse, HealthResponse, envelope
from api.routes.v1.auth import router as auth_router
from api.routes.v1.users import router as users_router
from auth.errors import AuthError
from auth.notifier import Notifier, build_notifier
from auth.passwords import PasswordHasher
from auth.service import AuthenticationService
from auth.sessions import SessionStore
from auth.store import UserStore
from auth.tokens import TokenCodec
from core.config import Settings, get_settings
from core.database import create_db_engine

API_VERSION = "1.0.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("authcore.api")


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


def init_state(app: FastAPI, settings: Settings, engine: Engine, notifier: Notifier | None = None) -> None:
    """Build every shared collaborator over engine and attach it to app.state.

    Used by the lifespan and by tests, which pass an in-memory engine and a
    recording notifier.
    """
    hasher = PasswordHasher(cost=settings.password_hash_cost)
    codec = TokenCodec.from_settings(settings)
    users = UserStore(engine)
    sessions = SessionStore(engine, hasher)
    notifier = notifier or build_notifier(settings)

    app.state.settings = settings
    app.state.engine = engine
    app.state.hasher = hasher
    app.state.codec = codec
    app.state.user_store = users
    app.state.session_store = sessions
    app.state.notifier = notifier
    app.state.auth_service = AuthenticationService(
        users,
        sessions,
        hasher,
        codec,
        notifier,
        reset_ttl=settings.password_reset_ttl,
        expose_reset_token=settings.expose_reset_token,
        default_role=settings.default_user_role,
        admin_emails=settings.admin_email_set,
    )


# ---------------------------------------------------------------------------
# Background sweep task
# ---------------------------------------------------------------------------


def sweep_once(sessions: SessionStore) -> tuple[int, int]:
    """Delete used/expired reset rows and expired refresh rows. Returns (resets, refresh)."""
    resets = sessions.sweep_expired_reset_tokens()
    refresh = sessions.sweep_expired_refresh_tokens()
    if resets or refresh:
        logger.info("Swept %d reset token(s) and %d refresh token(s)", resets, refresh)
    return resets, refresh


async def _sweep_loop(app: FastAPI, interval: float) -> None:
    """Run sweep_once every interval seconds.

    The sweep itself is blocking storage work, so it runs in a worker thread.
    A failed sweep is logged and retried on the next tick. CancelledError from
    task.cancel() during shutdown propagates out of asyncio.sleep and unwinds
    the coroutine cleanly.
    """
    while True:
        await asyncio.sleep(interval)
        try:
            await asyncio.to_thread(sweep_once, app.state.session_store)
        except AuthError:
            logger.warning("Token sweep failed; will retry in %s seconds", interval)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Everything before yield runs on startup; everything after yield runs on
    shutdown. The engine is disposed last, after the sweep task is cancelled.
    """
    settings = get_settings()
    logger.info("authcore API starting up (env=%s)", settings.app_env)
    engine = create_db_engine(settings.database_url, timeout=settings.db_timeout)
    init_state(app, settings, engine)
    logger.info("Stores initialized (%s)", engine.url.get_backend_name())
    app.state.sweep_task = asyncio.create_task(_sweep_loop(app, settings.sweep_interval_seconds))

    yield

    app.state.sweep_task.cancel()
    engine.dispose()
    logger.info("authcore API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="authcore API",
    description="Credential issuance, rotation and revocation for authenticated users.",
    version=API_VERSION,
    lifespan=lifespan,
)


# ---------------------------------------------------------------------------
# Request logging middleware
#
# Pattern: Interceptor. Every request passes through this coroutine before
# reaching any route handler; latency is measured around call_next. Only the
# path is logged, never the query string or body.
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(users_router, prefix="/api/v1", tags=["Users"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _error_response(status_code: int, code: str, message: str, details=None) -> JSONResponse:
    body = ErrorResponse(error=ErrorDetail(code=code, message=message, details=details)).model_dump(mode="json")
    if details is None:
        body["error"].pop("details")
    return JSONResponse(status_code=status_code, content=body)


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Render any AuthError subclass with its own status and code."""
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.__cause__ or exc.message)
    return _error_response(exc.status_code, exc.code, exc.message, exc.details)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with a field -> messages map when the body or query fails validation."""
    details: dict[str, list[str]] = {}
    for err in exc.errors():
        loc = [str(part) for part in err.get("loc", ()) if part not in ("body", "query", "path")]
        field = ".".join(loc) or "body"
        message = str(err.get("msg", "Invalid value")).removeprefix("Value error, ")
        details.setdefault(field, []).append(message)
    return _error_response(422, "VALIDATION_ERROR", "Validation failed", details)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    Route handlers raise HTTPException with detail=ErrorDetail(...).model_dump()
    (a dict). When detail is already a structured dict, use it directly as the
    error field rather than stringifying it.
    """
    if isinstance(exc.detail, dict):
        return _error_response(
            exc.status_code,
            exc.detail.get("code", f"HTTP_{exc.status_code}"),
            exc.detail.get("message", ""),
            exc.detail.get("details"),
        )
    return _error_response(exc.status_code, f"HTTP_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception is written to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error_response(500, "INTERNAL_ERROR", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
def health(request: Request) -> dict:
    """Return API liveness, version, and a database round-trip check."""
    database = "ok"
    try:
        with request.app.state.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except SQLAlchemyError:
        logger.warning("Health check: database unreachable")
        database = "error"
    status = "healthy" if database == "ok" else "degraded"
    data = HealthResponse(status=status, version=API_VERSION, components={"app": "ok", "database": database})
    return envelope(data.model_dump())
