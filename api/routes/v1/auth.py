"""
api/routes/v1/auth.py -- Credential lifecycle REST endpoints.

Routes:
  POST /api/v1/auth/register             -- create account; sends verification email
  POST /api/v1/auth/login                -- email + password -> access/refresh pair
  POST /api/v1/auth/refresh              -- rotate refresh token -> new pair
  POST /api/v1/auth/logout               -- revoke one refresh token (idempotent)
  POST /api/v1/auth/logout-all           -- revoke every session of the caller (requires auth)
  POST /api/v1/auth/forgot-password      -- create a reset token and mail it
  POST /api/v1/auth/reset-password       -- consume reset token, set new password
  POST /api/v1/auth/change-password      -- change password (requires auth)
  POST /api/v1/auth/verify-email         -- consume email verification token
  POST /api/v1/auth/resend-verification  -- mail a fresh verification token (requires auth)

Handlers are plain `def`, so FastAPI runs them in its threadpool. A client
disconnect does not cancel a storage write that is already in flight.

Errors are raised as AuthError subclasses by AuthenticationService and
rendered by the exception handler in api/main.py.

Security:
  [C1] Login timing equalization lives in AuthenticationService.login().
  [C2] forgot-password answers identically for known and unknown emails.
  [M5] Cache-Control: no-store on every response that carries a token.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.models import (
    ChangePasswordRequest,
    ForgotPasswordRequest,
    ForgotPasswordResponse,
    LoginRequest,
    MessageResponse,
    RefreshRequest,
    RegisterRequest,
    RegisterResponse,
    ResetPasswordRequest,
    TokenResponse,
    UserResponse,
    VerifyEmailRequest,
    envelope,
)
from auth.dependencies import get_identity
from auth.models import Identity
from auth.service import AuthenticationService, TokenPair

# Auth policy:
# - register, login, refresh, logout, forgot-password, reset-password,
#   verify-email: public -- the caller has no access token (yet)
# - logout-all, change-password, resend-verification: requires auth (get_identity)
router = APIRouter()


def _service(request: Request) -> AuthenticationService:
    return request.app.state.auth_service


def _no_store(content: dict, status_code: int = 200) -> JSONResponse:
    resp = JSONResponse(status_code=status_code, content=content)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    resp.headers["Pragma"] = "no-cache"
    return resp


def _token_payload(pair: TokenPair) -> dict:
    return TokenResponse(
        user=UserResponse.from_user(pair.user),
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        token_type=pair.token_type,
        expires_in=pair.expires_in,
    ).model_dump()


def _message(text: str) -> dict:
    return envelope(MessageResponse(message=text).model_dump())


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/register", status_code=201)
def register(request: Request, body: RegisterRequest) -> JSONResponse:
    """Create an account. A mail failure does not fail registration;
    verification_email_sent reports whether the email went out."""
    result = _service(request).register(
        body.email,
        body.password,
        first_name=body.first_name,
        last_name=body.last_name,
        phone=body.phone,
    )
    data = RegisterResponse(
        user=UserResponse.from_user(result.user),
        verification_email_sent=result.verification_email_sent,
    ).model_dump()
    return JSONResponse(status_code=201, content=envelope(data))


@router.post("/auth/login")
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password.

    Unknown email and wrong password produce the same 401 INVALID_CREDENTIALS.
    """
    pair = _service(request).login(body.email, body.password)
    return _no_store(envelope(_token_payload(pair)))


@router.post("/auth/refresh")
def refresh(request: Request, body: RefreshRequest) -> JSONResponse:
    """Exchange a refresh token for a new pair. The presented token is revoked."""
    pair = _service(request).refresh(body.refresh_token)
    return _no_store(envelope(_token_payload(pair)))


@router.post("/auth/logout")
def logout(request: Request, body: RefreshRequest) -> dict:
    _service(request).logout(body.refresh_token)
    return _message("Logged out successfully")


@router.post("/auth/forgot-password")
def forgot_password(request: Request, body: ForgotPasswordRequest) -> JSONResponse:
    """Start a password reset [C2].

    reset_token and expires_in are included only when APP_ENV is not
    "production"; they exist so local and staging environments can complete
    the flow without a mail server.
    """
    result = _service(request).forgot_password(body.email)
    data = ForgotPasswordResponse(
        message=result.message,
        reset_token=result.reset_token,
        expires_in=result.expires_in,
    ).model_dump(exclude_none=True)
    return _no_store(envelope(data))


@router.post("/auth/reset-password")
def reset_password(request: Request, body: ResetPasswordRequest) -> dict:
    _service(request).reset_password(body.token, body.password, body.confirm_password)
    return _message("Password has been reset successfully")


@router.post("/auth/verify-email")
def verify_email(request: Request, body: VerifyEmailRequest) -> dict:
    verified = _service(request).verify_email(body.token)
    return _message("Email verified successfully" if verified else "Email already verified")


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/logout-all")
def logout_all(request: Request, identity: Identity = Depends(get_identity)) -> dict:
    """Revoke every refresh token of the caller. Outstanding access tokens stay
    valid until they expire."""
    revoked = _service(request).logout_all(identity.user_id)
    return envelope({"message": "Logged out from all sessions", "revoked": revoked})


@router.post("/auth/change-password")
def change_password(
    request: Request,
    body: ChangePasswordRequest,
    identity: Identity = Depends(get_identity),
) -> dict:
    _service(request).change_password(
        identity.user_id,
        body.current_password,
        body.new_password,
        body.confirm_password,
    )
    return _message("Password changed successfully")


@router.post("/auth/resend-verification")
def resend_verification(request: Request, identity: Identity = Depends(get_identity)) -> dict:
    sent = _service(request).resend_verification(identity.user_id)
    return _message("Verification email sent successfully" if sent else "Email already verified")
