"""
API request and response models for authcore REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Every response uses one envelope:
  success -> {"success": true,  "data": {...}, "meta": {"timestamp": ...}}
  failure -> {"success": false, "error": {"code", "message", "details"?}, "meta": {...}}

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from auth.models import User
from auth.passwords import MAX_PASSWORD_BYTES as PASSWORD_MAX_BYTES


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def _check_password_bytes(value: Optional[str]) -> Optional[str]:
    if value is not None and len(value.encode("utf-8")) > PASSWORD_MAX_BYTES:
        raise ValueError(f"Password must be at most {PASSWORD_MAX_BYTES} bytes")
    return value


# ---------------------------------------------------------------------------
# Envelope
# ---------------------------------------------------------------------------


class Meta(BaseModel):
    model_config = ConfigDict(frozen=True)

    timestamp: str = Field(default_factory=_utc_timestamp)


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    details: Optional[Any] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    success: bool = False
    error: ErrorDetail
    meta: Meta = Field(default_factory=Meta)


class SuccessResponse(BaseModel):
    """Top-level success envelope. data is endpoint specific."""

    model_config = ConfigDict(frozen=True)

    success: bool = True
    data: Any = None
    meta: Meta = Field(default_factory=Meta)


def envelope(data: Any, **meta: Any) -> dict:
    """Render a success envelope as a plain dict. Extra meta keys (pagination) are merged in."""
    body = SuccessResponse(data=data).model_dump(mode="json")
    body["meta"].update(meta)
    return body


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register.

    Email shape and password strength are checked by AuthenticationService so
    that their messages match the service's field map.
    """

    email: str = Field(default="", max_length=255)
    password: str = Field(default="")
    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)
    phone: Optional[str] = Field(default=None, max_length=30)

    @field_validator("password")
    @classmethod
    def password_within_bcrypt_limit(cls, value: Optional[str]) -> Optional[str]:
        return _check_password_bytes(value)


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login."""

    email: str = Field(default="", max_length=255)
    password: str = Field(default="")

    @field_validator("password")
    @classmethod
    def password_within_bcrypt_limit(cls, value: Optional[str]) -> Optional[str]:
        return _check_password_bytes(value)


class RefreshRequest(BaseModel):
    """Request body for POST /api/v1/auth/refresh and /auth/logout."""

    refresh_token: str = Field(default="", max_length=4096)


class ForgotPasswordRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(default="", max_length=255)


class ResetPasswordRequest(BaseModel):
    """Request body for POST /api/v1/auth/reset-password.

    confirm_password is optional; when given it must equal password.
    """

    token: str = Field(default="", max_length=256)
    password: str = Field(default="")
    confirm_password: Optional[str] = None

    @field_validator("password", "confirm_password")
    @classmethod
    def password_within_bcrypt_limit(cls, value: Optional[str]) -> Optional[str]:
        return _check_password_bytes(value)


class ChangePasswordRequest(BaseModel):
    """Request body for POST /api/v1/auth/change-password."""

    current_password: str = Field(default="")
    new_password: str = Field(default="")
    confirm_password: Optional[str] = None

    @field_validator("current_password", "new_password", "confirm_password")
    @classmethod
    def password_within_bcrypt_limit(cls, value: Optional[str]) -> Optional[str]:
        return _check_password_bytes(value)


class VerifyEmailRequest(BaseModel):
    token: str = Field(default="", max_length=4096)


class UpdateProfileRequest(BaseModel):
    """Request body for PUT /api/v1/users/me. Omitted fields are left unchanged."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: Optional[str] = Field(default=None, max_length=255)
    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)
    phone: Optional[str] = Field(default=None, max_length=30)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    """Public view of a User. password_hash is never included."""

    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    first_name: Optional[str]
    last_name: Optional[str]
    full_name: str
    phone: Optional[str]
    email_verified: bool
    email_verified_at: Optional[str]
    is_active: bool
    roles: list[str]
    permissions: list[str]
    created_at: Optional[str]
    last_login_at: Optional[str]

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        """Build a UserResponse from a domain User (Factory Method)."""
        return cls(
            id=user.id,
            email=user.email,
            first_name=user.first_name,
            last_name=user.last_name,
            full_name=user.full_name,
            phone=user.phone,
            email_verified=user.email_verified,
            email_verified_at=user.email_verified_at,
            is_active=user.is_active,
            roles=list(user.roles),
            permissions=list(user.permissions),
            created_at=user.created_at,
            last_login_at=user.last_login_at,
        )


class TokenResponse(BaseModel):
    """data payload for login and refresh."""

    model_config = ConfigDict(frozen=True)

    user: UserResponse
    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int


class RegisterResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    user: UserResponse
    message: str = "Registration successful. Please verify your email."
    verification_email_sent: bool


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class ForgotPasswordResponse(BaseModel):
    """reset_token / expires_in appear only outside production."""

    model_config = ConfigDict(frozen=True)

    message: str
    reset_token: Optional[str] = None
    expires_in: Optional[int] = None


class HealthResponse(BaseModel):
    """data payload for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
