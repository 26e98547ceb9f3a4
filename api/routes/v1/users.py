"""
api/routes/v1/users.py -- User profile and admin user listing.

Routes:
  GET /api/v1/users/me      -- the caller's own profile (requires auth)
  PUT /api/v1/users/me      -- update name, phone or email (requires auth)
  GET /api/v1/users         -- paginated user list (admin only)
  GET /api/v1/users/{id}    -- any user's profile (admin only)

/users/me is registered before /users/{user_id} so "me" is never captured as
a path parameter.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from api.models import ErrorDetail, UpdateProfileRequest, UserResponse, envelope
from auth.dependencies import get_identity, require_admin
from auth.errors import AuthenticationError
from auth.models import Identity
from auth.service import AuthenticationService

router = APIRouter()


def _service(request: Request) -> AuthenticationService:
    return request.app.state.auth_service


@router.get("/users/me")
def me(request: Request, identity: Identity = Depends(get_identity)) -> dict:
    """Return the profile of the authenticated user.

    A valid token for a user that has since been deleted is treated as
    unauthenticated.
    """
    user = _service(request).get_user(identity.user_id)
    if user is None:
        raise AuthenticationError()
    return envelope({"user": UserResponse.from_user(user).model_dump()})


@router.put("/users/me")
def update_me(request: Request, body: UpdateProfileRequest, identity: Identity = Depends(get_identity)) -> dict:
    """Update the caller's profile.

    Changing the email marks the account unverified and mails a verification
    link to the new address; verification_email_sent is only present then.
    """
    result = _service(request).update_profile(
        identity.user_id,
        email=body.email,
        first_name=body.first_name,
        last_name=body.last_name,
        phone=body.phone,
    )
    data: dict = {"user": UserResponse.from_user(result.user).model_dump()}
    if result.verification_email_sent is not None:
        data["verification_email_sent"] = result.verification_email_sent
    return envelope(data)


@router.get("/users", dependencies=[Depends(require_admin)])
def list_users(
    request: Request,
    page: int = Query(default=1, ge=1),
    per_page: int = Query(default=20, ge=1, le=100),
) -> dict:
    users, total = _service(request).list_users(limit=per_page, offset=(page - 1) * per_page)
    return envelope(
        {"users": [UserResponse.from_user(u).model_dump() for u in users]},
        page=page,
        per_page=per_page,
        total=total,
        total_pages=(total + per_page - 1) // per_page,
    )


@router.get("/users/{user_id}", dependencies=[Depends(require_admin)])
def get_user(request: Request, user_id: int) -> dict:
    user = _service(request).get_user(user_id)
    if user is None:
        raise HTTPException(
            status_code=404,
            detail=ErrorDetail(code="NOT_FOUND", message="User not found").model_dump(exclude_none=True),
        )
    return envelope({"user": UserResponse.from_user(user).model_dump()})
