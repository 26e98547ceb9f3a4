"""
auth/dependencies.py -- FastAPI Depends() helpers: the request gate.

Two steps, each a dependency:
  1. get_identity() -- authentication. Requires "Authorization: Bearer <token>"
     (scheme matched case-insensitively), verifies it as an ACCESS token and
     attaches the resulting Identity to request.state.identity.
  2. require_access(roles=..., permissions=...) -- authorization. Builds on
     get_identity() and checks the identity's roles/permissions.

The gate trusts the claims inside a valid access token; it does not hit the
database. A role revoked in storage therefore keeps working until the token
expires (ACCESS_TOKEN_TTL).

Failures raise AuthenticationError (401) / AuthorizationError (403); the
exception handler in api/main.py renders them. The messages are fixed and do
not say which check failed.

Layer rule: no imports from api/ or core/.
  auth/dependencies.py may import from fastapi (for Depends/Request) because
  this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Iterable

from fastapi import Depends, Request

from auth.errors import AuthenticationError, AuthorizationError
from auth.models import Identity, TokenType
from auth.tokens import TokenCodec

_BEARER_RE = re.compile(r"^Bearer\s+(\S+)\s*$", re.IGNORECASE)


def get_identity(request: Request) -> Identity:
    """Require a valid access token. Raises AuthenticationError otherwise.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(identity: Identity = Depends(get_identity)): ...
    """
    header = request.headers.get("Authorization", "")
    match = _BEARER_RE.match(header)
    if match is None:
        # Missing or malformed header: rejected before the codec is touched.
        raise AuthenticationError()

    codec: TokenCodec = request.app.state.codec
    claims = codec.verify(match.group(1), expected=TokenType.ACCESS)
    if claims is None:
        raise AuthenticationError("Invalid or expired token")
    try:
        user_id = int(claims.subject)
    except ValueError:
        raise AuthenticationError("Invalid or expired token") from None

    identity = Identity(
        user_id=user_id,
        email=claims.email,
        roles=frozenset(r.lower() for r in claims.roles),
        permissions=frozenset(p.lower() for p in claims.permissions),
    )
    request.state.identity = identity
    return identity


def is_authorized(identity: Identity, roles: Iterable[str] = (), permissions: Iterable[str] = ()) -> bool:
    """Any-of within each configured set; both sets configured means both must pass.

    Comparison is case-insensitive. Nothing configured always passes.
    """
    wanted_roles = {r.lower() for r in roles}
    wanted_permissions = {p.lower() for p in permissions}
    if wanted_roles and not (wanted_roles & identity.roles):
        return False
    if wanted_permissions and not (wanted_permissions & identity.permissions):
        return False
    return True


def require_access(roles: Iterable[str] = (), permissions: Iterable[str] = ()) -> Callable[..., Identity]:
    """Dependency factory for role/permission gates.

    Use as a FastAPI dependency:
        @router.get("/reports")
        def route(identity: Identity = Depends(require_access(permissions=["reports.read"]))): ...
    """
    roles = tuple(roles)
    permissions = tuple(permissions)

    def dependency(identity: Identity = Depends(get_identity)) -> Identity:
        if not is_authorized(identity, roles, permissions):
            raise AuthorizationError()
        return identity

    return dependency


require_admin = require_access(roles=["admin"])
