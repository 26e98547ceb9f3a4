"""Tests for auth/dependencies.py -- the bearer-token request gate.

A tiny FastAPI app mounts the real dependencies so the tests exercise header
parsing, codec verification, request.state attachment and the role/permission
checks exactly as routes see them.

Covers:
- missing/malformed Authorization header -> 401 without touching the codec
- scheme matched case-insensitively
- refresh/verify tokens rejected at the access gate
- is_authorized(): any-of per set, both sets must pass, case-insensitive
"""

import pytest
from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.testclient import TestClient

from auth.dependencies import get_identity, is_authorized, require_access, require_admin
from auth.errors import AuthError
from auth.models import Identity, User
from auth.tokens import TokenCodec

SECRET = "gate-test-secret-0123456789abcdef0123456789"


class _CountingCodec(TokenCodec):
    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.calls = 0

    def verify(self, token, expected=None):
        self.calls += 1
        return super().verify(token, expected)


@pytest.fixture
def codec() -> _CountingCodec:
    return _CountingCodec(SECRET)


@pytest.fixture
def client(codec: _CountingCodec) -> TestClient:
    app = FastAPI()
    app.state.codec = codec

    @app.exception_handler(AuthError)
    async def _auth_error(request: Request, exc: AuthError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content={"code": exc.code})

    @app.get("/whoami")
    def whoami(request: Request, identity: Identity = Depends(get_identity)) -> dict:
        assert request.state.identity == identity
        return {"user_id": identity.user_id, "roles": sorted(identity.roles)}

    @app.get("/admin")
    def admin(identity: Identity = Depends(require_admin)) -> dict:
        return {"ok": True}

    @app.get("/editor-upload")
    def editor_upload(
        identity: Identity = Depends(require_access(roles=["editor", "admin"], permissions=["videos.upload"])),
    ) -> dict:
        return {"ok": True}

    return TestClient(app)


def _token(codec: TokenCodec, roles=("subscriber",), permissions=()) -> str:
    user = User(id=7, email="gate@example.com", password_hash="x", roles=list(roles), permissions=list(permissions))
    return codec.issue_access(user)


class TestAuthentication:
    def test_valid_bearer_token(self, client, codec) -> None:
        resp = client.get("/whoami", headers={"Authorization": f"Bearer {_token(codec)}"})
        assert resp.status_code == 200
        assert resp.json() == {"user_id": 7, "roles": ["subscriber"]}

    def test_scheme_is_case_insensitive(self, client, codec) -> None:
        resp = client.get("/whoami", headers={"Authorization": f"bearer {_token(codec)}"})
        assert resp.status_code == 200

    @pytest.mark.parametrize("header", [None, "", "Bearer", "Basic abc", "Token abc"])
    def test_missing_or_malformed_header_skips_codec(self, client, codec, header) -> None:
        headers = {} if header is None else {"Authorization": header}
        resp = client.get("/whoami", headers=headers)
        assert resp.status_code == 401
        assert resp.json() == {"code": "UNAUTHORIZED"}
        assert codec.calls == 0

    def test_invalid_token(self, client) -> None:
        resp = client.get("/whoami", headers={"Authorization": "Bearer not.a.jwt"})
        assert resp.status_code == 401

    def test_refresh_token_rejected(self, client, codec) -> None:
        resp = client.get("/whoami", headers={"Authorization": f"Bearer {codec.issue_refresh(7)}"})
        assert resp.status_code == 401

    def test_verification_token_rejected(self, client, codec) -> None:
        token = codec.issue_email_verification(7, "gate@example.com")
        resp = client.get("/whoami", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 401


class TestAuthorization:
    def test_admin_route_forbidden_for_subscriber(self, client, codec) -> None:
        resp = client.get("/admin", headers={"Authorization": f"Bearer {_token(codec)}"})
        assert resp.status_code == 403
        assert resp.json() == {"code": "FORBIDDEN"}

    def test_admin_role_matches_case_insensitively(self, client, codec) -> None:
        resp = client.get("/admin", headers={"Authorization": f"Bearer {_token(codec, roles=['Admin'])}"})
        assert resp.status_code == 200

    def test_unauthenticated_admin_route_is_401_not_403(self, client) -> None:
        assert client.get("/admin").status_code == 401

    def test_role_and_permission_both_required(self, client, codec) -> None:
        role_only = _token(codec, roles=["editor"])
        both = _token(codec, roles=["editor"], permissions=["videos.upload"])
        assert client.get("/editor-upload", headers={"Authorization": f"Bearer {role_only}"}).status_code == 403
        assert client.get("/editor-upload", headers={"Authorization": f"Bearer {both}"}).status_code == 200


class TestIsAuthorized:
    identity = Identity(user_id=1, email="a@example.com", roles=frozenset({"editor"}), permissions=frozenset())

    def test_nothing_configured_passes(self) -> None:
        assert is_authorized(self.identity) is True

    def test_any_of_roles(self) -> None:
        assert is_authorized(self.identity, roles=["admin", "EDITOR"]) is True
        assert is_authorized(self.identity, roles=["admin"]) is False

    def test_permissions_checked_when_configured(self) -> None:
        assert is_authorized(self.identity, roles=["editor"], permissions=["videos.upload"]) is False
