"""
tests/test_api_auth.py -- Integration tests for the /api/v1/auth and /api/v1/users routes.

These tests exercise the full stack: FastAPI routing -> request models ->
AuthenticationService -> UserStore/SessionStore -> exception handlers ->
response envelope. Each test uses its own email address because the
api_client fixture (and its database) is shared across the module.

Fixtures used (from conftest.py):
  - api_client: (client, admin_token, notifier)
"""

from __future__ import annotations

from fastapi.testclient import TestClient

PASSWORD = "Abcd1234"


def _auth(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def _register_and_login(client: TestClient, email: str, password: str = PASSWORD) -> dict:
    assert client.post("/api/v1/auth/register", json={"email": email, "password": password}).status_code == 201
    resp = client.post("/api/v1/auth/login", json={"email": email, "password": password})
    assert resp.status_code == 200
    return resp.json()["data"]


class TestEnvelope:
    def test_success_envelope_shape(self, api_client) -> None:
        client, _token, _ = api_client
        body = client.post("/api/v1/auth/register", json={"email": "env@example.com", "password": PASSWORD}).json()
        assert body["success"] is True
        assert "timestamp" in body["meta"]
        assert body["data"]["message"] == "Registration successful. Please verify your email."
        assert body["data"]["verification_email_sent"] is True
        assert "password_hash" not in body["data"]["user"]

    def test_error_envelope_shape(self, api_client) -> None:
        client, _token, _ = api_client
        body = client.post("/api/v1/auth/login", json={"email": "ghost@example.com", "password": PASSWORD}).json()
        assert body["success"] is False
        assert body["error"] == {"code": "INVALID_CREDENTIALS", "message": "Invalid email or password"}
        assert "timestamp" in body["meta"]


class TestRegisterLogin:
    def test_duplicate_email_is_409(self, api_client) -> None:
        client, _token, _ = api_client
        client.post("/api/v1/auth/register", json={"email": "dup@example.com", "password": PASSWORD})
        resp = client.post("/api/v1/auth/register", json={"email": "DUP@example.com", "password": PASSWORD})
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "EMAIL_EXISTS"

    def test_weak_password_is_422_with_field_details(self, api_client) -> None:
        client, _token, _ = api_client
        resp = client.post("/api/v1/auth/register", json={"email": "weak@example.com", "password": "abcdefg1"})
        assert resp.status_code == 422
        error = resp.json()["error"]
        assert error["code"] == "VALIDATION_ERROR"
        assert error["details"] == {"password": ["Password must contain at least one uppercase letter"]}

    def test_password_over_72_bytes_is_422(self, api_client) -> None:
        client, _token, _ = api_client
        resp = client.post("/api/v1/auth/register", json={"email": "long@example.com", "password": "Aa1" + "x" * 80})
        assert resp.status_code == 422
        assert "password" in resp.json()["error"]["details"]

    def test_wrong_password_and_unknown_email_identical(self, api_client) -> None:
        client, _token, _ = api_client
        client.post("/api/v1/auth/register", json={"email": "same@example.com", "password": PASSWORD})
        wrong = client.post("/api/v1/auth/login", json={"email": "same@example.com", "password": "Wrong1234"})
        unknown = client.post("/api/v1/auth/login", json={"email": "nobody@example.com", "password": "Wrong1234"})
        assert wrong.status_code == unknown.status_code == 401
        assert wrong.json()["error"] == unknown.json()["error"]

    def test_login_missing_password_reported_on_password_field(self, api_client) -> None:
        client, _token, _ = api_client
        resp = client.post("/api/v1/auth/login", json={"email": "same@example.com"})
        assert resp.status_code == 422
        assert resp.json()["error"]["details"] == {"password": "Password is required"}

    def test_login_response_is_not_cacheable(self, api_client) -> None:
        client, _token, _ = api_client
        client.post("/api/v1/auth/register", json={"email": "cache@example.com", "password": PASSWORD})
        resp = client.post("/api/v1/auth/login", json={"email": "cache@example.com", "password": PASSWORD})
        assert resp.headers["cache-control"] == "no-store"
        data = resp.json()["data"]
        assert data["token_type"] == "Bearer"
        assert data["expires_in"] == 900


class TestRefreshLogout:
    def test_refresh_rotates(self, api_client) -> None:
        client, _token, _ = api_client
        first = _register_and_login(client, "rot@example.com")
        second = client.post("/api/v1/auth/refresh", json={"refresh_token": first["refresh_token"]})
        assert second.status_code == 200
        replay = client.post("/api/v1/auth/refresh", json={"refresh_token": first["refresh_token"]})
        assert replay.status_code == 401
        assert replay.json()["error"]["code"] == "UNAUTHORIZED"
        third = client.post("/api/v1/auth/refresh", json={"refresh_token": second.json()["data"]["refresh_token"]})
        assert third.status_code == 200

    def test_logout_then_refresh_fails(self, api_client) -> None:
        client, _token, _ = api_client
        tokens = _register_and_login(client, "bye@example.com")
        resp = client.post("/api/v1/auth/logout", json={"refresh_token": tokens["refresh_token"]})
        assert resp.status_code == 200
        assert resp.json()["data"]["message"] == "Logged out successfully"
        assert client.post("/api/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]}).status_code == 401

    def test_logout_all_requires_auth(self, api_client) -> None:
        client, _token, _ = api_client
        assert client.post("/api/v1/auth/logout-all").status_code == 401

    def test_logout_all(self, api_client) -> None:
        client, _token, _ = api_client
        tokens = _register_and_login(client, "all@example.com")
        resp = client.post("/api/v1/auth/logout-all", headers=_auth(tokens["access_token"]))
        assert resp.status_code == 200
        assert resp.json()["data"]["revoked"] == 1
        assert client.post("/api/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]}).status_code == 401


class TestPasswordFlows:
    def test_forgot_password_same_message_for_unknown(self, api_client) -> None:
        client, _token, _ = api_client
        client.post("/api/v1/auth/register", json={"email": "forgot@example.com", "password": PASSWORD})
        known = client.post("/api/v1/auth/forgot-password", json={"email": "forgot@example.com"}).json()["data"]
        unknown = client.post("/api/v1/auth/forgot-password", json={"email": "nope@example.com"}).json()["data"]
        assert known["message"] == unknown["message"] == "If the account exists, a reset link has been generated."
        assert "reset_token" in known and known["expires_in"] == 3600
        assert "reset_token" not in unknown

    def test_reset_password_flow(self, api_client) -> None:
        client, _token, _ = api_client
        client.post("/api/v1/auth/register", json={"email": "reset@example.com", "password": PASSWORD})
        token = client.post("/api/v1/auth/forgot-password", json={"email": "reset@example.com"}).json()["data"][
            "reset_token"
        ]
        body = {"token": token, "password": "Newpass123", "confirm_password": "Newpass123"}
        resp = client.post("/api/v1/auth/reset-password", json=body)
        assert resp.status_code == 200
        assert resp.json()["data"]["message"] == "Password has been reset successfully"
        assert client.post("/api/v1/auth/reset-password", json=body).status_code == 401
        login = client.post("/api/v1/auth/login", json={"email": "reset@example.com", "password": "Newpass123"})
        assert login.status_code == 200

    def test_forgot_password_mail_failure_is_500(self, api_client) -> None:
        client, _token, notifier = api_client
        client.post("/api/v1/auth/register", json={"email": "mailfail@example.com", "password": PASSWORD})
        notifier.fail = True
        try:
            resp = client.post("/api/v1/auth/forgot-password", json={"email": "mailfail@example.com"})
        finally:
            notifier.fail = False
        assert resp.status_code == 500
        assert resp.json()["error"]["code"] == "MAIL_SEND_FAILED"

    def test_change_password(self, api_client) -> None:
        client, _token, _ = api_client
        tokens = _register_and_login(client, "change@example.com")
        resp = client.post(
            "/api/v1/auth/change-password",
            headers=_auth(tokens["access_token"]),
            json={"current_password": PASSWORD, "new_password": "Changed123", "confirm_password": "Changed123"},
        )
        assert resp.status_code == 200
        assert resp.json()["data"]["message"] == "Password changed successfully"
        wrong = client.post(
            "/api/v1/auth/change-password",
            headers=_auth(tokens["access_token"]),
            json={"current_password": PASSWORD, "new_password": "Another123"},
        )
        assert wrong.status_code == 422
        assert wrong.json()["error"]["details"] == {"current_password": "Current password is incorrect"}


class TestEmailVerification:
    def test_verify_email(self, api_client) -> None:
        client, _token, notifier = api_client
        client.post("/api/v1/auth/register", json={"email": "verify@example.com", "password": PASSWORD})
        token = next(t for email, t, _ in notifier.verifications if email == "verify@example.com")
        first = client.post("/api/v1/auth/verify-email", json={"token": token})
        second = client.post("/api/v1/auth/verify-email", json={"token": token})
        assert first.json()["data"]["message"] == "Email verified successfully"
        assert second.json()["data"]["message"] == "Email already verified"

    def test_resend_verification(self, api_client) -> None:
        client, _token, notifier = api_client
        tokens = _register_and_login(client, "resend@example.com")
        before = len(notifier.verifications)
        resp = client.post("/api/v1/auth/resend-verification", headers=_auth(tokens["access_token"]))
        assert resp.status_code == 200
        assert len(notifier.verifications) == before + 1


class TestUsers:
    def test_me(self, api_client) -> None:
        client, _token, _ = api_client
        tokens = _register_and_login(client, "me@example.com")
        resp = client.get("/api/v1/users/me", headers=_auth(tokens["access_token"]))
        assert resp.status_code == 200
        assert resp.json()["data"]["user"]["email"] == "me@example.com"

    def test_me_requires_auth(self, api_client) -> None:
        client, _token, _ = api_client
        resp = client.get("/api/v1/users/me")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "UNAUTHORIZED"

    def test_update_me_profile_fields(self, api_client) -> None:
        client, _token, _ = api_client
        tokens = _register_and_login(client, "profile@example.com")
        resp = client.put(
            "/api/v1/users/me",
            json={"first_name": "Pat", "last_name": "Lee", "phone": "555-0100"},
            headers=_auth(tokens["access_token"]),
        )
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["user"]["full_name"] == "Pat Lee"
        assert data["user"]["phone"] == "555-0100"
        assert "verification_email_sent" not in data

    def test_update_me_email_change_invalidates_old_verify_token(self, api_client) -> None:
        client, _token, notifier = api_client
        tokens = _register_and_login(client, "mover@example.com")
        stale = notifier.verifications[-1][1]
        resp = client.put(
            "/api/v1/users/me", json={"email": "moved@example.com"}, headers=_auth(tokens["access_token"])
        )
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["user"]["email"] == "moved@example.com"
        assert data["user"]["email_verified"] is False
        assert data["verification_email_sent"] is True
        assert notifier.verifications[-1][0] == "moved@example.com"

        assert client.post("/api/v1/auth/verify-email", json={"token": stale}).status_code == 401
        fresh = notifier.verifications[-1][1]
        assert client.post("/api/v1/auth/verify-email", json={"token": fresh}).status_code == 200

    def test_update_me_email_taken_is_422(self, api_client) -> None:
        client, _token, _ = api_client
        _register_and_login(client, "taken@example.com")
        tokens = _register_and_login(client, "taker@example.com")
        resp = client.put(
            "/api/v1/users/me", json={"email": "TAKEN@example.com"}, headers=_auth(tokens["access_token"])
        )
        assert resp.status_code == 422
        assert resp.json()["error"]["details"] == {"email": "This email is already in use"}

    def test_update_me_requires_auth(self, api_client) -> None:
        client, _token, _ = api_client
        assert client.put("/api/v1/users/me", json={"first_name": "X"}).status_code == 401

    def test_list_users_admin_only(self, api_client) -> None:
        client, admin_token, _ = api_client
        tokens = _register_and_login(client, "pleb@example.com")
        assert client.get("/api/v1/users", headers=_auth(tokens["access_token"])).status_code == 403
        resp = client.get("/api/v1/users?page=1&per_page=2", headers=_auth(admin_token))
        assert resp.status_code == 200
        body = resp.json()
        assert len(body["data"]["users"]) == 2
        assert body["meta"]["per_page"] == 2
        assert body["meta"]["total"] >= 2

    def test_get_user_by_id(self, api_client) -> None:
        client, admin_token, _ = api_client
        tokens = _register_and_login(client, "byid@example.com")
        user_id = tokens["user"]["id"]
        resp = client.get(f"/api/v1/users/{user_id}", headers=_auth(admin_token))
        assert resp.status_code == 200
        assert resp.json()["data"]["user"]["email"] == "byid@example.com"
        missing = client.get("/api/v1/users/999999", headers=_auth(admin_token))
        assert missing.status_code == 404
        assert missing.json()["error"]["code"] == "NOT_FOUND"

    def test_admin_email_registration_gets_admin_role(self, api_client) -> None:
        client, _token, _ = api_client
        tokens = _register_and_login(client, "boss@example.com")
        assert "admin" in tokens["user"]["roles"]
        assert client.get("/api/v1/users", headers=_auth(tokens["access_token"])).status_code == 200


class TestAliceScenario:
    def test_register_login_refresh_forgot(self, api_client) -> None:
        client, _token, _ = api_client
        resp = client.post("/api/v1/auth/register", json={"email": "alice@example.com", "password": "Abcd1234"})
        assert resp.status_code == 201
        login = client.post("/api/v1/auth/login", json={"email": "alice@example.com", "password": "Abcd1234"})
        data = login.json()["data"]
        assert data["expires_in"] == 900
        refreshed = client.post("/api/v1/auth/refresh", json={"refresh_token": data["refresh_token"]})
        assert refreshed.status_code == 200
        for email in ("alice@example.com", "bob@example.com"):
            resp = client.post("/api/v1/auth/forgot-password", json={"email": email})
            assert resp.status_code == 200
            assert resp.json()["data"]["message"] == "If the account exists, a reset link has been generated."
