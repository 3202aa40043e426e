"""
tests/test_api_routes.py -- Integration tests for the AccessGate HTTP API.

These tests exercise the full stack: middleware (IP throttle) -> FastAPI
dependency (gate stages 2-7) -> AuthorizationEngine/AccessStore -> response
model serialization -> GateError exception handler.

Coverage:
  - Auth failures: missing, malformed and foreign tokens -> 401 envelope
  - Authorization: identity with no roles -> 403 on admin/users routes;
    permission "manage_users" alone opens GET /users but not /admin
  - Login: success, bad credentials, unverified email, Cache-Control,
    admin verification, passwords counted in UTF-8 bytes
  - 2FA end to end: setup, verify, login requires code, wrong code, right code
  - Admin: create user/role/permission, duplicates, assignments, 404s
  - Throttling: IP and identity buckets -> 429 with Retry-After; CORS
    preflights skip the IP bucket and 429s carry CORS headers

Fixtures used (from conftest.py):
  - api_client: ApiClient(client, admin_token, admin_id, user_token, user_id)
"""

from __future__ import annotations

import time

import pyotp
import pytest

from auth.pipeline import RequestPipeline
from auth.ratelimit import RateLimiter
from conftest import ADMIN_EMAIL, USER_EMAIL, USER_PASSWORD, bearer


def _create_user(api, email: str, password: str = "password123", verified: bool = True) -> str:
    resp = api.client.post(
        "/api/v1/admin/users",
        json={"email": email, "name": email.split("@")[0], "password": password, "is_verified": verified},
        headers=bearer(api.admin_token),
    )
    assert resp.status_code == 201, resp.text
    return resp.json()["id"]


def _login(api, email: str, password: str, code: str | None = None):
    body = {"email": email, "password": password}
    if code is not None:
        body["two_fa_code"] = code
    return api.client.post("/api/v1/auth/login", json=body)


class TestAuthFailure:
    """Protected routes must answer 401 with the error envelope."""

    def test_me_without_header(self, api_client):
        resp = api_client.client.get("/api/v1/auth/me")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthenticated"

    @pytest.mark.parametrize("header", ["Token abc", "Bearer", "Bearer a b", "bearer abc"])
    def test_malformed_header(self, api_client, header):
        resp = api_client.client.get("/api/v1/auth/me", headers={"Authorization": header})
        assert resp.status_code == 401

    def test_garbage_token(self, api_client):
        resp = api_client.client.get("/api/v1/auth/me", headers=bearer("not.a.token"))
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthenticated"

    def test_admin_route_without_token(self, api_client):
        resp = api_client.client.get("/api/v1/admin/roles")
        assert resp.status_code == 401


class TestAuthorization:
    def test_identity_without_roles_is_forbidden(self, api_client):
        resp = api_client.client.get("/api/v1/admin/roles", headers=bearer(api_client.user_token))
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "forbidden"

    def test_users_route_forbidden_without_role_or_permission(self, api_client):
        resp = api_client.client.get("/api/v1/users", headers=bearer(api_client.user_token))
        assert resp.status_code == 403

    def test_admin_lists_users(self, api_client):
        resp = api_client.client.get("/api/v1/users", headers=bearer(api_client.admin_token))
        assert resp.status_code == 200
        emails = {u["email"] for u in resp.json()}
        assert {ADMIN_EMAIL, USER_EMAIL} <= emails
        assert all("hashed_password" not in u for u in resp.json())

    def test_permission_alone_opens_users_but_not_admin(self, api_client):
        headers = bearer(api_client.admin_token)
        client = api_client.client
        assert client.post("/api/v1/admin/roles", json={"name": "support"}, headers=headers).status_code == 201
        resp = client.post(
            "/api/v1/admin/assign-permission",
            json={"role_name": "support", "permission_name": "manage_users"},
            headers=headers,
        )
        assert resp.status_code == 200
        support_id = _create_user(api_client, "support@example.com")
        resp = client.post("/api/v1/admin/assign-role", json={"user_id": support_id, "role": "support"}, headers=headers)
        assert resp.status_code == 200

        token = client.app.state.tokens.issue(support_id)
        assert client.get("/api/v1/users", headers=bearer(token)).status_code == 200
        assert client.get("/api/v1/admin/roles", headers=bearer(token)).status_code == 403

    def test_me_reports_roles_and_permission_closure(self, api_client):
        resp = api_client.client.get("/api/v1/auth/me", headers=bearer(api_client.admin_token))
        assert resp.status_code == 200
        data = resp.json()
        assert data["id"] == api_client.admin_id
        assert data["roles"] == ["admin"]
        assert {"manage_users", "manage_roles", "view_reports"} <= set(data["permissions"])

    def test_role_grant_seen_on_next_request(self, api_client):
        identity_id = _create_user(api_client, "promoted@example.com")
        token = api_client.client.app.state.tokens.issue(identity_id)
        assert api_client.client.get("/api/v1/users", headers=bearer(token)).status_code == 403

        api_client.client.post(
            "/api/v1/admin/assign-role",
            json={"user_id": identity_id, "role": "admin"},
            headers=bearer(api_client.admin_token),
        )
        assert api_client.client.get("/api/v1/users", headers=bearer(token)).status_code == 200


class TestLogin:
    def test_login_success(self, api_client):
        resp = _login(api_client, USER_EMAIL, USER_PASSWORD)
        assert resp.status_code == 200, resp.text
        data = resp.json()
        assert data["token_type"] == "bearer"
        assert data["expires_in"] == 86400
        assert resp.headers["Cache-Control"] == "no-store"

        me = api_client.client.get("/api/v1/auth/me", headers=bearer(data["access_token"]))
        assert me.json()["email"] == USER_EMAIL

    def test_wrong_password_and_unknown_email_look_alike(self, api_client):
        wrong = _login(api_client, USER_EMAIL, "not-the-password")
        unknown = _login(api_client, "ghost@example.com", USER_PASSWORD)
        assert wrong.status_code == unknown.status_code == 401
        assert wrong.json() == unknown.json()
        assert wrong.json()["error"]["code"] == "invalid_credentials"

    def test_unverified_email(self, api_client):
        _create_user(api_client, "unverified@example.com", "password123", verified=False)
        resp = _login(api_client, "unverified@example.com", "password123")
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "email_not_verified"

    def test_admin_verification_unlocks_login(self, api_client):
        identity_id = _create_user(api_client, "late@example.com", "password123", verified=False)
        assert _login(api_client, "late@example.com", "password123").status_code == 403

        resp = api_client.client.post(
            f"/api/v1/admin/users/{identity_id}/verify", headers=bearer(api_client.admin_token)
        )
        assert resp.status_code == 200
        assert resp.json()["is_verified"] is True
        assert _login(api_client, "late@example.com", "password123").status_code == 200

    def test_verify_unknown_identity(self, api_client):
        resp = api_client.client.post(
            "/api/v1/admin/users/01HZZZZZZZZZZZZZZZZZZZZZZZ/verify", headers=bearer(api_client.admin_token)
        )
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "identity_not_found"

    def test_verify_requires_admin(self, api_client):
        resp = api_client.client.post(
            f"/api/v1/admin/users/{api_client.user_id}/verify", headers=bearer(api_client.user_token)
        )
        assert resp.status_code == 403

    def test_multibyte_password_over_byte_limit_is_rejected(self, api_client):
        # 40 characters but 80 bytes, past bcrypt's 72-byte input
        resp = api_client.client.post(
            "/api/v1/admin/users",
            json={"email": "accents@example.com", "name": "accents", "password": "é" * 40},
            headers=bearer(api_client.admin_token),
        )
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_error"

        resp = _login(api_client, USER_EMAIL, "é" * 40)
        assert resp.status_code == 422

    def test_multibyte_password_at_byte_limit(self, api_client):
        password = "é" * 36
        _create_user(api_client, "accents72@example.com", password)
        assert _login(api_client, "accents72@example.com", password).status_code == 200

    def test_validation_error_envelope(self, api_client):
        resp = api_client.client.post("/api/v1/auth/login", json={"email": "no-at-sign", "password": ""})
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_error"


class TestTwoFactorFlow:
    def test_admin_login_setup_verify_then_code_required(self, api_client):
        client = api_client.client
        email, password = "mfa-admin@example.com", "mfa-pass-123"
        identity_id = _create_user(api_client, email, password)
        client.post(
            "/api/v1/admin/assign-role",
            json={"user_id": identity_id, "role": "admin"},
            headers=bearer(api_client.admin_token),
        )

        # No second factor yet: credentials alone issue a token.
        resp = _login(api_client, email, password)
        assert resp.status_code == 200
        token = resp.json()["access_token"]

        # Verify before setup is rejected.
        resp = client.post("/api/v1/auth/2fa/verify", json={"code": "123456"}, headers=bearer(token))
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "two_fa_not_setup"

        setup = client.post("/api/v1/auth/2fa/setup", headers=bearer(token))
        assert setup.status_code == 200
        enrollment = setup.json()
        assert enrollment["qr_code_url"].startswith("data:image/png;base64,")
        assert enrollment["provisioning_uri"].startswith("otpauth://totp/")
        totp = pyotp.TOTP(enrollment["secret"])

        # Pending secret does not gate login yet.
        assert _login(api_client, email, password).status_code == 200

        resp = client.post("/api/v1/auth/2fa/verify", json={"code": totp.now()}, headers=bearer(token))
        assert resp.status_code == 200, resp.text

        resp = _login(api_client, email, password)
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "two_fa_required"

        resp = _login(api_client, email, password, code=totp.at(int(time.time()) + 3600))
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "two_fa_invalid"

        resp = _login(api_client, email, password, code=totp.now())
        assert resp.status_code == 200
        assert resp.json()["access_token"]

        again = client.post("/api/v1/auth/2fa/setup", headers=bearer(token))
        assert again.status_code == 409
        assert again.json()["error"]["code"] == "two_fa_already_enabled"

        me = client.get("/api/v1/auth/me", headers=bearer(token)).json()
        assert me["is_two_fa_enabled"] is True

    def test_wrong_password_never_reaches_second_factor(self, api_client):
        resp = _login(api_client, "mfa-admin@example.com", "wrong-password", code="000000")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "invalid_credentials"


class TestAdminRoutes:
    def test_create_and_list_roles(self, api_client):
        headers = bearer(api_client.admin_token)
        client = api_client.client
        resp = client.post("/api/v1/admin/roles", json={"name": "auditor"}, headers=headers)
        assert resp.status_code == 201
        assert resp.json()["name"] == "auditor"

        assert client.post("/api/v1/admin/permissions", json={"name": "view_audit"}, headers=headers).status_code == 201
        client.post(
            "/api/v1/admin/assign-permission",
            json={"role_name": "auditor", "permission_name": "view_audit"},
            headers=headers,
        )

        roles = {r["name"]: r["permissions"] for r in client.get("/api/v1/admin/roles", headers=headers).json()}
        assert roles["auditor"] == ["view_audit"]
        assert "admin" in roles

    def test_duplicate_role_and_permission(self, api_client):
        headers = bearer(api_client.admin_token)
        resp = api_client.client.post("/api/v1/admin/roles", json={"name": "admin"}, headers=headers)
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "duplicate_name"
        resp = api_client.client.post("/api/v1/admin/permissions", json={"name": "manage_users"}, headers=headers)
        assert resp.status_code == 409

    def test_duplicate_user_email(self, api_client):
        resp = api_client.client.post(
            "/api/v1/admin/users",
            json={"email": USER_EMAIL, "name": "again", "password": "password123"},
            headers=bearer(api_client.admin_token),
        )
        assert resp.status_code == 409

    def test_assign_role_twice(self, api_client):
        headers = bearer(api_client.admin_token)
        identity_id = _create_user(api_client, "twice@example.com")
        body = {"user_id": identity_id, "role": "user"}
        assert api_client.client.post("/api/v1/admin/assign-role", json=body, headers=headers).status_code == 200
        resp = api_client.client.post("/api/v1/admin/assign-role", json=body, headers=headers)
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "already_has_role"

    def test_assign_unknown_role_or_identity(self, api_client):
        headers = bearer(api_client.admin_token)
        resp = api_client.client.post(
            "/api/v1/admin/assign-role",
            json={"user_id": api_client.user_id, "role": "ghost"},
            headers=headers,
        )
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "role_not_found"

        resp = api_client.client.post(
            "/api/v1/admin/assign-role",
            json={"user_id": "01HZZZZZZZZZZZZZZZZZZZZZZZ", "role": "user"},
            headers=headers,
        )
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "identity_not_found"

    def test_assign_unknown_permission(self, api_client):
        resp = api_client.client.post(
            "/api/v1/admin/assign-permission",
            json={"role_name": "user", "permission_name": "ghost_permission"},
            headers=bearer(api_client.admin_token),
        )
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "permission_not_found"


class TestThrottling:
    def test_ip_limit_returns_429_with_retry_after(self, api_client, monkeypatch):
        state = api_client.client.app.state
        tight = RequestPipeline(state.tokens, state.authz, RateLimiter(ip_rate=0.01, ip_burst=2))
        monkeypatch.setattr(state, "pipeline", tight)

        statuses = [api_client.client.get("/api/v1/auth/me").status_code for _ in range(3)]
        assert statuses == [401, 401, 429]

        resp = api_client.client.get("/api/v1/auth/me", headers=bearer(api_client.admin_token))
        assert resp.status_code == 429
        assert resp.json()["error"]["code"] == "rate_limited"
        assert int(resp.headers["Retry-After"]) >= 1

        # Health probes are never throttled.
        assert api_client.client.get("/api/v1/health").status_code == 200

    def test_identity_limit_returns_429(self, api_client, monkeypatch):
        state = api_client.client.app.state
        limiter = RateLimiter(ip_rate=1000, ip_burst=1000, identity_rate=0.01, identity_burst=1)
        monkeypatch.setattr(state, "pipeline", RequestPipeline(state.tokens, state.authz, limiter))

        headers = bearer(api_client.admin_token)
        assert api_client.client.get("/api/v1/auth/me", headers=headers).status_code == 200
        resp = api_client.client.get("/api/v1/auth/me", headers=headers)
        assert resp.status_code == 429
        assert "Retry-After" in resp.headers

        # Another identity has its own bucket.
        assert api_client.client.get("/api/v1/auth/me", headers=bearer(api_client.user_token)).status_code == 200

    def test_cors_preflight_does_not_spend_ip_tokens(self, api_client, monkeypatch):
        state = api_client.client.app.state
        limiter = RateLimiter(ip_rate=0.01, ip_burst=1)
        monkeypatch.setattr(state, "pipeline", RequestPipeline(state.tokens, state.authz, limiter))

        preflight = {"Origin": "http://localhost", "Access-Control-Request-Method": "GET"}
        for _ in range(3):
            assert api_client.client.options("/api/v1/auth/me", headers=preflight).status_code == 200

        resp = api_client.client.get("/api/v1/auth/me", headers=bearer(api_client.admin_token))
        assert resp.status_code == 200

    def test_ip_rejection_carries_cors_headers(self, api_client, monkeypatch):
        state = api_client.client.app.state
        limiter = RateLimiter(ip_rate=0.01, ip_burst=1)
        monkeypatch.setattr(state, "pipeline", RequestPipeline(state.tokens, state.authz, limiter))

        headers = {"Origin": "http://localhost"}
        api_client.client.get("/api/v1/auth/me", headers=headers)
        resp = api_client.client.get("/api/v1/auth/me", headers=headers)
        assert resp.status_code == 429
        assert resp.headers["access-control-allow-origin"] == "http://localhost"
