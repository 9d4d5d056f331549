"""
tests/test_api_routes.py -- Integration tests for the HTTP surface as a whole.

These tests exercise the full stack: FastAPI routing -> auth dependency
injection -> flow services -> response envelope. Flow behaviour is covered
in depth by the per-flow test modules; this module pins the cross-cutting
contract.

Coverage:
  - Auth failures: 401 envelope on protected routes without a token or with a bad one
  - /auth/me and /auth/logout happy paths
  - Envelope shape for 404 and unexpected 500 errors
  - Coarse request throttle (slowapi) answers 429 TOO_MANY_REQUESTS
  - TrustedHost rejects unknown Host headers
"""

from __future__ import annotations

import pytest

from api.limiter import limiter as request_throttle
from tests.conftest import PASSWORD


class TestApiAuthFailure:
    """Unauthenticated requests to protected API routes must return 401."""

    @pytest.mark.parametrize(
        "method, path",
        [
            ("get", "/api/v1/auth/me"),
            ("get", "/api/v1/users/profile"),
            ("put", "/api/v1/users/password"),
            ("get", "/api/v1/auth/verify-email/status"),
        ],
    )
    def test_unauthenticated(self, api, method: str, path: str) -> None:
        resp = getattr(api.client, method)(path)
        assert resp.status_code == 401
        assert resp.json() == {"success": False, "message": "UNAUTHORIZED_ACCESS", "data": None}

    def test_garbage_token(self, api) -> None:
        resp = api.client.get("/api/v1/auth/me", headers={"Authorization": "Bearer not.a.jwt"})
        assert resp.status_code == 401


class TestAuthRoutes:
    def test_me(self, api) -> None:
        resp = api.client.get("/api/v1/auth/me", headers=api.auth_headers())
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["username"] == "alice"
        assert data["email"] == "user@example.com"

    def test_logout_clears_cookie(self, api) -> None:
        api.auth_headers()
        assert "access_token" in api.client.cookies
        resp = api.client.post("/api/v1/auth/logout")
        assert resp.status_code == 200
        assert resp.json()["message"] == "LOGOUT_SUCCESSFUL"
        assert "access_token" not in api.client.cookies


class TestErrorEnvelope:
    def test_unknown_route_404(self, api) -> None:
        resp = api.client.get("/api/v1/nope")
        assert resp.status_code == 404
        assert resp.json() == {"success": False, "message": "RESOURCE_NOT_FOUND", "data": None}

    def test_unexpected_error_500(self, api, monkeypatch: pytest.MonkeyPatch) -> None:
        """Store failures outside the limiter surface as a generic 500 with no detail."""

        def explode(_email):
            raise RuntimeError("disk I/O error at /var/lib/secret.db")

        monkeypatch.setattr(api.account_store, "get_by_email", explode)
        resp = api.client.post("/api/v1/auth/login", json={"email": "user@example.com", "password": PASSWORD})
        assert resp.status_code == 500
        assert resp.json() == {"success": False, "message": "INTERNAL_SERVER_ERROR", "data": None}
        assert "secret" not in resp.text


class TestRequestThrottle:
    def test_login_throttle_429(self, api, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr("api.limiter.get_settings", lambda: _Throttled())
        request_throttle.reset()
        body = {"email": "user@example.com", "password": "Wrong!Pass1"}
        statuses = [api.client.post("/api/v1/auth/login", json=body).status_code for _ in range(3)]
        assert statuses == [401, 401, 429]
        last = api.client.post("/api/v1/auth/login", json=body)
        assert last.json()["message"] == "TOO_MANY_REQUESTS"
        assert "Retry-After" in last.headers

    @pytest.mark.parametrize(
        "path, body",
        [
            ("/api/v1/auth/forgot-password", {"email": "nobody@example.com"}),
            (
                "/api/v1/auth/reset-password",
                {"verificationCode": "000000", "newPassword": "Fresh!Pass9", "confirmPassword": "Fresh!Pass9"},
            ),
        ],
    )
    def test_reset_routes_throttled(self, api, monkeypatch: pytest.MonkeyPatch, path: str, body: dict) -> None:
        monkeypatch.setattr("api.limiter.get_settings", lambda: _Throttled())
        request_throttle.reset()
        statuses = [api.client.post(path, json=body).status_code for _ in range(3)]
        assert statuses[2] == 429
        assert 429 not in statuses[:2]

    def test_throttle_is_per_route(self, api, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr("api.limiter.get_settings", lambda: _Throttled())
        request_throttle.reset()
        body = {"email": "user@example.com", "password": "Wrong!Pass1"}
        for _ in range(2):
            api.client.post("/api/v1/auth/login", json=body)
        resp = api.client.post("/api/v1/auth/forgot-password", json={"email": "user@example.com"})
        assert resp.status_code == 200


class _Throttled:
    login_rate_limit = "2/minute"


class TestTrustedHost:
    def test_unknown_host_rejected(self, api) -> None:
        resp = api.client.get("/api/v1/health", headers={"Host": "evil.example.com"})
        assert resp.status_code == 400
