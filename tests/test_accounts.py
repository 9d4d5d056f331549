"""
tests/test_accounts.py -- Registration, profile and password change.

Service-level tests use AccountService directly; the route classes go
through /api/v1/auth/register and /api/v1/users/*.
"""

from __future__ import annotations

import pytest

from auth.accounts import CONFLICT, AccountService
from auth.store import AccountStore
from auth.tokens import decode_access_token, verify_password
from tests.conftest import NEW_PASSWORD, PASSWORD, make_account


@pytest.fixture
def service(account_store: AccountStore) -> AccountService:
    return AccountService(account_store, token_ttl_seconds=3600)


class TestRegister:
    def test_creates_account_and_token(self, service: AccountService, account_store: AccountStore) -> None:
        result = service.register("carol", "Carol@Example.com", PASSWORD)
        assert result.status_code == 201
        assert result.message == "REGISTRATION_SUCCESSFUL"
        claims = decode_access_token(result.data["token"])
        assert claims["sub"] == "carol"
        stored = account_store.get_by_email("carol@example.com")
        assert stored is not None
        assert verify_password(PASSWORD, stored.hashed_password)

    def test_duplicate_email(self, service: AccountService, account_store: AccountStore) -> None:
        make_account(account_store)
        result = service.register("someone", "user@example.com", PASSWORD)
        assert result.status_code == 409
        assert result.message == CONFLICT

    def test_duplicate_username(self, service: AccountService, account_store: AccountStore) -> None:
        make_account(account_store)
        assert service.register("alice", "new@example.com", PASSWORD).status_code == 409


class TestProfile:
    def test_empty_profile_has_nulls(self, service: AccountService, account_store: AccountStore) -> None:
        account = make_account(account_store)
        data = service.get_profile(account.id).data
        assert data["username"] == "alice"
        assert data["isVerified"] is False
        assert set(data["profile"].values()) == {None}

    def test_update_creates_then_patches(self, service: AccountService, account_store: AccountStore) -> None:
        account = make_account(account_store)
        service.update_profile(account.id, {"first_name": "Alice", "gender": "female"})
        service.update_profile(account.id, {"last_name": "Liddell"})
        profile = service.get_profile(account.id).data["profile"]
        assert profile["firstName"] == "Alice"
        assert profile["lastName"] == "Liddell"
        assert profile["gender"] == "female"

    def test_unknown_user(self, service: AccountService) -> None:
        assert service.get_profile(404).status_code == 404
        assert service.update_profile(404, {"first_name": "Nobody"}).status_code == 404


class TestUpdatePassword:
    def test_wrong_current_password(self, service: AccountService, account_store: AccountStore) -> None:
        account = make_account(account_store)
        result = service.update_password(account.id, "Wrong!Pass1", NEW_PASSWORD)
        assert result.status_code == 401

    def test_changes_password(self, service: AccountService, account_store: AccountStore) -> None:
        account = make_account(account_store)
        result = service.update_password(account.id, PASSWORD, NEW_PASSWORD)
        assert result.message == "PASSWORD_UPDATED"
        assert result.clear_token is False
        assert verify_password(NEW_PASSWORD, account_store.get_by_id(account.id).hashed_password)

    def test_logout_flag(self, service: AccountService, account_store: AccountStore) -> None:
        account = make_account(account_store)
        result = service.update_password(account.id, PASSWORD, NEW_PASSWORD, logout=True)
        assert result.message == "PASSWORD_UPDATED_AND_LOGGED_OUT"
        assert result.clear_token is True


class TestRegisterRoute:
    def _body(self, **overrides) -> dict:
        body = {
            "username": "carol",
            "email": "carol@example.com",
            "password": PASSWORD,
            "confirmPassword": PASSWORD,
        }
        body.update(overrides)
        return body

    def test_register_201_sets_cookie(self, api) -> None:
        resp = api.client.post("/api/v1/auth/register", json=self._body())
        assert resp.status_code == 201
        assert resp.json()["message"] == "REGISTRATION_SUCCESSFUL"
        assert "access_token" in resp.cookies
        assert resp.headers["Cache-Control"] == "no-store"

    def test_conflict_409(self, api) -> None:
        resp = api.client.post("/api/v1/auth/register", json=self._body(email="user@example.com"))
        assert resp.status_code == 409
        assert resp.json()["message"] == "CONFLICT_ERROR"

    @pytest.mark.parametrize(
        "overrides, expected",
        [
            ({"password": "short", "confirmPassword": "short"}, "password: PASSWORD_TOO_SHORT"),
            ({"password": "alllowercase1", "confirmPassword": "alllowercase1"}, "password: PASSWORD_INVALID_FORMAT"),
            ({"username": "ab"}, "username: USERNAME_TOO_SHORT"),
            ({"username": "bad name"}, "username: USERNAME_INVALID_CHARS"),
            ({"email": "not-an-email"}, "email: INVALID_EMAIL"),
            ({"confirmPassword": "Other!Pass1"}, "PASSWORDS_MISMATCH"),
        ],
    )
    def test_validation_errors(self, api, overrides: dict, expected: str) -> None:
        resp = api.client.post("/api/v1/auth/register", json=self._body(**overrides))
        assert resp.status_code == 422
        body = resp.json()
        assert body["message"] == "VALIDATION_ERROR"
        assert expected in body["errors"]


class TestUserRoutes:
    def test_profile_round_trip(self, api) -> None:
        headers = api.auth_headers()
        update = api.client.put(
            "/api/v1/users/profile",
            json={"firstName": "Alice", "dateOfBirth": "1990-05-01", "profilePicture": "https://cdn.example.com/a.png"},
            headers=headers,
        )
        assert update.status_code == 200
        assert update.json()["message"] == "PROFILE_UPDATED"

        profile = api.client.get("/api/v1/users/profile", headers=headers).json()["data"]["profile"]
        assert profile["firstName"] == "Alice"
        assert profile["dateOfBirth"] == "1990-05-01"
        assert profile["lastName"] is None

    @pytest.mark.parametrize(
        "body, expected",
        [
            ({}, "AT_LEAST_ONE_FIELD_REQUIRED"),
            ({"dateOfBirth": "2024-01-01"}, "dateOfBirth: USER_TOO_YOUNG"),
            ({"dateOfBirth": "1900-01-01"}, "dateOfBirth: USER_TOO_OLD"),
            ({"profilePicture": "ftp://example.com/a.png"}, "profilePicture: INVALID_PROFILE_PICTURE_URL"),
        ],
    )
    def test_profile_validation(self, api, body: dict, expected: str) -> None:
        resp = api.client.put("/api/v1/users/profile", json=body, headers=api.auth_headers())
        assert resp.status_code == 422
        assert expected in resp.json()["errors"]

    def test_profile_requires_auth(self, api) -> None:
        assert api.client.get("/api/v1/users/profile").status_code == 401

    def test_cookie_auth(self, api) -> None:
        """The login cookie alone authenticates; no Authorization header."""
        api.client.post("/api/v1/auth/login", json={"email": "user@example.com", "password": PASSWORD})
        assert "access_token" in api.client.cookies
        resp = api.client.get("/api/v1/users/profile")
        assert resp.status_code == 200
        assert resp.json()["data"]["email"] == "user@example.com"

    def test_change_password_and_logout(self, api) -> None:
        headers = api.auth_headers()
        resp = api.client.put(
            "/api/v1/users/password",
            json={
                "currentPassword": PASSWORD,
                "newPassword": NEW_PASSWORD,
                "confirmPassword": NEW_PASSWORD,
                "logout": True,
            },
            headers=headers,
        )
        assert resp.status_code == 200
        assert resp.json()["message"] == "PASSWORD_UPDATED_AND_LOGGED_OUT"
        assert "access_token=" in resp.headers["set-cookie"]
        assert api.auth_headers(password=NEW_PASSWORD)

    def test_same_password_rejected(self, api) -> None:
        resp = api.client.put(
            "/api/v1/users/password",
            json={"currentPassword": PASSWORD, "newPassword": PASSWORD, "confirmPassword": PASSWORD},
            headers=api.auth_headers(),
        )
        assert resp.status_code == 422
        assert "PASSWORD_SAME_AS_CURRENT" in resp.json()["errors"]
