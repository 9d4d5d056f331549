"""
auth/accounts.py -- Registration, profile and password-change operations.

Input shape (username charset, password policy, profile field formats) is
validated by the request models in api/models.py before these methods run.
"""

from __future__ import annotations

import logging

from sqlalchemy.exc import IntegrityError

from auth.models import Account, AuthResult
from auth.store import AccountStore
from auth.tokens import account_claims, create_access_token, hash_password, verify_password

logger = logging.getLogger("authgate.accounts")

NOT_FOUND = "RESOURCE_NOT_FOUND"
CONFLICT = "CONFLICT_ERROR"


class AccountService:
    def __init__(self, store: AccountStore, token_ttl_seconds: int, sign=create_access_token) -> None:
        self.store = store
        self.token_ttl_seconds = token_ttl_seconds
        self.sign = sign

    def register(self, username: str, email: str, password: str) -> AuthResult:
        email = email.strip().lower()
        if self.store.get_by_email(email) is not None or self.store.get_by_username(username) is not None:
            return AuthResult(success=False, message=CONFLICT, status_code=409)
        account = Account(username=username, email=email, hashed_password=hash_password(password))
        try:
            account.id = self.store.create_account(account)
        except IntegrityError:
            # Concurrent registration took the name between our check and insert
            return AuthResult(success=False, message=CONFLICT, status_code=409)
        logger.info("Registered user_id=%s (%s)", account.id, username)
        token = self.sign(account_claims(account.id, account.username, account.email), self.token_ttl_seconds)
        return AuthResult(
            success=True,
            message="REGISTRATION_SUCCESSFUL",
            data={"token": token},
            status_code=201,
            set_token=token,
        )

    def get_profile(self, user_id: int) -> AuthResult:
        account = self.store.get_by_id(user_id)
        if account is None:
            return AuthResult(success=False, message=NOT_FOUND, status_code=404)
        detail = self.store.get_profile(user_id)
        return AuthResult(
            success=True,
            message="PROFILE_RETRIEVED",
            data={
                "id": account.id,
                "username": account.username,
                "email": account.email,
                "isVerified": account.is_verified,
                "profile": {
                    "firstName": detail.first_name if detail else None,
                    "lastName": detail.last_name if detail else None,
                    "gender": detail.gender if detail else None,
                    "dateOfBirth": detail.date_of_birth if detail else None,
                    "phoneNumber": detail.phone_number if detail else None,
                    "profilePicture": detail.profile_picture if detail else None,
                },
                "createdAt": account.created_at,
                "updatedAt": account.updated_at,
            },
        )

    def update_profile(self, user_id: int, fields: dict) -> AuthResult:
        """Apply the given profile fields (snake_case keys); absent keys are left alone."""
        if self.store.get_by_id(user_id) is None:
            return AuthResult(success=False, message=NOT_FOUND, status_code=404)
        self.store.upsert_profile(user_id, **fields)
        return AuthResult(success=True, message="PROFILE_UPDATED")

    def update_password(self, user_id: int, current_password: str, new_password: str, logout: bool = False) -> AuthResult:
        account = self.store.get_by_id(user_id)
        if account is None:
            return AuthResult(success=False, message=NOT_FOUND, status_code=404)
        if not verify_password(current_password, account.hashed_password):
            return AuthResult(success=False, message="UNAUTHORIZED_ACCESS", status_code=401)
        self.store.update_password(user_id, hash_password(new_password))
        logger.info("Password changed for user_id=%s", user_id)
        if logout:
            return AuthResult(success=True, message="PASSWORD_UPDATED_AND_LOGGED_OUT", clear_token=True)
        return AuthResult(success=True, message="PASSWORD_UPDATED")
