"""
auth/email_verification.py -- Email ownership confirmation with 6-digit codes.

One active code per account: requesting a new code deletes every pending
one. A code dies on success, on expiry and when its attempts run out.
"""

from __future__ import annotations

import logging
import secrets
from datetime import timedelta
from typing import Callable

from auth.models import AuthResult
from auth.store import AccountStore
from auth.tokens import generate_code
from core.db import utcnow
from notify.notifier import Notifier
from ratelimit.limiter import Clock

logger = logging.getLogger("authgate.verify")


class EmailVerificationService:
    def __init__(
        self,
        store: AccountStore,
        notifier: Notifier,
        code_expiry_minutes: int = 15,
        max_attempts: int = 3,
        clock: Clock = utcnow,
        code_factory: Callable[[], str] = generate_code,
    ) -> None:
        self.store = store
        self.notifier = notifier
        self.code_expiry_minutes = code_expiry_minutes
        self.max_attempts = max_attempts
        self.clock = clock
        self.code_factory = code_factory

    def send_verification(self, user_id: int) -> AuthResult:
        account = self.store.get_by_id(user_id)
        if account is None:
            return AuthResult(success=False, message="User not found", status_code=404)
        if account.is_verified:
            return AuthResult(success=False, message="Email is already verified", status_code=400)

        now = self.clock()
        expires_at = now + timedelta(minutes=self.code_expiry_minutes)
        verification = self.store.replace_verification(account.id, self.code_factory(), now, expires_at)
        try:
            self.notifier.send_verification_email(account.email, verification.code, self.code_expiry_minutes)
        except Exception:
            logger.exception("Failed to send verification email to user_id=%s", account.id)
            return AuthResult(success=False, message="Failed to send verification email", status_code=500)

        return AuthResult(
            success=True,
            message=(
                f"Verification code sent to {account.email}. "
                f"Code expires in {self.code_expiry_minutes} minutes."
            ),
            data={"expiresAt": expires_at.isoformat()},
        )

    def verify_code(self, user_id: int, code: str) -> AuthResult:
        account = self.store.get_by_id(user_id)
        if account is None:
            return AuthResult(success=False, message="User not found", status_code=404)
        if account.is_verified:
            self.store.delete_verifications(account.id)
            return AuthResult(success=False, message="Email is already verified", status_code=400)

        pending = self.store.get_pending_verification(account.id)
        if pending is None:
            return AuthResult(
                success=False, message="No verification code found. Please request a new code.", status_code=400
            )
        if self.clock() > pending.expires_at:
            self.store.delete_verification(pending.id)
            return AuthResult(
                success=False, message="Verification code has expired. Please request a new code.", status_code=400
            )
        if pending.attempts >= self.max_attempts:
            self.store.delete_verification(pending.id)
            return AuthResult(
                success=False, message="Too many failed attempts. Please request a new code.", status_code=429
            )

        attempts = self.store.increment_verification_attempts(pending.id)
        if not secrets.compare_digest(pending.code, code):
            remaining = self.max_attempts - attempts
            if remaining > 0:
                return AuthResult(
                    success=False,
                    message=f"Invalid verification code. {remaining} attempts remaining.",
                    status_code=400,
                )
            self.store.delete_verification(pending.id)
            return AuthResult(
                success=False, message="Invalid verification code. Maximum attempts exceeded.", status_code=400
            )

        self.store.mark_verified(account.id, self.clock())
        logger.info("Email verified for user_id=%s", account.id)
        return AuthResult(success=True, message="Email verified successfully!")

    def get_status(self, user_id: int) -> AuthResult:
        account = self.store.get_by_id(user_id)
        if account is None:
            return AuthResult(success=False, message="User not found", status_code=404)
        data: dict = {"isVerified": account.is_verified, "hasCode": False}
        pending = self.store.get_pending_verification(account.id)
        if pending is not None:
            data.update(
                hasCode=True,
                expiresAt=pending.expires_at.isoformat(),
                attempts=pending.attempts,
                maxAttempts=self.max_attempts,
            )
        return AuthResult(success=True, message="VERIFICATION_STATUS", data=data)
