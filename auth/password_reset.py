"""
auth/password_reset.py -- Password-reset code issuance and consumption.

Two limiters guard this flow, each with its own Purpose so neither shares a
counter with login:

  request limiter  (reset_request)  how often a (client, email) pair may ask
                                    for a code
  failure limiter  (reset_failure)  how many unknown or expired codes a
                                    client may submit

Unknown codes carry no email, so they count against the client-wide bucket
(client, ANY_ACCOUNT). A valid code is refused while either that bucket or
the (client, email) bucket is blocked.

Existence hiding: request_password_reset() answers the same way whether or
not the email is registered, and a notifier failure is logged, never
returned.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Callable

from sqlalchemy.exc import IntegrityError

from auth.models import Account, AuthResult, PasswordResetToken
from auth.store import AccountStore
from auth.tokens import generate_code, hash_password
from core.config import RateLimitConfig
from core.db import utcnow
from notify.notifier import Notifier
from ratelimit.limiter import Clock, RateLimiter
from ratelimit.models import ANY_ACCOUNT, BlockDecision

logger = logging.getLogger("authgate.reset")

_CODE_ATTEMPTS = 5

RESET_EMAIL_SENT = "PASSWORD_RESET_EMAIL_SENT"
RESET_EMAIL_SENT_DETAIL = "If an account with that email exists, a password reset verification code has been sent."
INVALID_TOKEN = "INVALID_OR_EXPIRED_TOKEN"
INVALID_TOKEN_DETAIL = "Password reset token is invalid or has expired."
RESET_SUCCESSFUL = "PASSWORD_RESET_SUCCESSFUL"
RESET_SUCCESSFUL_DETAIL = "Your password has been successfully reset. You can now log in with your new password."
TOKEN_VALID = "TOKEN_VALID"


def _too_many(decision: BlockDecision) -> AuthResult:
    data = decision.to_dict()
    return AuthResult(
        success=False,
        message=decision.message or "TOO_MANY_REQUESTS",
        data={"blockedUntil": data.get("blockedUntil"), "durationMs": decision.duration_ms},
        status_code=429,
    )


class PasswordResetService:
    def __init__(
        self,
        store: AccountStore,
        request_limiter: RateLimiter,
        failure_limiter: RateLimiter,
        login_limiter: RateLimiter,
        notifier: Notifier,
        config: RateLimitConfig,
        clock: Clock = utcnow,
        code_factory: Callable[[], str] = generate_code,
    ) -> None:
        self.store = store
        self.request_limiter = request_limiter
        self.failure_limiter = failure_limiter
        self.login_limiter = login_limiter
        self.notifier = notifier
        self.config = config
        self.clock = clock
        self.code_factory = code_factory

    # ------------------------------------------------------------------
    # Request a code
    # ------------------------------------------------------------------

    def request_password_reset(self, client: str, email: str) -> AuthResult:
        email = email.strip().lower()
        decision = self.request_limiter.is_blocked(client, email)
        if decision.blocked:
            logger.warning("Reset requests blocked for %s/%s", client, email)
            return _too_many(decision)

        account = self.store.get_by_email(email)
        token = self._issue(account) if account is not None else None
        if token is not None:
            try:
                self.notifier.send_password_reset_email(account.email, token.code, self.config.token_expiration_minutes)
            except Exception:
                logger.exception("Failed to send password reset email to user_id=%s", account.id)

        self.request_limiter.record_failed_attempt(client, email)
        return AuthResult(success=True, message=RESET_EMAIL_SENT, data={"message": RESET_EMAIL_SENT_DETAIL})

    def _issue(self, account: Account) -> PasswordResetToken | None:
        """Store a fresh code, drawing again when it collides with a live one.

        Returns None once every draw has collided. The caller still answers
        with the generic success so the outcome does not reveal the account.
        """
        now = self.clock()
        expires_at = now + timedelta(minutes=self.config.token_expiration_minutes)
        for attempt in range(1, _CODE_ATTEMPTS + 1):
            try:
                token = self.store.issue_reset_token(
                    account, self.code_factory(), now, expires_at, self.config.max_active_tokens
                )
            except IntegrityError:
                logger.debug("Reset code collision (attempt %d)", attempt)
                continue
            logger.info("Reset code issued for user_id=%s, expires %s", account.id, expires_at.isoformat())
            return token
        logger.error("No unique reset code after %d draws for user_id=%s", _CODE_ATTEMPTS, account.id)
        return None

    # ------------------------------------------------------------------
    # Consume a code
    # ------------------------------------------------------------------

    def reset_password(self, client: str, code: str, new_password: str) -> AuthResult:
        now = self.clock()
        self.store.purge_expired_tokens(now)
        token = self.store.find_active_token(code, now)

        if token is None:
            decision = self.failure_limiter.is_blocked(client, ANY_ACCOUNT)
            if decision.blocked:
                return _too_many(decision)
            self.failure_limiter.record_failed_attempt(client, ANY_ACCOUNT)
            return AuthResult(
                success=False, message=INVALID_TOKEN, data={"message": INVALID_TOKEN_DETAIL}, status_code=400
            )

        for account_identity in (ANY_ACCOUNT, token.email):
            decision = self.failure_limiter.is_blocked(client, account_identity)
            if decision.blocked:
                logger.warning("Valid reset code refused for %s/%s: client is blocked", client, token.email)
                return _too_many(decision)

        if not self.store.complete_password_reset(token, hash_password(new_password), now):
            logger.warning("Reset code for user_id=%s was consumed by a concurrent request", token.user_id)
            return AuthResult(
                success=False, message=INVALID_TOKEN, data={"message": INVALID_TOKEN_DETAIL}, status_code=400
            )
        for limiter in (self.login_limiter, self.request_limiter, self.failure_limiter):
            limiter.clear(client, token.email)
        logger.info("Password reset completed for user_id=%s", token.user_id)
        return AuthResult(success=True, message=RESET_SUCCESSFUL, data={"message": RESET_SUCCESSFUL_DETAIL})

    def validate_reset_token(self, code: str) -> AuthResult:
        now = self.clock()
        self.store.purge_expired_tokens(now)
        token = self.store.find_active_token(code, now)
        if token is None:
            return AuthResult(
                success=False,
                message=INVALID_TOKEN,
                data={"message": INVALID_TOKEN_DETAIL, "valid": False},
                status_code=400,
            )
        return AuthResult(
            success=True,
            message=TOKEN_VALID,
            data={"message": "Token is valid.", "valid": True, "email": token.email},
        )
