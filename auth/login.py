"""
auth/login.py -- Login orchestrator.

Sequencing per request (client, email, password):

  1. limiter.is_blocked(client, email)
  2. Blocked and block_count >= max_block_count: repeat offender. Count a
     blocked attempt (capped) and answer with the block. No account lookup,
     no bcrypt.
  3. Look up the account.
       missing / wrong password:
         blocked     -> record_blocked_attempt, block message
         not blocked -> record_failed_attempt, block message if that
                        attempt tripped the threshold, else the generic 401
       right password:
         blocked     -> reset_attempt_count, block message (no token)
         not blocked -> sign token, clear the record, success

Credentials are always verified unless the pair is a repeat offender: a
correct password during a block must reset attempt_count rather than escalate.

Infrastructure errors from the account store or the token signer are not
caught here; the API layer turns them into a generic 500.
"""

from __future__ import annotations

import logging
from typing import Callable

from auth.models import Account, AuthResult
from auth.store import AccountStore
from auth.tokens import account_claims, burn_password_check, create_access_token, verify_password
from ratelimit.limiter import RateLimiter
from ratelimit.models import BlockDecision

logger = logging.getLogger("authgate.login")

UNAUTHORIZED = "UNAUTHORIZED_ACCESS"
LOGIN_SUCCESSFUL = "LOGIN_SUCCESSFUL"

Signer = Callable[[dict, int], str]


def normalize_email(email: str) -> str:
    return email.strip().lower()


def _blocked(decision: BlockDecision) -> AuthResult:
    return AuthResult(
        success=False,
        message=decision.message or UNAUTHORIZED,
        data={"blockedUntil": decision.to_dict().get("blockedUntil"), "durationMs": decision.duration_ms},
        status_code=401,
    )


class LoginService:
    def __init__(
        self,
        store: AccountStore,
        limiter: RateLimiter,
        token_ttl_seconds: int,
        sign: Signer = create_access_token,
    ) -> None:
        self.store = store
        self.limiter = limiter
        self.token_ttl_seconds = token_ttl_seconds
        self.sign = sign

    @property
    def max_block_count(self) -> int | None:
        return self.limiter.policy.max_block_count

    def _is_repeat_offender(self, client: str, email: str) -> bool:
        if self.max_block_count is None:
            return False
        stats = self.limiter.get_stats(client, email)
        return stats is not None and stats.block_count >= self.max_block_count

    def login(self, client: str, email: str, password: str) -> AuthResult:
        email = normalize_email(email)
        decision = self.limiter.is_blocked(client, email)

        if decision.blocked and self._is_repeat_offender(client, email):
            self.limiter.record_blocked_attempt(client, email)
            logger.warning("Repeat offender short-circuit for %s/%s", client, email)
            return _blocked(decision)

        account = self.store.get_by_email(email)
        if account is None:
            burn_password_check(password)
            return self._failed(client, email, decision)
        if not verify_password(password, account.hashed_password):
            return self._failed(client, email, decision)

        if decision.blocked:
            self.limiter.reset_attempt_count(client, email)
            logger.info("Correct credentials during active block for %s/%s", client, email)
            return _blocked(decision)

        return self._succeed(client, email, account)

    def _failed(self, client: str, email: str, decision: BlockDecision) -> AuthResult:
        if decision.blocked:
            self.limiter.record_blocked_attempt(client, email)
            return _blocked(decision)
        outcome = self.limiter.record_failed_attempt(client, email)
        if outcome.blocked:
            return _blocked(outcome)
        logger.info("Failed login for %s from %s", email, client)
        return AuthResult(success=False, message=UNAUTHORIZED, status_code=401)

    def _succeed(self, client: str, email: str, account: Account) -> AuthResult:
        token = self.sign(account_claims(account.id, account.username, account.email), self.token_ttl_seconds)
        self.limiter.clear(client, email)
        logger.info("Login for user_id=%s from %s", account.id, client)
        return AuthResult(success=True, message=LOGIN_SUCCESSFUL, data={"token": token}, set_token=token)
