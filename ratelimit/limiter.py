"""
ratelimit/limiter.py -- Progressive block state machine for one purpose.

A RateLimiter owns the counters of a single Purpose (login, reset_request or
reset_failure) and decides, per (client_identity, account_identity) pair,
whether an attempt may proceed.

State per pair (RateLimitRecord):
  attempt_count  failures since the last reset or expiry
  block_count    times the pair crossed max_attempts; never decreases
  blocked_until  end of the active block, or None

Transitions:
  is_blocked              read; lazily expires a passed block (attempt_count
                          back to 0, blocked_until cleared, block_count kept)
  record_failed_attempt   find-or-create, +1, escalate, maybe block
  record_blocked_attempt  +1 only while block_count < max_block_count
  reset_attempt_count     attempt_count back to 0, block untouched
  clear                   delete the record
  get_stats               read-only introspection

Durations escalate with block_count (index block_count - 1) and saturate at
the last configured entry.

Failure policy: every method catches store errors, logs them and fails open
(not blocked / no-op). A broken rate-limit table must never lock out a
legitimate user.

Layer rule: imports only core/ and ratelimit/.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta
from typing import Callable

from core.config import LimitPolicy
from core.db import utcnow
from ratelimit.models import NOT_BLOCKED, BlockDecision, Purpose, RateLimitKey, RateLimitRecord, RateLimitStats
from ratelimit.store import RateLimitStore

logger = logging.getLogger("authgate.ratelimit")

Clock = Callable[[], datetime]


class RateLimiter:
    def __init__(
        self,
        store: RateLimitStore,
        policy: LimitPolicy,
        purpose: Purpose,
        clock: Clock = utcnow,
    ) -> None:
        if not policy.block_durations_ms:
            raise ValueError("LimitPolicy needs at least one block duration")
        self.store = store
        self.policy = policy
        self.purpose = purpose
        self.clock = clock

    def key(self, client_identity: str, account_identity: str) -> RateLimitKey:
        return RateLimitKey(self.purpose, client_identity, account_identity)

    # ------------------------------------------------------------------
    # Duration and message helpers
    # ------------------------------------------------------------------

    def duration_ms_for(self, block_count: int) -> int:
        """Block duration for a given block_count, saturating at the last entry."""
        durations = self.policy.block_durations_ms
        index = min(max(block_count - 1, 0), len(durations) - 1)
        return durations[index]

    def _decision(self, record: RateLimitRecord, now: datetime) -> BlockDecision:
        blocked_until = record.blocked_until
        if self.policy.report_remaining:
            duration_ms = max(int((blocked_until - now).total_seconds() * 1000), 0)
            minutes = max(math.ceil(duration_ms / 60000), 1)
        else:
            duration_ms = self.duration_ms_for(record.block_count)
            minutes = duration_ms // 60000
        message = self.policy.message.format(minutes=minutes, until=blocked_until.isoformat())
        return BlockDecision(blocked=True, message=message, blocked_until=blocked_until, duration_ms=duration_ms)

    # ------------------------------------------------------------------
    # Public contract
    # ------------------------------------------------------------------

    def is_blocked(self, client_identity: str, account_identity: str) -> BlockDecision:
        key = self.key(client_identity, account_identity)
        try:
            record = self.store.get(key)
            if record is None or record.blocked_until is None:
                return NOT_BLOCKED
            now = self.clock()
            if record.blocked_until <= now:
                self.store.update(key, now, attempt_count=0, blocked_until=None)
                logger.info("Block expired for %s %s/%s", self.purpose.value, client_identity, account_identity)
                return NOT_BLOCKED
            return self._decision(record, now)
        except Exception:
            logger.exception("Rate limit check failed for %s; allowing attempt", self.purpose.value)
            return NOT_BLOCKED

    def record_failed_attempt(self, client_identity: str, account_identity: str) -> BlockDecision:
        key = self.key(client_identity, account_identity)
        now = self.clock()
        max_attempts = self.policy.max_attempts

        def escalate(record: RateLimitRecord) -> dict | None:
            changes: dict = {}
            block_count = max(record.block_count, record.attempt_count // max_attempts)
            if block_count > record.block_count:
                changes["block_count"] = block_count
            if record.attempt_count >= max_attempts:
                changes["blocked_until"] = now + timedelta(milliseconds=self.duration_ms_for(block_count))
            return changes or None

        try:
            record = self.store.increment_attempts(key, now, escalate=escalate)
        except Exception:
            logger.exception("Failed to record %s attempt; allowing attempt", self.purpose.value)
            return NOT_BLOCKED
        if record is None or record.attempt_count < max_attempts:
            return NOT_BLOCKED
        logger.warning(
            "Blocked %s %s/%s after %d attempts (block_count=%d, until %s)",
            self.purpose.value,
            client_identity,
            account_identity,
            record.attempt_count,
            record.block_count,
            record.blocked_until.isoformat(),
        )
        return self._decision(record, now)

    def record_blocked_attempt(self, client_identity: str, account_identity: str) -> None:
        key = self.key(client_identity, account_identity)
        max_attempts = self.policy.max_attempts

        def escalate(record: RateLimitRecord) -> dict | None:
            block_count = max(record.block_count, record.attempt_count // max_attempts)
            if block_count > record.block_count:
                return {"block_count": block_count}
            return None

        try:
            record = self.store.increment_attempts(
                key,
                self.clock(),
                create=False,
                block_count_below=self.policy.max_block_count,
                escalate=escalate,
            )
        except Exception:
            logger.exception("Failed to record blocked %s attempt", self.purpose.value)
            return
        if record is None:
            logger.debug("Blocked %s attempt not counted for %s/%s", self.purpose.value, client_identity, account_identity)

    def reset_attempt_count(self, client_identity: str, account_identity: str) -> None:
        try:
            self.store.update(self.key(client_identity, account_identity), self.clock(), attempt_count=0)
        except Exception:
            logger.exception("Failed to reset %s attempt count", self.purpose.value)

    def clear(self, client_identity: str, account_identity: str) -> None:
        try:
            self.store.delete(self.key(client_identity, account_identity))
        except Exception:
            logger.exception("Failed to clear %s rate limit record", self.purpose.value)

    def get_stats(self, client_identity: str, account_identity: str) -> RateLimitStats | None:
        try:
            record = self.store.get(self.key(client_identity, account_identity))
        except Exception:
            logger.exception("Failed to read %s rate limit stats", self.purpose.value)
            return None
        if record is None:
            return None
        return RateLimitStats(
            attempt_count=record.attempt_count,
            block_count=record.block_count,
            blocked_until=record.blocked_until,
        )
