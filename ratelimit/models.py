"""
ratelimit/models.py -- Domain dataclasses for rate-limit state.

Pattern: Data class (pure data container, zero logic). The store owns the
SQL; the limiter owns the state machine.

Layer rule: no imports from api/, auth/ or notify/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Optional


class Purpose(str, Enum):
    """Namespace of a rate-limit counter.

    Login, reset-request and reset-failure counters live in the same table
    but never share a row: purpose is part of the unique key.
    """

    login = "login"
    reset_request = "reset_request"
    reset_failure = "reset_failure"


# Account half of the key for counters that track a client regardless of
# which account it targets (bogus reset codes carry no email).
ANY_ACCOUNT = "*"


@dataclass(frozen=True)
class RateLimitKey:
    purpose: Purpose
    client_identity: str
    account_identity: str


@dataclass
class RateLimitRecord:
    """Stored counter state for one (purpose, client, account) triple.

    block_count never decreases while the record exists. blocked_until is
    None when no block is active.
    """

    key: RateLimitKey
    attempt_count: int = 0
    block_count: int = 0
    blocked_until: Optional[datetime] = None
    id: Optional[int] = None
    created_at: str = ""
    updated_at: str = ""


@dataclass(frozen=True)
class BlockDecision:
    """Outcome of a limiter check: blocked or not, and why."""

    blocked: bool
    message: Optional[str] = None
    blocked_until: Optional[datetime] = None
    duration_ms: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"blocked": self.blocked}
        if self.message is not None:
            out["message"] = self.message
        if self.blocked_until is not None:
            out["blockedUntil"] = self.blocked_until.isoformat()
        if self.duration_ms is not None:
            out["durationMs"] = self.duration_ms
        return out


NOT_BLOCKED = BlockDecision(blocked=False)


@dataclass(frozen=True)
class RateLimitStats:
    attempt_count: int
    block_count: int
    blocked_until: Optional[datetime]
