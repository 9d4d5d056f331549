"""
auth/maintenance.py -- Periodic cleanup shared by the API purge task and the admin CLI.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from auth.store import AccountStore
from core.db import utcnow
from ratelimit.store import RateLimitStore

logger = logging.getLogger("authgate.maintenance")


def purge_expired(
    account_store: AccountStore,
    rate_store: RateLimitStore,
    retention_hours: int,
    now: datetime | None = None,
) -> dict[str, int]:
    """Delete expired reset tokens, expired verification codes and stale rate-limit rows.

    A rate-limit row is stale once its block (if any) has lapsed and it has
    not been touched for retention_hours.
    """
    now = now or utcnow()
    counts = {
        "reset_tokens": account_store.purge_expired_tokens(now),
        "verifications": account_store.purge_expired_verifications(now),
        "rate_limits": rate_store.purge_stale(now, now - timedelta(hours=retention_hours)),
    }
    logger.info(
        "Purged %d reset tokens, %d verification codes, %d rate-limit records",
        counts["reset_tokens"],
        counts["verifications"],
        counts["rate_limits"],
    )
    return counts
