"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in both api/main.py (to mount as middleware) and
api/routes/v1/auth.py (to apply per-route limits with @limiter.limit()).

This is the coarse per-client request throttle. It counts every request,
successful or not, and sits in front of the progressive brute-force limiter
in ratelimit/, which only counts failures.

The key function is auth.dependencies.client_identity so both layers agree
on who the client is (X-Forwarded-For only behind a trusted proxy).
"""

from slowapi import Limiter

from auth.dependencies import client_identity
from core.config import get_settings

limiter = Limiter(key_func=client_identity, storage_uri="memory://")


def request_limit() -> str:
    """LOGIN_RATE_LIMIT, resolved per request so tests can override it."""
    return get_settings().login_rate_limit
