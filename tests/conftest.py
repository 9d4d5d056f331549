"""
tests/conftest.py -- Shared test fixtures for AuthGate unit and integration tests.

This module provides:
  - FakeClock: a controllable clock injected into limiters and flows so block
    windows and code expiry can be crossed without sleeping
  - RecordingNotifier: captures outgoing codes instead of sending email
  - account_store / rate_store: isolated in-memory stores per test
  - make_limiter: RateLimiter factory bound to the test store and clock
  - api: TestClient over the real app with a patched lifespan

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

Environment variables must be set before any auth/core import: DEBUG so
get_settings() auto-generates SECRET_KEY, ALLOWED_HOSTS so TrustedHost lets
the TestClient's "testserver" host through, and a high LOGIN_RATE_LIMIT so
the coarse request throttle never interferes with limiter tests.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

# CRITICAL: set before any auth/core import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost"]')
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")
os.environ.setdefault("RATE_LIMIT_ENABLE_CLEANUP", "false")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import text

from api.limiter import limiter as request_throttle
from api.main import app, build_services
from auth.models import Account
from auth.store import AccountStore
from auth.tokens import hash_password
from core.config import LOGIN_BLOCK_MESSAGE, LimitPolicy, get_settings
from core.db import to_iso
from ratelimit.limiter import RateLimiter
from ratelimit.models import Purpose
from ratelimit.store import RateLimitStore

PASSWORD = "Str0ng!Pass"
NEW_PASSWORD = "N3w!Passw0rd"
# One bcrypt hash for the whole session; hashing is deliberately slow.
PASSWORD_HASH = hash_password(PASSWORD)

MINUTE_MS = 60 * 1000


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable clock whose time only moves when a test says so."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@dataclass
class SentEmail:
    kind: str
    email: str
    code: str
    ttl_minutes: int


@dataclass
class RecordingNotifier:
    """Stands in for notify.Notifier; fail=True makes every send raise."""

    fail: bool = False
    sent: list[SentEmail] = field(default_factory=list)
    smtp_enabled: bool = False

    def _record(self, kind: str, email: str, code: str, ttl_minutes: int) -> None:
        if self.fail:
            raise ConnectionError("smtp down")
        self.sent.append(SentEmail(kind, email, code, ttl_minutes))

    def send_password_reset_email(self, email: str, code: str, ttl_minutes: int) -> None:
        self._record("password_reset", email, code, ttl_minutes)

    def send_verification_email(self, email: str, code: str, ttl_minutes: int) -> None:
        self._record("email_verification", email, code, ttl_minutes)

    def last_code(self, kind: str = "password_reset") -> str:
        return [m for m in self.sent if m.kind == kind][-1].code


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def _memory_url(prefix: str) -> str:
    return f"sqlite:///file:{prefix}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


def make_account(store: AccountStore, username: str = "alice", email: str = "user@example.com") -> Account:
    account = Account(username=username, email=email, hashed_password=PASSWORD_HASH)
    account.id = store.create_account(account)
    return account


def token_count(store: AccountStore, user_id: int) -> int:
    """All stored reset tokens for an account, used or not."""
    with store.engine.connect() as conn:
        return conn.execute(
            text("SELECT COUNT(*) FROM password_reset_tokens WHERE user_id = :uid"), {"uid": user_id}
        ).scalar()


def active_codes(store: AccountStore, user_id: int, now: datetime) -> list[str]:
    """Codes of the unused, unexpired tokens for an account, oldest first."""
    with store.engine.connect() as conn:
        rows = conn.execute(
            text(
                "SELECT code FROM password_reset_tokens"
                " WHERE user_id = :uid AND used = 0 AND expires_at > :now"
                " ORDER BY created_at, id"
            ),
            {"uid": user_id, "now": to_iso(now)},
        )
        return [row.code for row in rows]


def login_policy(**overrides) -> LimitPolicy:
    values = dict(
        max_attempts=5,
        block_durations_ms=(15 * MINUTE_MS, 30 * MINUTE_MS, 60 * MINUTE_MS),
        message=LOGIN_BLOCK_MESSAGE,
        max_block_count=2,
    )
    values.update(overrides)
    return LimitPolicy(**values)


# ---------------------------------------------------------------------------
# Unit-level fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def account_store() -> Generator[AccountStore, None, None]:
    store = AccountStore(db_url=_memory_url("test_accounts"))
    yield store
    store.close()


@pytest.fixture
def rate_store() -> Generator[RateLimitStore, None, None]:
    store = RateLimitStore(db_url=_memory_url("test_rates"))
    yield store
    store.close()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def make_limiter(rate_store: RateLimitStore, clock: FakeClock):
    """Factory: make_limiter(policy=None, purpose=Purpose.login) -> RateLimiter."""

    def _make(policy: LimitPolicy | None = None, purpose: Purpose = Purpose.login) -> RateLimiter:
        return RateLimiter(rate_store, policy or login_policy(), purpose, clock)

    return _make


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


@dataclass
class ApiHarness:
    client: TestClient
    clock: FakeClock
    notifier: RecordingNotifier
    account_store: AccountStore
    rate_store: RateLimitStore

    @property
    def app_limiter(self) -> RateLimiter:
        return self.client.app.state.login_limiter

    def auth_headers(self, email: str = "user@example.com", password: str = PASSWORD) -> dict[str, str]:
        resp = self.client.post("/api/v1/auth/login", json={"email": email, "password": password})
        assert resp.status_code == 200, resp.text
        return {"Authorization": f"Bearer {resp.json()['data']['token']}"}


def _patch_lifespan(account_store: AccountStore, rate_store: RateLimitStore, notifier, clock: FakeClock):
    """Return an async context manager that replaces the real lifespan.

    Wires the test stores, notifier and clock into app.state through the same
    build_services() the real lifespan uses. The purge_task is a long-sleeping
    coroutine so shutdown can cancel a real asyncio.Task.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        build_services(app, get_settings(), account_store, rate_store, notifier, clock=clock)
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@pytest.fixture
def api(account_store: AccountStore, rate_store: RateLimitStore, notifier: RecordingNotifier, clock: FakeClock):
    """Yield an ApiHarness with one registered account (user@example.com / PASSWORD).

    raise_server_exceptions=False so the catch-all handler's 500 envelope
    reaches the test instead of the re-raised exception.
    """
    make_account(account_store)
    request_throttle.reset()
    app.router.lifespan_context = _patch_lifespan(account_store, rate_store, notifier, clock)
    with TestClient(app, raise_server_exceptions=False) as client:
        yield ApiHarness(client, clock, notifier, account_store, rate_store)
