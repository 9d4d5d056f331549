"""
api/main.py -- FastAPI application entry point for AuthGate.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- app-wide slowapi limits; per-route throttles run in
                              the @limiter.limit wrappers in api/routes/v1/auth.py

Lifespan handles startup (stores, services, purge task) and shutdown
(cancel purge task, close DB connections) symmetrically.

Service wiring lives in build_services() so tests can hand in their own
stores, notifier and clock without going through the real lifespan.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.exceptions import HTTPException

from api.limiter import limiter
from api.models import HealthResponse
from api.responses import error_response
from api.routes.v1.auth import router as auth_router
from api.routes.v1.users import router as users_router
from auth.accounts import AccountService
from auth.email_verification import EmailVerificationService
from auth.login import LoginService
from auth.maintenance import purge_expired
from auth.password_reset import PasswordResetService
from auth.store import AccountStore
from core.config import Settings, get_settings
from core.db import utcnow
from notify.notifier import Notifier
from ratelimit.limiter import Clock, RateLimiter
from ratelimit.models import Purpose
from ratelimit.store import RateLimitStore

APP_VERSION = "1.0.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("authgate.api")

_settings = get_settings()

# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


def build_services(
    app: FastAPI,
    settings: Settings,
    account_store: AccountStore,
    rate_store: RateLimitStore,
    notifier: Notifier,
    clock: Clock = utcnow,
) -> None:
    """Construct limiters and flow services once and hang them on app.state.

    The RateLimitConfig is derived here, at startup. Nothing downstream
    reads Settings per request.
    """
    config = settings.rate_limit_config()
    login_limiter = RateLimiter(rate_store, config.login, Purpose.login, clock)
    request_limiter = RateLimiter(rate_store, config.reset_request, Purpose.reset_request, clock)
    failure_limiter = RateLimiter(rate_store, config.reset_failure, Purpose.reset_failure, clock)

    app.state.settings = settings
    app.state.account_store = account_store
    app.state.rate_store = rate_store
    app.state.notifier = notifier
    app.state.clock = clock
    app.state.login_limiter = login_limiter
    app.state.login_service = LoginService(account_store, login_limiter, settings.token_expire_seconds)
    app.state.reset_service = PasswordResetService(
        account_store,
        request_limiter,
        failure_limiter,
        login_limiter,
        notifier,
        config,
        clock=clock,
    )
    app.state.verification_service = EmailVerificationService(
        account_store,
        notifier,
        code_expiry_minutes=settings.email_verification_code_expiry,
        max_attempts=settings.max_verification_attempts,
        clock=clock,
    )
    app.state.account_service = AccountService(account_store, settings.token_expire_seconds)


# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI, interval_seconds: int, retention_hours: int) -> None:
    """Run purge_expired() every interval_seconds.

    The store calls are blocking, so each pass runs in a worker thread.
    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine cleanly.
    """
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await asyncio.to_thread(
                purge_expired, app.state.account_store, app.state.rate_store, retention_hours, app.state.clock()
            )
        except Exception:
            logger.exception("Purge pass failed")


# ---------------------------------------------------------------------------
# Lifespan -- modern startup / shutdown pattern (replaces @app.on_event)
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage stores, services and the purge task across the server lifetime.

    Startup order matters:
      1. Stores first -- tables are created on construction.
      2. Services second -- they hold references to the stores.
      3. Purge task last -- references app.state stores.
    """
    settings = get_settings()
    logger.info("AuthGate API starting up")
    if settings.database_url:
        account_store = AccountStore(settings.database_url)
        rate_store = RateLimitStore(settings.database_url)
    else:
        account_store = AccountStore()
        rate_store = RateLimitStore()
    notifier = Notifier.from_settings(settings)
    if not notifier.smtp_enabled:
        logger.warning("SMTP not configured -- emails will be logged, not sent")
    build_services(app, settings, account_store, rate_store, notifier)
    logger.info(
        "Rate limiting: %d attempts, blocks %s ms, max block count %s",
        settings.rate_limit_max_attempts,
        app.state.login_limiter.policy.block_durations_ms,
        settings.rate_limit_max_block_count,
    )

    app.state.purge_task = None
    if settings.rate_limit_enable_cleanup:
        app.state.purge_task = asyncio.create_task(
            _purge_loop(app, settings.rate_limit_cleanup_interval * 60, settings.rate_limit_retention_hours)
        )

    yield

    # Shutdown
    if app.state.purge_task is not None:
        app.state.purge_task.cancel()
    account_store.close()
    rate_store.close()
    logger.info("AuthGate API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="AuthGate API",
    description="User authentication with progressive brute-force protection.",
    version=APP_VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them:
# TrustedHost -> CORS -> SlowAPI.
# ---------------------------------------------------------------------------

app.add_middleware(TrustedHostMiddleware, allowed_hosts=_settings.allowed_hosts)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter

# ---------------------------------------------------------------------------
# Request logging middleware
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(users_router, prefix="/api/v1", tags=["Users"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same {success, message, data} envelope as the
# routes, so clients parse one shape regardless of status.
# ---------------------------------------------------------------------------

_STATUS_MESSAGES = {
    401: "UNAUTHORIZED_ACCESS",
    404: "RESOURCE_NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
}


@app.exception_handler(RateLimitExceeded)
def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 when the coarse request throttle trips.

    Plain def: SlowAPIMiddleware calls this handler synchronously.
    """
    retry_after = int(getattr(exc, "retry_after", 60))
    response = error_response(429, "TOO_MANY_REQUESTS", errors=[str(exc.detail)])
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 VALIDATION_ERROR with one readable line per failed field."""
    errors = []
    for err in exc.errors():
        field = ".".join(str(part) for part in err.get("loc", ()) if part != "body")
        msg = str(err.get("msg", "")).removeprefix("Value error, ")
        errors.append(f"{field}: {msg}" if field else msg)
    return error_response(422, "VALIDATION_ERROR", errors=errors)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    message = exc.detail if isinstance(exc.detail, str) and exc.detail.isupper() else None
    return error_response(exc.status_code, message or _STATUS_MESSAGES.get(exc.status_code, f"HTTP_{exc.status_code}"))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception is logged only, never written to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return error_response(500, "INTERNAL_SERVER_ERROR")


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py so it is always reachable regardless of router
# registration state. No request throttle -- load balancer probes must not
# be rate limited.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness, version and per-store status."""
    components = {"app": "ok"}
    for name, store in (("database", request.app.state.account_store), ("rate_limits", request.app.state.rate_store)):
        try:
            store.ping()
            components[name] = "ok"
        except Exception:
            logger.exception("Health check failed for %s", name)
            components[name] = "error"
    status = "healthy" if all(v == "ok" for v in components.values()) else "degraded"
    return HealthResponse(status=status, version=APP_VERSION, components=components)
