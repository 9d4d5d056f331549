"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication and client identity.

Two token sources are checked in priority order:
  1. Authorization: Bearer <token> header -- API clients.
  2. JWT cookie ("access_token") -- set by the login route.

try_get_current_user() is the soft variant (returns None on failure).
get_current_user() wraps it and raises HTTP 401 if unauthenticated.

client_identity() resolves the network half of every rate-limit key.

Layer rule: no imports from api/, ratelimit/ or notify/.
  auth/dependencies.py may import from fastapi because this module is part
  of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.models import Account
from auth.tokens import COOKIE_NAME, decode_access_token
from core.config import get_settings


def try_get_current_user(request: Request) -> Account | None:
    """Authenticate the request via Bearer header or cookie.

    Returns the Account on success, None on any failure. Never raises.
    """
    token: str | None = None
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        token = auth_header[7:].strip()
    if not token:
        token = request.cookies.get(COOKIE_NAME)
    if not token:
        return None

    payload = decode_access_token(token)
    if payload is None:
        return None
    return request.app.state.account_store.get_by_id(payload["user_id"])


def get_current_user(request: Request) -> Account:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(user: Account = Depends(get_current_user)): ...
    """
    user = try_get_current_user(request)
    if user is None:
        raise HTTPException(status_code=401, detail="UNAUTHORIZED_ACCESS")
    return user


def client_identity(request: Request) -> str:
    """The requesting client's address.

    X-Forwarded-For is only honoured with TRUST_PROXY_HEADERS=true; otherwise
    any client could pick its own rate-limit bucket by sending the header.
    """
    if get_settings().trust_proxy_headers:
        forwarded = request.headers.get("X-Forwarded-For", "")
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    if request.client is not None and request.client.host:
        return request.client.host
    return "unknown"
