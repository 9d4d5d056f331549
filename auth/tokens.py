"""
auth/tokens.py -- JWT issuance, password hashing and one-time code utilities.

Security design decisions:
  JWT: python-jose with HS256. Tokens are signed with SECRET_KEY and carry
       user_id, sub (username), email and expiry. Verification returns None
       on any failure -- the dependency layer turns that into a 401.

  Passwords: bcrypt, used directly. The _DUMMY_HASH constant lets callers
       run a full bcrypt comparison even when the account does not exist, so
       response time does not reveal whether an email is registered.

  Codes: generate_code() draws six decimal digits from the secrets module.
       Uniqueness of reset codes is enforced by the store, not here.

  SECRET_KEY: sourced from core.config.get_settings(), which refuses short
       or missing keys outside dev mode.

Layer rule: no imports from api/, ratelimit/ or notify/.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta, timezone

import bcrypt
from jose import JWTError, jwt

from core.config import get_settings

logger = logging.getLogger("authgate.auth")

# ---------------------------------------------------------------------------
# Config -- read once at module load via the lru_cache singleton
# ---------------------------------------------------------------------------

_settings = get_settings()

_ALGORITHM = "HS256"
COOKIE_NAME = "access_token"

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt only looks at the first 72 bytes. The API layer caps password
    length well below that.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed digest in the store
        logger.warning("Stored password digest is not a valid bcrypt hash")
        return False


# Timing equalization dummy hash. Computed once at module load so the first
# login attempt is not measurably slower than the rest.
_DUMMY_HASH: str = hash_password("authgate_timing_dummy")


def burn_password_check(plain: str) -> None:
    """Spend one bcrypt comparison on nothing. Used when no account matched."""
    verify_password(plain, _DUMMY_HASH)


# ---------------------------------------------------------------------------
# JWT encode / decode
# ---------------------------------------------------------------------------


def create_access_token(claims: dict, expire_seconds: int = 0) -> str:
    """Sign claims into a JWT that expires after expire_seconds.

    expire_seconds of 0 (default) uses Settings.token_expire_seconds, which
    comes from JWT_TOKEN_EXPIRATION.
    """
    duration = expire_seconds if expire_seconds > 0 else _settings.token_expire_seconds
    payload = dict(claims)
    payload["exp"] = datetime.now(timezone.utc) + timedelta(seconds=duration)
    return jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM)


def account_claims(user_id: int, username: str, email: str) -> dict:
    return {"user_id": user_id, "sub": username, "email": email}


def decode_access_token(token: str) -> dict | None:
    """Decode and verify a JWT. Returns the payload dict or None on any failure."""
    try:
        payload = jwt.decode(token, _settings.secret_key, algorithms=[_ALGORITHM])
    except JWTError:
        return None
    if "user_id" not in payload:
        return None
    return payload


# ---------------------------------------------------------------------------
# One-time codes
# ---------------------------------------------------------------------------


def generate_code() -> str:
    """Six decimal digits, leading zeros kept."""
    return f"{secrets.randbelow(1_000_000):06d}"


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_auth_cookie(response, token: str, expire_seconds: int = 0) -> None:
    """Write the JWT access token as an httpOnly cookie on the response.

    httponly=True: JS cannot read the cookie.
    samesite="lax": not sent on cross-site POST.
    secure: only sent over HTTPS when SECURE_COOKIES=true.
    max_age: matches the JWT expiry so both expire together.
    """
    duration = expire_seconds if expire_seconds > 0 else _settings.token_expire_seconds
    response.set_cookie(
        COOKIE_NAME,
        value=token,
        httponly=True,
        samesite="lax",
        secure=_settings.secure_cookies,
        max_age=duration,
    )


def clear_auth_cookie(response) -> None:
    response.delete_cookie(COOKIE_NAME, httponly=True, samesite="lax", secure=_settings.secure_cookies)
