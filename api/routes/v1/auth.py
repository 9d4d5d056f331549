"""
api/routes/v1/auth.py -- Authentication REST endpoints.

Routes:
  POST /api/v1/auth/register              -- create account; 201 + token cookie
  POST /api/v1/auth/login                 -- password login; sets JWT cookie
  POST /api/v1/auth/logout                -- clears cookie; 200
  GET  /api/v1/auth/me                    -- current account (requires auth)
  POST /api/v1/auth/forgot-password       -- email a reset code; 429 when blocked
  POST /api/v1/auth/reset-password        -- consume a reset code; 400 / 429
  GET  /api/v1/auth/validate-code/{code}  -- check a reset code without using it
  POST /api/v1/auth/verify-email/send     -- email a verification code (requires auth)
  POST /api/v1/auth/verify-email          -- submit the verification code (requires auth)
  GET  /api/v1/auth/verify-email/status   -- pending code info (requires auth)

Security:
  Login, forgot-password and reset-password carry a coarse slowapi throttle
  (LOGIN_RATE_LIMIT) on top of the progressive limiter in ratelimit/.
  Cache-Control: no-store on every response that carries a token.
  Login and forgot-password answers never reveal whether the email exists.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter, request_limit
from api.models import (
    Envelope,
    ForgotPasswordRequest,
    LoginRequest,
    RegisterRequest,
    ResetPasswordRequest,
    VerifyEmailRequest,
)
from api.responses import envelope_response
from auth.dependencies import client_identity, get_current_user
from auth.models import Account, AuthResult
from auth.tokens import clear_auth_cookie

# Auth policy:
# - register, login, logout, forgot-password, reset-password, validate-code: public
# - me, verify-email/*: requires auth (get_current_user)
router = APIRouter()


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=Envelope, status_code=201)
def register(request: Request, body: RegisterRequest) -> JSONResponse:
    """Create an account and log it in. 409 CONFLICT_ERROR if the email or username is taken."""
    result = request.app.state.account_service.register(body.username, body.email, body.password)
    return envelope_response(result, no_store=True)


@router.post("/auth/login", response_model=Envelope)
@limiter.limit(request_limit)  # innermost: @router.post must register the throttled wrapper
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password; set JWT cookie.

    401 for wrong credentials and for active blocks alike. A block response
    carries blockedUntil and durationMs in data.
    """
    result = request.app.state.login_service.login(client_identity(request), body.email, body.password)
    return envelope_response(result, no_store=True)


@router.post("/auth/logout", response_model=Envelope)
def logout() -> JSONResponse:
    """Clear the JWT cookie."""
    resp = envelope_response(AuthResult(success=True, message="LOGOUT_SUCCESSFUL"))
    clear_auth_cookie(resp)
    return resp


@router.post("/auth/forgot-password", response_model=Envelope)
@limiter.limit(request_limit)
def forgot_password(request: Request, body: ForgotPasswordRequest) -> JSONResponse:
    """Email a 6-digit reset code. Same answer whether or not the account exists."""
    result = request.app.state.reset_service.request_password_reset(client_identity(request), body.email)
    return envelope_response(result)


@router.post("/auth/reset-password", response_model=Envelope)
@limiter.limit(request_limit)
def reset_password(request: Request, body: ResetPasswordRequest) -> JSONResponse:
    """Set a new password with a reset code. Every other outstanding code dies with it."""
    result = request.app.state.reset_service.reset_password(
        client_identity(request), body.verification_code, body.new_password
    )
    return envelope_response(result)


@router.get("/auth/validate-code/{code}", response_model=Envelope)
def validate_code(request: Request, code: str) -> JSONResponse:
    result = request.app.state.reset_service.validate_reset_token(code)
    return envelope_response(result)


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=Envelope)
def me(user: Account = Depends(get_current_user)) -> JSONResponse:
    return envelope_response(
        AuthResult(
            success=True,
            message="USER_RETRIEVED",
            data={"id": user.id, "username": user.username, "email": user.email, "isVerified": user.is_verified},
        )
    )


@router.post("/auth/verify-email/send", response_model=Envelope)
def send_verification(request: Request, user: Account = Depends(get_current_user)) -> JSONResponse:
    return envelope_response(request.app.state.verification_service.send_verification(user.id))


@router.post("/auth/verify-email", response_model=Envelope)
def verify_email(request: Request, body: VerifyEmailRequest, user: Account = Depends(get_current_user)) -> JSONResponse:
    return envelope_response(request.app.state.verification_service.verify_code(user.id, body.code))


@router.get("/auth/verify-email/status", response_model=Envelope)
def verification_status(request: Request, user: Account = Depends(get_current_user)) -> JSONResponse:
    return envelope_response(request.app.state.verification_service.get_status(user.id))
