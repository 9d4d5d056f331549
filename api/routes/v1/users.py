"""
api/routes/v1/users.py -- Profile and password management for the logged-in user.

Routes:
  GET /api/v1/users/profile   -- account fields plus profile details
  PUT /api/v1/users/profile   -- partial update; creates the detail row on first use
  PUT /api/v1/users/password  -- change password; optional logout clears the cookie

All routes require auth. The account id always comes from the token, never
from the request body, so one user cannot touch another's profile.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.models import Envelope, ProfileUpdateRequest, UpdatePasswordRequest
from api.responses import envelope_response
from auth.dependencies import get_current_user
from auth.models import Account

router = APIRouter()


@router.get("/users/profile", response_model=Envelope)
def get_profile(request: Request, user: Account = Depends(get_current_user)) -> JSONResponse:
    return envelope_response(request.app.state.account_service.get_profile(user.id))


@router.put("/users/profile", response_model=Envelope)
def update_profile(
    request: Request, body: ProfileUpdateRequest, user: Account = Depends(get_current_user)
) -> JSONResponse:
    return envelope_response(request.app.state.account_service.update_profile(user.id, body.changes()))


@router.put("/users/password", response_model=Envelope)
def update_password(
    request: Request, body: UpdatePasswordRequest, user: Account = Depends(get_current_user)
) -> JSONResponse:
    result = request.app.state.account_service.update_password(
        user.id, body.current_password, body.new_password, logout=body.logout
    )
    return envelope_response(result)
