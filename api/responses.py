"""
api/responses.py -- Turn AuthResult values into HTTP responses.

Every route answers with the same {success, message, data} envelope; this is
the one place that applies the carried status code and cookie side effects.
"""

from __future__ import annotations

from fastapi.responses import JSONResponse

from api.models import Envelope
from auth.models import AuthResult
from auth.tokens import clear_auth_cookie, set_auth_cookie


def envelope_response(result: AuthResult, no_store: bool = False) -> JSONResponse:
    resp = JSONResponse(
        status_code=result.status_code,
        content=Envelope(success=result.success, message=result.message, data=result.data).model_dump(
            exclude_none=False, exclude={"errors"}
        ),
    )
    if result.set_token:
        set_auth_cookie(resp, result.set_token)
    if result.clear_token:
        clear_auth_cookie(resp)
    if no_store:
        resp.headers["Cache-Control"] = "no-store"
    return resp


def error_response(status_code: int, message: str, errors: list[str] | None = None) -> JSONResponse:
    body = Envelope(success=False, message=message, data=None, errors=errors).model_dump()
    if errors is None:
        body.pop("errors")
    return JSONResponse(status_code=status_code, content=body)
