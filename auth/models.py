"""
auth/models.py -- Domain dataclasses for accounts, codes and flow outcomes.

Pattern: Data class (pure data container, zero logic). Stores own the SQL;
the flow services own the decisions.

Layer rule: no imports from api/ or notify/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


@dataclass
class Account:
    """A registered user.

    username and email are both globally unique. hashed_password is a bcrypt
    digest and never leaves the service layer.
    """

    username: str
    email: str
    hashed_password: str
    id: int | None = None
    is_verified: bool = False
    created_at: str | None = None
    updated_at: str | None = None


@dataclass
class AccountProfile:
    """Optional 1:1 detail row, created on the first profile update."""

    user_id: int
    first_name: str | None = None
    last_name: str | None = None
    gender: str | None = None
    date_of_birth: str | None = None  # ISO date, YYYY-MM-DD
    phone_number: str | None = None
    profile_picture: str | None = None
    id: int | None = None


PROFILE_FIELDS = (
    "first_name",
    "last_name",
    "gender",
    "date_of_birth",
    "phone_number",
    "profile_picture",
)


@dataclass
class PasswordResetToken:
    user_id: int
    email: str
    code: str  # 6 digits, unique across the table
    expires_at: datetime
    used: bool = False
    id: int | None = None
    created_at: str | None = None


@dataclass
class EmailVerification:
    user_id: int
    code: str
    expires_at: datetime
    attempts: int = 0
    verified: bool = False
    id: int | None = None
    created_at: str | None = None


@dataclass
class AuthResult:
    """Outcome of a flow operation, serialized into the response envelope.

    Business failures are AuthResult values with success=False and the HTTP
    status the route should answer with. They are never raised.
    """

    success: bool
    message: str
    data: dict[str, Any] | None = None
    status_code: int = 200
    # Cookie side effects for the route: a token to set, or a request to clear.
    set_token: str | None = field(default=None, repr=False)
    clear_token: bool = False

    def envelope(self) -> dict[str, Any]:
        return {"success": self.success, "message": self.message, "data": self.data}
