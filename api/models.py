"""
API request and response models for AuthGate REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Wire format is camelCase (confirmPassword, newPassword, firstName...). Python
attributes stay snake_case; populate_by_name lets tests use either.

Validation failures raise ValueError with an UPPER_SNAKE code as the message
(PASSWORD_INVALID_FORMAT, PASSWORDS_MISMATCH...). The 422 handler in
api/main.py forwards those codes in the envelope's errors list.
"""

from __future__ import annotations

import re
from datetime import date, timedelta
from enum import Enum
from typing import Any, Optional
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

PASSWORD_PATTERN = re.compile(r"^(?=.*[a-z])(?=.*[A-Z])(?=.*\d)(?=.*[@$!%*?&])[A-Za-z\d@$!%*?&]{8,}$")
USERNAME_PATTERN = re.compile(r"^[A-Za-z0-9]{3,30}$")
EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
CODE_PATTERN = r"^\d{6}$"

# bcrypt reads at most 72 bytes; cap well below any surprise.
_MAX_PASSWORD = 64


def _check_email(value: str) -> str:
    value = value.strip().lower()
    if not EMAIL_PATTERN.match(value):
        raise ValueError("INVALID_EMAIL")
    return value


def _check_password_policy(value: str) -> str:
    if len(value) < 8:
        raise ValueError("PASSWORD_TOO_SHORT")
    if not PASSWORD_PATTERN.match(value):
        raise ValueError("PASSWORD_INVALID_FORMAT")
    return value


class _Request(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class GenderEnum(str, Enum):
    male = "male"
    female = "female"
    other = "other"


# ---------------------------------------------------------------------------
# Auth request models
# ---------------------------------------------------------------------------


class RegisterRequest(_Request):
    """Request body for POST /api/v1/auth/register."""

    username: str = Field(max_length=30)
    email: str = Field(max_length=255)
    password: str = Field(max_length=_MAX_PASSWORD)
    confirm_password: str = Field(alias="confirmPassword", max_length=_MAX_PASSWORD)

    @field_validator("username")
    @classmethod
    def validate_username(cls, value: str) -> str:
        if len(value) < 3:
            raise ValueError("USERNAME_TOO_SHORT")
        if not USERNAME_PATTERN.match(value):
            raise ValueError("USERNAME_INVALID_CHARS")
        return value

    @field_validator("email")
    @classmethod
    def validate_email(cls, value: str) -> str:
        return _check_email(value)

    @field_validator("password")
    @classmethod
    def validate_password(cls, value: str) -> str:
        return _check_password_policy(value)

    @model_validator(mode="after")
    def passwords_match(self) -> "RegisterRequest":
        if self.password != self.confirm_password:
            raise ValueError("PASSWORDS_MISMATCH")
        return self


class LoginRequest(_Request):
    """Request body for POST /api/v1/auth/login.

    No password policy here: an old password that predates the policy must
    still be able to fail (and be counted) like any other.
    """

    email: str = Field(max_length=255)
    password: str = Field(min_length=1, max_length=_MAX_PASSWORD)

    @field_validator("email")
    @classmethod
    def validate_email(cls, value: str) -> str:
        return _check_email(value)


class ForgotPasswordRequest(_Request):
    email: str = Field(max_length=255)

    @field_validator("email")
    @classmethod
    def validate_email(cls, value: str) -> str:
        return _check_email(value)


class ResetPasswordRequest(_Request):
    verification_code: str = Field(alias="verificationCode", pattern=CODE_PATTERN)
    new_password: str = Field(alias="newPassword", max_length=_MAX_PASSWORD)
    confirm_password: str = Field(alias="confirmPassword", max_length=_MAX_PASSWORD)

    @field_validator("new_password")
    @classmethod
    def validate_password(cls, value: str) -> str:
        return _check_password_policy(value)

    @model_validator(mode="after")
    def passwords_match(self) -> "ResetPasswordRequest":
        if self.new_password != self.confirm_password:
            raise ValueError("PASSWORDS_MISMATCH")
        return self


class VerifyEmailRequest(_Request):
    code: str = Field(pattern=CODE_PATTERN)


# ---------------------------------------------------------------------------
# User request models
# ---------------------------------------------------------------------------


class UpdatePasswordRequest(_Request):
    current_password: str = Field(alias="currentPassword", min_length=1, max_length=_MAX_PASSWORD)
    new_password: str = Field(alias="newPassword", max_length=_MAX_PASSWORD)
    confirm_password: str = Field(alias="confirmPassword", max_length=_MAX_PASSWORD)
    logout: bool = False

    @field_validator("new_password")
    @classmethod
    def validate_password(cls, value: str) -> str:
        return _check_password_policy(value)

    @model_validator(mode="after")
    def check_new_password(self) -> "UpdatePasswordRequest":
        if self.new_password == self.current_password:
            raise ValueError("PASSWORD_SAME_AS_CURRENT")
        if self.new_password != self.confirm_password:
            raise ValueError("PASSWORDS_MISMATCH")
        return self


class ProfileUpdateRequest(_Request):
    """Request body for PUT /api/v1/users/profile. At least one field is required."""

    first_name: Optional[str] = Field(default=None, alias="firstName", min_length=2, max_length=50)
    last_name: Optional[str] = Field(default=None, alias="lastName", min_length=2, max_length=50)
    gender: Optional[GenderEnum] = None
    date_of_birth: Optional[date] = Field(default=None, alias="dateOfBirth")
    phone_number: Optional[str] = Field(default=None, alias="phoneNumber", max_length=32)
    profile_picture: Optional[str] = Field(default=None, alias="profilePicture", max_length=2048)

    @field_validator("date_of_birth")
    @classmethod
    def validate_age(cls, value: Optional[date]) -> Optional[date]:
        if value is None:
            return value
        today = date.today()
        if value > today - timedelta(days=int(10 * 365.25)):
            raise ValueError("USER_TOO_YOUNG")
        if value < today - timedelta(days=int(85 * 365.25)):
            raise ValueError("USER_TOO_OLD")
        return value

    @field_validator("profile_picture")
    @classmethod
    def validate_picture_url(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        parsed = urlparse(value)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError("INVALID_PROFILE_PICTURE_URL")
        return value

    @model_validator(mode="after")
    def at_least_one_field(self) -> "ProfileUpdateRequest":
        if not self.model_fields_set:
            raise ValueError("AT_LEAST_ONE_FIELD_REQUIRED")
        return self

    def changes(self) -> dict[str, Any]:
        """Snake_case store fields for the keys the client actually sent."""
        out: dict[str, Any] = {}
        for name in self.model_fields_set:
            value = getattr(self, name)
            if isinstance(value, GenderEnum):
                value = value.value
            elif isinstance(value, date):
                value = value.isoformat()
            out[name] = value
        return out


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class Envelope(BaseModel):
    """Uniform response body for every endpoint except /health."""

    success: bool
    message: str
    data: Optional[Any] = None
    errors: Optional[list[str]] = None


class HealthResponse(BaseModel):
    """Response body for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str
    version: str
    components: dict[str, str]
