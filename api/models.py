"""
API request and response models for SessionKeep REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Wire format is camelCase (accessToken, refreshToken, idToken, newPassword).
Python attribute names stay snake_case; populate_by_name lets tests and
internal callers use either form.
"""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from auth.models import Account, TokenPair

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# Deliberately loose: the mailbox is proven by the verification link, not by
# the regex. This only rejects values that cannot be an address at all.
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"

# bcrypt only reads the first 72 bytes of a password and current releases
# refuse longer input outright.
PASSWORD_MAX_BYTES = 72


class _ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class _EmailModel(_ApiModel):
    @field_validator("email", mode="before", check_fields=False)
    @classmethod
    def normalize_email(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().lower()
        return value


def _check_password_bytes(value: str) -> str:
    if len(value.encode("utf-8")) > PASSWORD_MAX_BYTES:
        raise ValueError(f"Password must be at most {PASSWORD_MAX_BYTES} bytes when UTF-8 encoded")
    return value


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(_EmailModel):
    """Request body for POST /api/v1/auth/register."""

    email: str = Field(max_length=255, pattern=EMAIL_PATTERN)
    password: str = Field(min_length=8, max_length=128)
    full_name: str = Field(default="", max_length=100)
    phone_number: str = Field(default="", max_length=20)

    @field_validator("password")
    @classmethod
    def password_fits_bcrypt(cls, value: str) -> str:
        return _check_password_bytes(value)


class LoginRequest(_EmailModel):
    """Request body for POST /api/v1/auth/login."""

    email: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=128)


class ExternalLoginRequest(_ApiModel):
    """Request body for POST /api/v1/auth/external-login."""

    provider: str = Field(min_length=1, max_length=30)
    id_token: str = Field(min_length=1, max_length=8192)


class RefreshRequest(_ApiModel):
    """Request body for POST /api/v1/auth/refresh."""

    refresh_token: str = Field(min_length=1, max_length=512)


class EmailRequest(_EmailModel):
    """Request body for POST /forgot-password and POST /resend-verification."""

    email: str = Field(min_length=1, max_length=255)


class ResetPasswordRequest(_ApiModel):
    """Request body for POST /api/v1/auth/reset-password."""

    token: str = Field(min_length=1, max_length=512)
    new_password: str = Field(min_length=8, max_length=128)

    @field_validator("new_password")
    @classmethod
    def password_fits_bcrypt(cls, value: str) -> str:
        return _check_password_bytes(value)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class TokenPairResponse(_ApiModel):
    """Access + refresh pair returned by login, external login and refresh."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int

    @classmethod
    def from_pair(cls, pair: TokenPair) -> "TokenPairResponse":
        return cls(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            expires_in=pair.expires_in,
        )


class MessageResponse(_ApiModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    message: str


class MeResponse(_ApiModel):
    """Response for GET /api/v1/auth/me.

    role is the stored role; token_role is the snapshot embedded in the access
    token presented with this request. They differ after a role change until
    the token expires.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: int
    email: str
    role: str
    token_role: str
    full_name: str
    phone_number: str
    avatar_url: Optional[str] = None
    is_email_verified: bool
    has_password: bool
    providers: list[str] = Field(default_factory=list)

    @classmethod
    def from_account(cls, account: Account, token_role: str, providers: list[str] | None = None) -> "MeResponse":
        return cls(
            id=account.id,
            email=account.email,
            role=account.role,
            token_role=token_role,
            full_name=account.full_name,
            phone_number=account.phone_number,
            avatar_url=account.avatar_url,
            is_email_verified=account.is_email_verified,
            has_password=account.password_hash is not None,
            providers=providers or [],
        )


class ErrorDetail(_ApiModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    code: str
    message: str
    detail: Optional[str] = None
    trace_id: Optional[str] = None


class ErrorResponse(_ApiModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    error: ErrorDetail


class HealthResponse(_ApiModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    status: str = "ok"
    version: str
