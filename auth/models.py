"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores and the gateway
do the work; these only own the domain shape.

Layer rule: no imports from api/ or client/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class Role(str, Enum):
    USER = "User"
    ADMIN = "Admin"


@dataclass
class Account:
    """A local account -- the single source of truth for session state.

    password_hash is None for external-only accounts (Google sign-in without
    a local password). Such an account is still authenticable through its
    linked ExternalIdentity rows.

    The three *_token fields hold HMAC digests, never the raw values handed
    to the client. Lookups digest the presented value and compare exactly.

    version is the optimistic-concurrency stamp. Every write to a session
    field is conditioned on it and bumps it; the store advances this attribute
    in place after a successful write.
    """

    email: str
    role: str = Role.USER.value
    id: int | None = None
    password_hash: str | None = None  # None = external-only account
    full_name: str = ""
    phone_number: str = ""
    avatar_url: str | None = None
    created_at: str | None = None
    refresh_token: str | None = None  # digest
    refresh_token_expires_at: datetime | None = None
    email_verification_token: str | None = None  # digest
    is_email_verified: bool = False
    password_reset_token: str | None = None  # digest
    password_reset_token_expires_at: datetime | None = None
    version: int = 0


@dataclass
class ExternalIdentity:
    """A (provider, subject) pair proving identity via a third party.

    Unique on (provider, provider_subject_id). Linked to exactly one Account.
    """

    provider: str  # "google"
    provider_subject_id: str  # provider's stable user ID ("sub" claim)
    account_id: int | None = None
    id: int | None = None
    created_at: str | None = None


@dataclass(frozen=True)
class ExternalUserInfo:
    """Normalized result of a validated third-party identity assertion."""

    subject: str
    email: str
    name: str = ""
    picture_url: str | None = None


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int  # access token lifetime in seconds
