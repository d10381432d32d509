"""
auth/tokens.py -- Token issuance, token digests, and password hashing.

Security design decisions:
  Access tokens: python-jose with HS256. Signed with SECRET_KEY and carrying
       sub (account id), email, role, iat, nbf, iss and a short exp. The role
       claim is a snapshot taken at mint time -- a role change does not reach
       already-issued tokens before they expire, which is why the lifetime is
       measured in minutes. Verification returns None on any failure; the
       route layer turns that into a 401.

  Refresh / one-time tokens: secrets.token_urlsafe() output, unrelated to any
       account data, so an intercepted token leaks nothing about its owner.
       Only HMAC-SHA256(SECRET_KEY, raw) is persisted. The digest is
       deterministic, so lookup stays an exact O(1) match, and a database
       leak alone does not yield usable tokens.

  Passwords: bcrypt used directly. The _DUMMY_HASH constant enables timing
       equalization in authenticate_account() so response time does not reveal
       whether an email is registered [C1].

Everything here is a pure generation or verification function. No I/O except
the store lookup inside authenticate_account().

Layer rule: no imports from api/ or client/. Import from core/ is allowed.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import bcrypt
from jose import JWTError, jwt

from core.config import get_settings

if TYPE_CHECKING:
    from auth.models import Account
    from auth.store import AccountStore

logger = logging.getLogger("sessionkeep.auth")

# ---------------------------------------------------------------------------
# Config -- read once at module load via the lru_cache singleton [M6]
# ---------------------------------------------------------------------------

_settings = get_settings()

_ALGORITHM = "HS256"

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt refuses input past 72 bytes with ValueError. The request models in
    api/models.py reject such passwords with a 422 before they get here.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed stored hash
        return False


# Timing equalization dummy hash [C1].
_DUMMY_HASH: str = hash_password("sessionkeep_timing_dummy")


# ---------------------------------------------------------------------------
# Access tokens (JWT)
# ---------------------------------------------------------------------------


def access_token_lifetime() -> timedelta:
    return timedelta(minutes=_settings.access_token_expire_minutes)


def create_access_token(account: Account, now: datetime | None = None) -> str:
    """Encode a signed JWT carrying the account's identity and role.

    Args:
        account: The persisted Account (id must be set).
        now:     Issue time. Defaults to the current UTC time; the gateway
                 passes its own clock so every timestamp in a flow agrees.
    """
    issued_at = now or datetime.now(timezone.utc)
    payload = {
        "sub": str(account.id),
        "email": account.email,
        "role": account.role,
        "iat": issued_at,
        "nbf": issued_at,
        "iss": _settings.jwt_issuer,
        "exp": issued_at + access_token_lifetime(),
    }
    return jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM)


def decode_access_token(token: str) -> dict | None:
    """Decode and verify a JWT. Returns the payload dict or None on any failure.

    Signature, exp, nbf and iss are all checked. Returning None (rather than
    raising) keeps the caller simple: any invalid token is unauthenticated.
    """
    try:
        payload = jwt.decode(
            token,
            _settings.secret_key,
            algorithms=[_ALGORITHM],
            issuer=_settings.jwt_issuer,
        )
    except JWTError:
        return None
    if "sub" not in payload or "role" not in payload:
        return None
    return payload


# ---------------------------------------------------------------------------
# Opaque tokens
# ---------------------------------------------------------------------------


def generate_refresh_token() -> str:
    """Return a new opaque refresh token (64 random bytes, url-safe base64)."""
    return secrets.token_urlsafe(64)


def generate_one_time_token() -> str:
    """Return a new email-verification or password-reset token (256 bits)."""
    return secrets.token_urlsafe(32)


def hash_token(raw_token: str) -> str:
    """Return HMAC-SHA256(SECRET_KEY, raw_token) as a hex string.

    Used for every stored opaque token. Deterministic, so the store can look
    tokens up by digest with an exact equality match.
    """
    return hmac.new(
        _settings.secret_key.encode(),
        raw_token.encode(),
        hashlib.sha256,
    ).hexdigest()


# ---------------------------------------------------------------------------
# Account authentication (constant-time) [C1]
# ---------------------------------------------------------------------------


def authenticate_account(store: AccountStore, email: str, password: str) -> Account | None:
    """Authenticate an email/password login with timing equalization.

    Always runs bcrypt whether or not the account exists:
    - Unknown email or external-only account: bcrypt runs against _DUMMY_HASH
    - Wrong password: bcrypt runs against the real hash

    Returns the Account on success, None on any failure.
    """
    account = store.get_by_email(email)
    if account is None or account.password_hash is None:
        # Equalize timing -- do NOT return early before running bcrypt [C1]
        verify_password(password, _DUMMY_HASH)
        return None
    if not verify_password(password, account.password_hash):
        return None
    return account
