"""
auth/dependencies.py -- FastAPI Depends() helpers for bearer authentication.

Only one auth method exists: Authorization: Bearer <access token>. A 401 from
these helpers is the signal the client session guard reacts to by refreshing,
so every authentication failure -- missing header, bad signature, expired
token, deleted account -- must surface as 401, never 403 or 400.

try_get_current_account() is the soft variant (returns None on failure).
get_current_account() wraps it and raises HTTP 401 if unauthenticated.

Layer rule: no imports from client/.
  auth/dependencies.py may import from fastapi (for HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.models import Account
from auth.tokens import decode_access_token


def _bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not token:
        return None
    return token.strip()


def try_get_current_account(request: Request) -> Account | None:
    """Authenticate the request from its bearer token.

    Returns the Account on success, None on any failure. Never raises.

    The account row is re-read so a deleted account stops authenticating at
    once. The verified claims, including the role snapshot taken at mint
    time, are left on request.state.token_claims.
    """
    token = _bearer_token(request)
    if not token:
        return None
    payload = decode_access_token(token)
    if payload is None:
        return None
    try:
        account_id = int(payload["sub"])
    except (TypeError, ValueError):
        return None
    account = request.app.state.account_store.get_by_id(account_id)
    if account is None:
        return None
    request.state.token_claims = payload
    return account


def get_current_account(request: Request) -> Account:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(account: Account = Depends(get_current_account)): ...
    """
    account = try_get_current_account(request)
    if account is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
            headers={"WWW-Authenticate": "Bearer"},
        )
    return account
