"""
api/routes/v1/auth.py -- Session lifecycle REST endpoints.

Routes:
  POST /api/v1/auth/register             -- create a password account; sends verification link
  POST /api/v1/auth/login                -- password login; returns access + refresh pair
  POST /api/v1/auth/external-login       -- sign in with a provider ID token
  POST /api/v1/auth/refresh              -- rotate the refresh token; returns a new pair
  POST /api/v1/auth/logout               -- drop the live refresh token (requires auth)
  GET  /api/v1/auth/me                   -- current account summary (requires auth)
  POST /api/v1/auth/forgot-password      -- send a reset link (generic response)
  POST /api/v1/auth/reset-password       -- consume a reset token, set a new password
  GET  /api/v1/auth/verify-email         -- consume a verification token
  POST /api/v1/auth/resend-verification  -- send a new verification link (generic response)

Handlers are thin: every flow lives in AuthGateway (app.state.gateway).
Domain failures propagate as AuthError subclasses and are rendered into the
error envelope by the handler in api/main.py.

Security:
  [H2] login, external-login, forgot-password and resend-verification are
       rate-limited per client address (LOGIN_RATE_LIMIT). The limits are
       registered by @limiter.limit and enforced by SlowAPIMiddleware.
  [C1] Login goes through authenticate_account() timing equalization inside
       the gateway -- never inline the lookup + verify here.
  [M5] Cache-Control: no-store on every response that carries a token.
  Anti-enumeration: forgot-password and resend-verification answer with the
  same body whether or not the email is registered.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse

from api.limiter import AUTH_RATE_LIMIT, limiter
from api.models import (
    EmailRequest,
    ExternalLoginRequest,
    LoginRequest,
    MeResponse,
    MessageResponse,
    RefreshRequest,
    RegisterRequest,
    ResetPasswordRequest,
    TokenPairResponse,
)
from auth.dependencies import get_current_account
from auth.gateway import AuthGateway
from auth.models import Account, TokenPair

# Auth policy:
# - POST /api/v1/auth/register:            public
# - POST /api/v1/auth/login:               public, rate-limited
# - POST /api/v1/auth/external-login:      public, rate-limited
# - POST /api/v1/auth/refresh:             public -- the refresh token is the credential
# - POST /api/v1/auth/logout:              requires auth (get_current_account)
# - GET  /api/v1/auth/me:                  requires auth (get_current_account)
# - POST /api/v1/auth/forgot-password:     public, rate-limited
# - POST /api/v1/auth/reset-password:      public -- the reset token is the credential
# - GET  /api/v1/auth/verify-email:        public -- the verification token is the credential
# - POST /api/v1/auth/resend-verification: public, rate-limited
router = APIRouter()


def _gateway(request: Request) -> AuthGateway:
    return request.app.state.gateway


def _token_response(pair: TokenPair) -> JSONResponse:
    resp = JSONResponse(
        status_code=200,
        content=TokenPairResponse.from_pair(pair).model_dump(by_alias=True),
    )
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


def _message(text: str) -> MessageResponse:
    return MessageResponse(message=text)


# ---------------------------------------------------------------------------
# Registration and verification
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=MessageResponse)
def register(request: Request, body: RegisterRequest) -> MessageResponse:
    """Create a password account with role User.

    The account starts unverified. The verification token goes to the
    notifier only; it is never part of the response.
    """
    message = _gateway(request).register(
        body.email,
        body.password,
        full_name=body.full_name,
        phone_number=body.phone_number,
    )
    return _message(message)


@router.get("/auth/verify-email", response_model=MessageResponse)
def verify_email(request: Request, token: str = Query(min_length=1, max_length=512)) -> MessageResponse:
    _gateway(request).verify_email(token)
    return _message("Email address verified.")


@limiter.limit(AUTH_RATE_LIMIT)  # [H2] above @router so FastAPI introspects the plain handler
@router.post("/auth/resend-verification", response_model=MessageResponse)
def resend_verification(request: Request, body: EmailRequest) -> MessageResponse:
    return _message(_gateway(request).resend_verification(body.email))


# ---------------------------------------------------------------------------
# Sign-in, refresh, sign-out
# ---------------------------------------------------------------------------


@limiter.limit(AUTH_RATE_LIMIT)  # [H2] above @router so FastAPI introspects the plain handler
@router.post("/auth/login", response_model=TokenPairResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password.

    Unknown email, password-less (external-only) account and wrong password
    all produce the same 401 invalid_credentials.
    """
    return _token_response(_gateway(request).login(body.email, body.password))


@limiter.limit(AUTH_RATE_LIMIT)  # [H2] above @router so FastAPI introspects the plain handler
@router.post("/auth/external-login", response_model=TokenPairResponse)
def external_login(request: Request, body: ExternalLoginRequest) -> JSONResponse:
    """Authenticate with a third-party ID token.

    A first sign-in links the identity to the account with the same email, or
    creates a verified, password-less account when there is none.
    """
    return _token_response(_gateway(request).external_login(body.provider, body.id_token))


@router.post("/auth/refresh", response_model=TokenPairResponse)
def refresh(request: Request, body: RefreshRequest) -> JSONResponse:
    """Exchange the live refresh token for a new pair.

    The presented token stops working the moment this succeeds. Of two
    concurrent refreshes with the same token, at most one gets 200.
    """
    return _token_response(_gateway(request).refresh(body.refresh_token))


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request, current: Account = Depends(get_current_account)) -> MessageResponse:
    """Revoke the refresh token. The presented access token lives until its expiry."""
    _gateway(request).logout(current.id)
    return _message("Logged out.")


@router.get("/auth/me", response_model=MeResponse)
def me(request: Request, current: Account = Depends(get_current_account)) -> MeResponse:
    """Return the stored account plus the role snapshot carried by the token."""
    claims = getattr(request.state, "token_claims", {})
    identities = _gateway(request).store.list_identities(current.id)
    return MeResponse.from_account(
        current,
        token_role=claims.get("role", current.role),
        providers=[i.provider for i in identities],
    )


# ---------------------------------------------------------------------------
# Password reset
# ---------------------------------------------------------------------------


@limiter.limit(AUTH_RATE_LIMIT)  # [H2] above @router so FastAPI introspects the plain handler
@router.post("/auth/forgot-password", response_model=MessageResponse)
def forgot_password(request: Request, body: EmailRequest) -> MessageResponse:
    return _message(_gateway(request).forgot_password(body.email))


@router.post("/auth/reset-password", response_model=MessageResponse)
def reset_password(request: Request, body: ResetPasswordRequest) -> MessageResponse:
    """Set a new password. Any live refresh token is revoked with it."""
    _gateway(request).reset_password(body.token, body.new_password)
    return _message("Password has been reset.")
