"""
auth/errors.py -- Domain error taxonomy for the authentication flows.

Each class carries a stable machine-readable code, the HTTP status the API
layer maps it to, and a user-safe default message. api/main.py turns any
AuthError into the standard {"error": {...}} envelope; nothing here knows
about FastAPI.

Messages are deliberately generic. InvalidCredentialsError is raised for an
unknown email, a missing password hash and a wrong password alike, so the
response never reveals which one it was.

Layer rule: no imports from api/ or client/.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for validation-shaped authentication failures."""

    code: str = "auth_error"
    status_code: int = 400
    message: str = "Authentication request failed."

    def __init__(self, message: str | None = None) -> None:
        if message is not None:
            self.message = message
        super().__init__(self.message)


class InvalidCredentialsError(AuthError):
    code = "invalid_credentials"
    status_code = 401
    message = "Invalid email or password."


class EmailInUseError(AuthError):
    code = "email_in_use"
    status_code = 400
    message = "That email address is already registered."


class InvalidRefreshTokenError(AuthError):
    """No account holds the presented refresh token (includes rotated tokens)."""

    code = "invalid_refresh_token"
    status_code = 400
    message = "Invalid refresh token."


class ExpiredRefreshTokenError(AuthError):
    code = "expired_refresh_token"
    status_code = 400
    message = "Refresh token has expired."


class InvalidExternalTokenError(AuthError):
    code = "invalid_external_token"
    status_code = 401
    message = "External identity token is invalid."


class UnsupportedProviderError(AuthError):
    code = "unsupported_provider"
    status_code = 401
    message = "Identity provider is not supported."


class InvalidResetTokenError(AuthError):
    code = "invalid_reset_token"
    status_code = 400
    message = "Invalid password reset token."


class ExpiredResetTokenError(AuthError):
    code = "expired_reset_token"
    status_code = 400
    message = "Password reset token has expired."


class InvalidVerificationTokenError(AuthError):
    code = "invalid_verification_token"
    status_code = 400
    message = "Invalid email verification token."


class SessionConflictError(AuthError):
    """A concurrent request changed the account's session fields first.

    Raised by the store when the version compare-and-swap fails. The losing
    refresh gets this explicit 409 instead of a token that silently fails on
    its next use.
    """

    code = "session_conflict"
    status_code = 409
    message = "The session was updated by another request. Sign in again."
