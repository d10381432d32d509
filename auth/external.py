"""
auth/external.py -- Third-party identity assertion validation.

The browser signs in with the provider and hands us an ID token; we validate it
server-side and normalize the claims into ExternalUserInfo. The gateway then
links or creates the local account -- nothing in this module touches storage.

Providers are registered in a name-keyed map of validators, so adding one is a
new validator class plus a register() call. AuthGateway orchestration does not
change.

Security notes:
  [H1] Email verification is mandatory. A Google ID token whose email_verified
       claim is false (or missing) is rejected. An unverified address could be
       a victim's email attached to an attacker's provider account, and the
       gateway would link it to the victim's local account by email.

  Audience is always checked against GOOGLE_CLIENT_ID. A token minted for a
  different client application is rejected even if its signature is valid.

  Validator failure details are logged, never returned to the caller.

Supported providers:
  google -- ID token (JWT) verified with google-auth against Google's certs.

Layer rule: no imports from api/ or client/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
from typing import Protocol

import requests
from google.auth.exceptions import GoogleAuthError
from google.auth.transport import requests as google_requests
from google.oauth2 import id_token

from auth.errors import InvalidExternalTokenError, UnsupportedProviderError
from auth.models import ExternalUserInfo
from core.config import Settings

logger = logging.getLogger("sessionkeep.auth.external")


class ExternalTokenValidator(Protocol):
    """Validates one provider's identity assertion."""

    def validate(self, token: str) -> ExternalUserInfo:
        """Return the normalized identity or raise InvalidExternalTokenError."""
        ...


class GoogleTokenValidator:
    """Validate Google Sign-In ID tokens.

    Google publishes its signing certificates; google-auth fetches and caches
    them through the transport's requests.Session. The session is shared across
    calls for connection pooling, with a low redirect ceiling since the cert
    endpoint is a known URL.
    """

    def __init__(self, client_id: str, clock_skew_seconds: int = 60) -> None:
        self.client_id = client_id
        self.clock_skew_seconds = clock_skew_seconds
        session = requests.Session()
        session.max_redirects = 3
        self._transport = google_requests.Request(session=session)

    def validate(self, token: str) -> ExternalUserInfo:
        try:
            claims = id_token.verify_oauth2_token(
                token,
                self._transport,
                self.client_id,
                clock_skew_in_seconds=self.clock_skew_seconds,
            )
        except (ValueError, GoogleAuthError) as exc:
            logger.warning("Google ID token rejected: %s", exc)
            raise InvalidExternalTokenError() from exc

        # [H1] Only verified emails may be linked to local accounts
        if not claims.get("email_verified", False):
            logger.warning("Google ID token rejected: email not verified")
            raise InvalidExternalTokenError()

        subject = claims.get("sub")
        email = claims.get("email")
        if not subject or not email:
            logger.warning("Google ID token rejected: missing sub or email claim")
            raise InvalidExternalTokenError()

        return ExternalUserInfo(
            subject=str(subject),
            email=str(email).lower(),
            name=str(claims.get("name", "")),
            picture_url=claims.get("picture"),
        )


class ExternalIdentityResolver:
    """Provider-keyed registry of identity assertion validators.

    Provider names are matched case-insensitively ("Google" == "google") and
    stored lower-case, which is also the form persisted on ExternalIdentity.
    """

    def __init__(self) -> None:
        self._validators: dict[str, ExternalTokenValidator] = {}

    def register(self, provider: str, validator: ExternalTokenValidator) -> None:
        self._validators[provider.lower()] = validator
        logger.info("External identity provider registered: %s", provider.lower())

    @property
    def providers(self) -> list[str]:
        return sorted(self._validators)

    def supports(self, provider: str) -> bool:
        return provider.lower() in self._validators

    def resolve(self, provider: str, token: str) -> ExternalUserInfo:
        """Validate the assertion with the provider's validator.

        Raises:
            UnsupportedProviderError: provider is not registered.
            InvalidExternalTokenError: the validator rejected the token.
        """
        validator = self._validators.get(provider.lower())
        if validator is None:
            raise UnsupportedProviderError()
        return validator.validate(token)


def build_resolver(settings: Settings) -> ExternalIdentityResolver:
    """Register every provider that has its configuration present."""
    resolver = ExternalIdentityResolver()
    if settings.google_client_id:
        resolver.register(
            "google",
            GoogleTokenValidator(settings.google_client_id, settings.google_clock_skew_seconds),
        )
    return resolver
