"""
client/session_guard.py -- Bearer-token request wrapper with single-flight refresh.

ClientSessionGuard wraps an httpx.AsyncClient. Every request carries the
current access token. On a 401:

  1. The failing request was the refresh call itself -> terminal. Local
     tokens are cleared, on_session_expired fires, SessionExpiredError raised.
  2. The request was already replayed once -> httpx.HTTPStatusError is raised
     for the second 401. No further retry.
  3. Another caller refreshed while this request was in flight (the stored
     token differs from the one sent) -> replay with the stored token.
  4. Otherwise -> join the single refresh flight. Exactly one POST to the
     refresh endpoint is made however many requests are waiting on it; all of
     them replay with the token it returned.

If the refresh fails (non-200, network error, no refresh token held) every
waiting request gets the same SessionExpiredError, tokens are cleared, and
on_session_expired fires once.

State (GuardState, tokens, the flight) is per guard instance. Two guards, or
two processes, refresh independently; the server's version check turns the
loser of such a race into an explicit 409.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

import httpx

from client.singleflight import SingleFlight

logger = logging.getLogger("sessionkeep.client")

DEFAULT_REFRESH_PATH = "/api/v1/auth/refresh"
DEFAULT_LOGIN_PATH = "/api/v1/auth/login"
DEFAULT_EXTERNAL_LOGIN_PATH = "/api/v1/auth/external-login"
DEFAULT_LOGOUT_PATH = "/api/v1/auth/logout"


class GuardState(str, Enum):
    IDLE = "idle"
    REFRESHING = "refreshing"


class SessionExpiredError(Exception):
    """The session cannot be renewed; the user has to sign in again."""

    def __init__(self, message: str = "Your session has expired. Please sign in again.", status_code: int | None = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


@dataclass
class TokenStorage:
    """In-memory token holder. Swap for a persistent one by duck typing."""

    access_token: str | None = None
    refresh_token: str | None = None

    def set(self, access_token: str, refresh_token: str) -> None:
        self.access_token = access_token
        self.refresh_token = refresh_token

    def clear(self) -> None:
        self.access_token = None
        self.refresh_token = None


class ClientSessionGuard:
    """Async API client that keeps a session alive across access-token expiry.

    Args:
        base_url:           Server root, e.g. "http://localhost:8000".
        storage:            Token holder. Defaults to a fresh TokenStorage.
        transport:          httpx transport override (tests pass MockTransport).
        refresh_path:       Path of the refresh endpoint.
        on_session_expired: Called with the SessionExpiredError when refresh
                            fails; the place to show a "please sign in" notice.
        timeout:            Per-request timeout in seconds.
    """

    def __init__(
        self,
        base_url: str,
        *,
        storage: TokenStorage | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        refresh_path: str = DEFAULT_REFRESH_PATH,
        on_session_expired: Callable[[SessionExpiredError], None] | None = None,
        timeout: float = 10.0,
    ) -> None:
        self.storage = storage or TokenStorage()
        self.refresh_path = refresh_path
        self.on_session_expired = on_session_expired
        self._client = httpx.AsyncClient(base_url=base_url, transport=transport, timeout=timeout)
        self._refresh_flight: SingleFlight[str] = SingleFlight()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> ClientSessionGuard:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    @property
    def state(self) -> GuardState:
        return GuardState.REFRESHING if self._refresh_flight.in_flight else GuardState.IDLE

    def set_tokens(self, access_token: str, refresh_token: str) -> None:
        self.storage.set(access_token, refresh_token)

    # ------------------------------------------------------------------
    # Session endpoints
    # ------------------------------------------------------------------

    async def login(self, email: str, password: str) -> dict[str, Any]:
        """Password sign-in. Stores the returned pair; raises httpx.HTTPStatusError on failure."""
        return await self._sign_in(DEFAULT_LOGIN_PATH, {"email": email, "password": password})

    async def external_login(self, provider: str, id_token: str) -> dict[str, Any]:
        return await self._sign_in(DEFAULT_EXTERNAL_LOGIN_PATH, {"provider": provider, "idToken": id_token})

    async def logout(self) -> None:
        """Revoke the refresh token server-side, then forget both tokens locally.

        The logout call goes through request(), so an expired access token is
        renewed first and the revocation still reaches the server. If renewal
        fails there is no live refresh token left to revoke.
        """
        try:
            if self.storage.access_token:
                response = await self.request("POST", DEFAULT_LOGOUT_PATH)
                if response.status_code != 200:
                    logger.warning("Logout returned %s; clearing local tokens anyway", response.status_code)
        except SessionExpiredError:
            logger.info("Session already expired at logout; nothing to revoke server-side")
        finally:
            self.storage.clear()

    # ------------------------------------------------------------------
    # Guarded requests
    # ------------------------------------------------------------------

    async def get(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("POST", url, **kwargs)

    async def request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Send a request with the current bearer token, renewing it once on 401.

        Non-401 responses are returned untouched. A 401 on the replay raises
        httpx.HTTPStatusError; the request is never retried a second time.
        """
        sent_token = self.storage.access_token
        response = await self._send(method, url, sent_token, **kwargs)
        if response.status_code != 401:
            return response

        if self._is_refresh_call(url):
            raise self._expire(response.status_code)

        current = self.storage.access_token
        if current and current != sent_token:
            token = current
        else:
            token = await self._refresh_flight.do(self._refresh_tokens)

        logger.debug("Replaying %s %s with renewed access token", method, url)
        response = await self._send(method, url, token, **kwargs)
        if response.status_code == 401:
            logger.warning("Replayed %s %s rejected with 401", method, url)
            response.raise_for_status()
        return response

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _send(self, method: str, url: str, token: str | None, **kwargs: Any) -> httpx.Response:
        headers = dict(kwargs.pop("headers", None) or {})
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return await self._client.request(method, url, headers=headers, **kwargs)

    async def _sign_in(self, path: str, body: dict[str, str]) -> dict[str, Any]:
        response = await self._client.post(path, json=body)
        response.raise_for_status()
        data = response.json()
        self.storage.set(data["accessToken"], data["refreshToken"])
        return data

    async def _refresh_tokens(self) -> str:
        """Run one refresh call. Only ever invoked as the leader of a flight."""
        refresh_token = self.storage.refresh_token
        if not refresh_token:
            raise self._expire(None)

        logger.info("Access token rejected; refreshing session")
        try:
            response = await self._client.post(self.refresh_path, json={"refreshToken": refresh_token})
        except httpx.HTTPError as exc:
            logger.warning("Refresh request failed: %s", exc)
            raise self._expire(None) from exc

        if response.status_code != 200:
            raise self._expire(response.status_code)

        data = response.json()
        self.storage.set(data["accessToken"], data["refreshToken"])
        return data["accessToken"]

    def _is_refresh_call(self, url: str) -> bool:
        return httpx.URL(url).path == self.refresh_path

    def _expire(self, status_code: int | None) -> SessionExpiredError:
        """Clear local tokens, notify, and return the error for the caller to raise."""
        self.storage.clear()
        error = SessionExpiredError(status_code=status_code)
        logger.info("Session expired (refresh status %s); tokens cleared", status_code)
        if self.on_session_expired is not None:
            self.on_session_expired(error)
        return error
