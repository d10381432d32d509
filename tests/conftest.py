"""
tests/conftest.py -- Shared test fixtures for SessionKeep tests.

This module provides:
  - _make_test_store(): creates an isolated in-memory account DB
  - StubTokenValidator / RecordingNotifier: stand-ins for Google and SMTP
  - MutableClock: injectable clock for expiry tests
  - store / notifier / validator / clock / gateway: function-scoped unit fixtures
  - api_client: TestClient wired to a gateway with stub collaborators

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

The DEBUG env var must be set before any auth module import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app
from auth.errors import InvalidExternalTokenError
from auth.external import ExternalIdentityResolver
from auth.gateway import AuthGateway
from auth.models import ExternalUserInfo
from auth.store import AccountStore

ADMIN_EMAIL = "admin@sessionkeep.test"
ADMIN_PASSWORD = "adminpass123"


# ---------------------------------------------------------------------------
# Collaborator stand-ins
# ---------------------------------------------------------------------------


class StubTokenValidator:
    """Accepts only ID tokens registered with add(); everything else is invalid."""

    def __init__(self) -> None:
        self.identities: dict[str, ExternalUserInfo] = {}
        self.calls: list[str] = []

    def add(self, token: str, subject: str, email: str, name: str = "", picture_url: str | None = None) -> None:
        self.identities[token] = ExternalUserInfo(subject=subject, email=email, name=name, picture_url=picture_url)

    def validate(self, token: str) -> ExternalUserInfo:
        self.calls.append(token)
        info = self.identities.get(token)
        if info is None:
            raise InvalidExternalTokenError()
        return info


class RecordingNotifier:
    """Keeps every delivered token instead of mailing it."""

    def __init__(self) -> None:
        self.verifications: list[tuple[str, str]] = []
        self.resets: list[tuple[str, str]] = []
        self.deliver = True

    def send_verification(self, email: str, token: str) -> bool:
        self.verifications.append((email, token))
        return self.deliver

    def send_password_reset(self, email: str, token: str) -> bool:
        self.resets.append((email, token))
        return self.deliver

    def last_verification(self, email: str) -> str:
        return [t for e, t in self.verifications if e == email][-1]

    def last_reset(self, email: str) -> str:
        return [t for e, t in self.resets if e == email][-1]


class MutableClock:
    """Callable clock that only moves when a test says so."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def _make_test_store(db_suffix: str) -> AccountStore:
    """Create an isolated named shared-memory SQLite store.

    Args:
        db_suffix: Unique string appended to the DB name so tests and test
                   modules never share rows.
    """
    return AccountStore(db_url=f"sqlite:///file:test_auth_{db_suffix}?mode=memory&cache=shared&uri=true")


def _make_resolver(validator: StubTokenValidator) -> ExternalIdentityResolver:
    resolver = ExternalIdentityResolver()
    resolver.register("google", validator)
    return resolver


def _patch_lifespan(gateway: AuthGateway):
    """Return an async context manager that replaces the real lifespan.

    Wires the pre-built gateway and its collaborators into app.state so
    TestClient routes see the test DB and stub collaborators rather than
    SQLite on disk, Google and SMTP.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.account_store = gateway.store
        app.state.resolver = gateway.resolver
        app.state.notifier = gateway.notifier
        app.state.gateway = gateway
        yield

    return test_lifespan


# ---------------------------------------------------------------------------
# Function-scoped unit fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def store() -> Generator[AccountStore, None, None]:
    account_store = _make_test_store(uuid.uuid4().hex)
    yield account_store
    account_store.close()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def validator() -> StubTokenValidator:
    return StubTokenValidator()


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock()


@pytest.fixture
def gateway(store, notifier, validator, clock) -> AuthGateway:
    return AuthGateway(store, _make_resolver(validator), notifier, clock=clock)


# ---------------------------------------------------------------------------
# Module-scoped API fixture -- one TestClient per test module for speed
# ---------------------------------------------------------------------------


@pytest.fixture(scope="module")
def api_client() -> Generator[tuple[TestClient, RecordingNotifier, StubTokenValidator], None, None]:
    """Yield (client, notifier, validator) for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so
    tests hit real route handlers, middleware and exception handlers.
    An admin account (ADMIN_EMAIL / ADMIN_PASSWORD) is seeded up front.

    Rate limiting is switched off here; the test that exercises it turns it
    back on for itself. Tests share one DB per module, so each test uses its
    own email addresses.
    """
    account_store = _make_test_store(f"api_{uuid.uuid4().hex}")
    notifier = RecordingNotifier()
    validator = StubTokenValidator()
    gateway = AuthGateway(account_store, _make_resolver(validator), notifier)
    gateway.bootstrap_admin(ADMIN_EMAIL, ADMIN_PASSWORD)

    app.router.lifespan_context = _patch_lifespan(gateway)
    limiter.enabled = False

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, notifier, validator

    limiter.enabled = True
    account_store.close()
