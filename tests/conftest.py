"""
tests/conftest.py -- Shared fixtures for authgate unit and integration tests.

This module provides:
  - clock / db / settings / notifier / hasher / service fixtures: components
    over a private in-memory database (test doubles live in tests/support.py)
  - api fixture: TestClient over the real app with a patched lifespan
  - limited_api fixture: same, with budgets small enough to exhaust
  - mail_api fixture: same, with the real Notifier and a dev-mode Mailer

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
for the API fixture because TestClient runs route handlers in a thread pool.
Plain :memory: DBs are per-connection and would present a blank schema to
each worker thread. The named URI format
(file:name?mode=memory&cache=shared&uri=true) shares one in-memory instance
across all connections in the same process.

DEBUG and ALLOWED_HOSTS must be set before api.main is imported: the app
reads Settings at import time for TrustedHostMiddleware and CORS.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import timedelta

# CRITICAL: Set before any api/core import so get_settings() can auto-generate
# SECRET_KEY in dev mode and TestClient's "testserver" host is accepted.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost", "127.0.0.1"]')

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app, build_components
from auth.passwords import BcryptHasher
from auth.service import AuthService
from auth.sessions import SessionManager
from auth.store import IdentityStore, ProfileStore
from auth.tokens import TokenIssuer
from core.config import Settings
from core.database import Database

from tests.support import PASSWORD, FakeClock, RecordingNotifier, make_settings


# ---------------------------------------------------------------------------
# Component fixtures (unit tests)
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def db() -> Generator[Database, None, None]:
    database = Database("sqlite:///:memory:")
    database.connect()
    yield database
    database.close()


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def hasher() -> BcryptHasher:
    return BcryptHasher(rounds=4)


@pytest.fixture
def service(db, settings, notifier, hasher, clock) -> AuthService:
    return AuthService(
        identities=IdentityStore(db, clock),
        profiles=ProfileStore(db, clock),
        issuer=TokenIssuer(db, settings.secret_key, clock),
        sessions=SessionManager(
            db,
            settings.secret_key,
            ttl=timedelta(seconds=settings.session_expire_seconds),
            update_age=timedelta(seconds=settings.session_update_age_seconds),
            clock=clock,
        ),
        hasher=hasher,
        notifier=notifier,
        settings=settings,
        clock=clock,
    )


# ---------------------------------------------------------------------------
# API fixtures (integration tests)
# ---------------------------------------------------------------------------


def _patch_lifespan(settings: Settings, db_url: str, notifier: RecordingNotifier | None, clock: FakeClock):
    """Return an async context manager that replaces the real lifespan.

    Builds the real components over an isolated named in-memory database with
    the recording notifier in place of SMTP. notifier=None keeps the real
    Notifier and dispatcher (dev-mode Mailer: messages are logged).

    The sweep_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        db = Database(db_url)
        db.connect()
        build_components(app, settings, db, notifier=notifier, clock=clock)
        app.state.sweep_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.sweep_task.cancel()
        if app.state.dispatcher is not None:
            app.state.dispatcher.shutdown(wait=True)
        db.close()

    return test_lifespan


@dataclass
class ApiHarness:
    client: TestClient
    notifier: RecordingNotifier | None
    clock: FakeClock
    settings: Settings

    def signup(self, email: str, password: str = PASSWORD, name: str = "Test User"):
        return self.client.post("/auth/signup", json={"email": email, "password": password, "name": name})

    def login(self, email: str, password: str = PASSWORD, **extra):
        return self.client.post("/auth/login", json={"email": email, "password": password, **extra})

    def verify(self, email: str):
        token = self.notifier.last_token("verify", email)
        return self.client.get("/auth/verify-email", params={"token": token})

    def signup_verified(self, email: str, password: str = PASSWORD) -> None:
        assert self.signup(email, password).status_code == 201
        assert self.verify(email).status_code == 200
        # Start from a clean cookie jar; callers log in explicitly.
        self.client.cookies.clear()


def _api_harness(notifier: RecordingNotifier | None, **setting_overrides) -> Generator[ApiHarness, None, None]:
    settings = make_settings(**setting_overrides)
    clock = FakeClock()
    db_url = f"sqlite:///file:authgate_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"
    app.router.lifespan_context = _patch_lifespan(settings, db_url, notifier, clock)
    # One limiter per process; start every test with empty counters.
    limiter.reset()
    with TestClient(app, follow_redirects=False, raise_server_exceptions=True) as client:
        yield ApiHarness(client=client, notifier=notifier, clock=clock, settings=settings)


@pytest.fixture
def api() -> Generator[ApiHarness, None, None]:
    """TestClient over the real app, fresh database per test, no rate pressure."""
    yield from _api_harness(RecordingNotifier())


@pytest.fixture
def limited_api() -> Generator[ApiHarness, None, None]:
    """Same as api, with small budgets so limits are reachable in a test."""
    yield from _api_harness(
        RecordingNotifier(),
        rate_limit_max_requests=30,
        auth_rate_limit_max=3,
        password_reset_rate_limit_max=2,
        email_verification_rate_limit_max=2,
    )


@pytest.fixture
def mail_api() -> Generator[ApiHarness, None, None]:
    """Same as api, with the real Notifier over a dev-mode Mailer."""
    yield from _api_harness(None)
