"""
tests/conftest.py -- Shared test fixtures for SessionKeeper.

This module provides:
  - FakeClock / clock: a settable UTC clock, so expiry is tested by moving time
    instead of sleeping
  - engine: an isolated in-memory SQLite engine per test
  - issuer / refresh_store / blacklist / lockout / user_store: components on
    that engine, all driven by the fake clock
  - service: an AuthService wired from the above (threshold=3, cap=2)
  - api_client: TestClient over the real app with a patched lifespan

Design: make_engine() gives ":memory:" URLs a StaticPool, so the TestClient's
worker threads all see the same in-memory database as the test body.

The DEBUG env var must be set before any core/auth import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")
# The API tests log in far more often than a real client would.
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.blacklist import TokenBlacklist
from auth.lockout import LockoutGuard
from auth.models import Principal
from auth.refresh_tokens import RefreshTokenStore
from auth.service import AuthService
from auth.store import UserStore
from auth.tokens import AccessTokenIssuer, hash_password
from core.db import make_engine, release

TEST_SECRET = "test-secret-key-that-is-at-least-32-chars"
TEST_PASSWORD = "correct-horse-battery"


class FakeClock:
    """Callable UTC clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


# ---------------------------------------------------------------------------
# Component fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def engine():
    eng = make_engine("sqlite:///:memory:")
    yield eng
    release(eng)


@pytest.fixture
def issuer(clock) -> AccessTokenIssuer:
    return AccessTokenIssuer(TEST_SECRET, ttl_seconds=900, clock=clock)


@pytest.fixture
def refresh_store(engine, clock) -> RefreshTokenStore:
    return RefreshTokenStore(engine=engine, ttl_seconds=7 * 24 * 3600, max_per_user=2, clock=clock)


@pytest.fixture
def blacklist(engine, clock) -> TokenBlacklist:
    return TokenBlacklist(engine=engine, clock=clock)


@pytest.fixture
def lockout(engine, clock) -> LockoutGuard:
    return LockoutGuard(engine=engine, threshold=3, lock_duration_seconds=1800, window_seconds=900, clock=clock)


@pytest.fixture
def user_store(engine) -> UserStore:
    return UserStore(engine=engine)


@pytest.fixture(scope="session")
def alice_hash() -> str:
    """bcrypt is slow on purpose; hash the shared test password once."""
    return hash_password(TEST_PASSWORD)


@pytest.fixture
def alice(user_store, alice_hash) -> Principal:
    principal = Principal(
        username="alice",
        email="alice@example.com",
        roles=["ROLE_USER"],
        hashed_password=alice_hash,
    )
    principal.id = user_store.create_user(principal)
    return principal


@pytest.fixture
def service(user_store, issuer, refresh_store, blacklist, lockout) -> AuthService:
    return AuthService(user_store, issuer, refresh_store, blacklist, lockout)


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(service: AuthService, engine):
    """Return an async context manager that replaces the real lifespan.

    Wires the test service (in-memory engine, fake clock) into app.state so
    TestClient routes never touch the configured database. The sweep task is
    a long-sleeping coroutine; a real asyncio.Task is needed for .cancel().
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.engine = engine
        app.state.auth_service = service
        app.state.sweep_tasks = [asyncio.create_task(asyncio.sleep(99999))]
        yield
        for task in app.state.sweep_tasks:
            task.cancel()

    return test_lifespan


@pytest.fixture
def api_client(service, engine, alice) -> Generator[TestClient, None, None]:
    """Yield a TestClient over the real app, with alice already registered.

    The app uses the same service and clock as the test body, so tests can
    move time with the clock fixture between requests.
    """
    app.router.lifespan_context = _patch_lifespan(service, engine)
    with TestClient(app, raise_server_exceptions=True) as client:
        yield client
