"""
tests/conftest.py -- Shared test fixtures for AccessGate tests.

This module provides:
  - make_store(): isolated named shared-memory SQLite store
  - FakeClock: manually advanced clock for tokens, buckets and TOTP
  - _patch_lifespan(): wires a test store and gate into app.state
  - api_client: TestClient plus seeded admin/plain identities and tokens

Named shared-memory SQLite URIs (not plain :memory:) are required because
TestClient runs sync handlers and dependencies in a thread pool. The named
URI format (file:name?mode=memory&cache=shared&uri=true) shares one
in-memory instance across all connections in the same process.

Settings env vars must be set before any api/auth/core import: get_settings()
is cached on first use and api/main.py reads it at import time. The IP and
identity buckets are opened wide so the whole suite (one client address,
"testclient") is never throttled unless a test installs a tight limiter.
"""

from __future__ import annotations

import asyncio
import itertools
import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from typing import NamedTuple

# CRITICAL: Set before any auth/core import.
os.environ.setdefault("SECRET_KEY", "test-secret-key-0123456789abcdefghijklmnop")
os.environ.setdefault("IP_RATE_PER_SECOND", "1000")
os.environ.setdefault("IP_BURST", "1000")
os.environ.setdefault("IDENTITY_RATE_PER_SECOND", "1000")
os.environ.setdefault("IDENTITY_BURST", "1000")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.authorization import AuthorizationEngine
from auth.models import Identity
from auth.pipeline import RequestPipeline
from auth.ratelimit import RateLimiter
from auth.seed import create_admin, seed_roles_and_permissions
from auth.store import AccessStore
from auth.tokens import TokenService, hash_password
from auth.twofactor import TwoFactorService
from core.config import get_settings

ADMIN_EMAIL = "admin@example.com"
ADMIN_PASSWORD = "adminpass123"
USER_EMAIL = "plain@example.com"
USER_PASSWORD = "userpass123"

_store_counter = itertools.count()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def make_store(name: str | None = None) -> AccessStore:
    """Return an AccessStore on a fresh named shared-memory database."""
    name = name or f"test_access_{next(_store_counter)}"
    return AccessStore(f"sqlite:///file:{name}?mode=memory&cache=shared&uri=true")


def make_identity(store: AccessStore, email: str, password: str = "password123", verified: bool = True) -> Identity:
    """Create an identity and return it as stored (with id and timestamps)."""
    identity_id = store.create_identity(
        Identity(
            email=email,
            name=email.split("@")[0],
            hashed_password=hash_password(password),
            is_verified=verified,
        )
    )
    return store.find_identity_by_id(identity_id)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _patch_lifespan(store: AccessStore):
    """Return an async context manager that replaces the real lifespan.

    Builds the same collaborators as api/main.py but on the test store. The
    sweep task is a long-sleeping coroutine so shutdown can cancel it.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        settings = get_settings()
        app.state.store = store
        app.state.tokens = TokenService.from_settings(settings)
        app.state.authz = AuthorizationEngine(store)
        app.state.twofactor = TwoFactorService(store, issuer=settings.totp_issuer)
        app.state.rate_limiter = RateLimiter.from_settings(settings)
        app.state.pipeline = RequestPipeline(app.state.tokens, app.state.authz, app.state.rate_limiter)
        app.state.sweep_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.sweep_task.cancel()

    return test_lifespan


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def store() -> Generator[AccessStore, None, None]:
    s = make_store()
    yield s
    s.close()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


class ApiClient(NamedTuple):
    client: TestClient
    admin_token: str
    admin_id: str
    user_token: str
    user_id: str


@pytest.fixture(scope="module")
def api_client() -> Generator[ApiClient, None, None]:
    """Yield an ApiClient for API integration tests.

    The store is seeded with the default roles/permissions, an admin
    identity (ADMIN_EMAIL) and a verified identity with no roles
    (USER_EMAIL). Tokens for both are issued before the client starts.
    """
    store = make_store()
    seed_roles_and_permissions(store)
    admin_id = create_admin(store, ADMIN_EMAIL, "Admin", ADMIN_PASSWORD)
    user_id = make_identity(store, USER_EMAIL, USER_PASSWORD).id

    tokens = TokenService.from_settings(get_settings())
    app.router.lifespan_context = _patch_lifespan(store)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield ApiClient(client, tokens.issue(admin_id), admin_id, tokens.issue(user_id), user_id)

    store.close()


def bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}
