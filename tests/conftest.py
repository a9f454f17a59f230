"""
tests/conftest.py -- Shared test fixtures for SalonBook auth tests.

This module provides:
  - store / sessions / rbac: unit-test fixtures over a private in-memory DB
  - make_user(): register a user and return its AuthResult
  - api_client: TestClient wired to an isolated shared-memory DB

Design: Named shared-memory SQLite URIs (not plain :memory:) are required for
the TestClient because route handlers run in a thread pool. Plain :memory:
DBs are per-connection and would present a blank schema to each worker thread.

Environment must be set before any auth/core import:
  DEBUG=true               -- get_settings() generates a SECRET_KEY
  BCRYPT_ROUNDS=4          -- fast hashing (only accepted with DEBUG)
  RATE_LIMIT_ENABLED=false -- repeated logins from one address are not throttled
  ALLOWED_HOSTS            -- TestClient sends Host: testserver
"""

from __future__ import annotations

import os
from collections.abc import Callable, Generator
from contextlib import asynccontextmanager
from unittest.mock import MagicMock
from uuid import uuid4

os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost"]')

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.models import AuthResult
from auth.rbac import RbacResolver
from auth.seed import seed_catalog
from auth.sessions import SessionManager
from auth.store import AuthStore

# ---------------------------------------------------------------------------
# Unit-test fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def store() -> Generator[AuthStore, None, None]:
    """Fresh in-memory AuthStore with the role/permission catalog seeded."""
    s = AuthStore("sqlite:///:memory:")
    seed_catalog(s)
    yield s
    s.close()


@pytest.fixture
def sessions(store: AuthStore) -> SessionManager:
    return SessionManager(store, max_active_sessions=0)


@pytest.fixture
def rbac(store: AuthStore) -> RbacResolver:
    return RbacResolver(store)


@pytest.fixture
def make_user(sessions: SessionManager) -> Callable[..., AuthResult]:
    """Register a user with a unique email unless one is given."""

    def _make(name: str = "Ana", email: str | None = None, password: str = "secret1", **kwargs) -> AuthResult:
        return sessions.register(name, email or f"user-{uuid4().hex[:8]}@x.com", password, **kwargs)

    return _make


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


def _make_test_store(db_suffix: str) -> AuthStore:
    url = f"sqlite:///file:test_auth_{db_suffix}_{uuid4().hex[:6]}?mode=memory&cache=shared&uri=true"
    s = AuthStore(url)
    seed_catalog(s)
    return s


def _patch_lifespan(store: AuthStore):
    """Return an async context manager that replaces the real lifespan.

    Wires the test store and services into app.state so routes see an isolated
    DB. The purge task is a MagicMock: nothing needs purging during a test.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.auth_store = store
        app.state.sessions = SessionManager(store, max_active_sessions=0)
        app.state.rbac = RbacResolver(store)
        app.state.purge_task = MagicMock()
        yield

    return test_lifespan


@pytest.fixture(scope="module")
def api_client() -> Generator[tuple[TestClient, AuthStore], None, None]:
    """Yield (client, store) for API integration tests.

    One client per test module. Tests must use unique emails/slugs because the
    DB is shared across the module.
    """
    store = _make_test_store("api")
    app.router.lifespan_context = _patch_lifespan(store)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, store

    store.close()
