"""
tests/conftest.py -- Shared test fixtures for Scriptoria unit and integration tests.

This module provides:
  - FakeClock: a settable clock injected into every store and service
  - db / clock / audit / accounts / ledger / guard / stories / engine:
    function-scoped service graph on a private in-memory database
  - _make_test_db(): isolated named shared-memory database for API tests
  - _patch_lifespan(): wires a test database into app.state via wire_services()
  - api_client: TestClient plus an admin access token for API integration tests

Design: Named shared-memory SQLite URIs (not plain :memory:) are used for the
API client because TestClient runs route handlers in a thread pool. The named
URI format (file:name?mode=memory&cache=shared&uri=true) shares one in-memory
instance across all connections in the same process, and the suffix keeps
test modules from seeing each other's rows.

DEBUG and LOGIN_RATE_LIMIT must be set before any core/api import so
get_settings() auto-generates SECRET_KEY and the per-IP login limit does not
interfere with lockout tests that log in many times from one client.
"""

from __future__ import annotations

import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

# CRITICAL: Set before any core/api import (get_settings() is cached).
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient

from api.main import app, wire_services
from audit.store import AuditSink
from auth.guard import LoginGuard
from auth.models import RequestContext
from auth.store import AccountStore
from auth.tokens import TokenLedger
from catalog.store import StoryStore
from core.config import get_settings
from core.database import Database
from documents.engine import DocumentEngine

TEST_SECRET_KEY = "test-secret-key-with-at-least-32-characters"
ADMIN_USERNAME = "testadmin"
ADMIN_PASSWORD = "testpass123"
CONTEXT = RequestContext(ip="127.0.0.1", user_agent="pytest")


class FakeClock:
    """Callable clock that only moves when a test says so."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


# ---------------------------------------------------------------------------
# Unit-level service graph
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def db() -> Generator[Database, None, None]:
    database = Database("sqlite:///:memory:")
    database.create_schema()
    yield database
    database.close()


@pytest.fixture
def audit(db: Database, clock: FakeClock) -> AuditSink:
    return AuditSink(db, clock=clock)


@pytest.fixture
def accounts(db: Database, clock: FakeClock) -> AccountStore:
    return AccountStore(db, clock=clock)


@pytest.fixture
def ledger(db: Database, clock: FakeClock) -> TokenLedger:
    return TokenLedger(db, TEST_SECRET_KEY, access_ttl_seconds=900, refresh_ttl_seconds=3600, clock=clock)


@pytest.fixture
def guard(
    db: Database, accounts: AccountStore, ledger: TokenLedger, audit: AuditSink, clock: FakeClock
) -> LoginGuard:
    return LoginGuard(db, accounts, ledger, audit, max_attempts=5, lock_minutes=5, clock=clock)


@pytest.fixture
def stories(db: Database, clock: FakeClock) -> StoryStore:
    return StoryStore(db, clock=clock)


@pytest.fixture
def engine(db: Database, stories: StoryStore, audit: AuditSink, clock: FakeClock) -> DocumentEngine:
    return DocumentEngine(db, stories, audit, clock=clock)


# ---------------------------------------------------------------------------
# API integration helpers
# ---------------------------------------------------------------------------


def _make_test_db(db_suffix: str) -> Database:
    """Create an isolated named shared-memory database with the schema applied.

    Args:
        db_suffix: Unique string appended to the DB name so test modules
                   don't share state (e.g. 'test_api_auth').
    """
    database = Database(f"sqlite:///file:test_{db_suffix}?mode=memory&cache=shared&uri=true")
    database.create_schema()
    return database


def _patch_lifespan(database: Database):
    """Return an async context manager that replaces the real lifespan.

    Routes see the same service graph production builds, only on the test
    database. The database itself is closed by the fixture, not here.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        wire_services(app, database, get_settings())
        yield

    return test_lifespan


@pytest.fixture(scope="module")
def api_client(request) -> Generator[tuple[TestClient, str, int], None, None]:
    """Yield (client, token, user_id) for API integration tests.

    The admin account is created and signed in through the real LoginGuard
    once the app is wired, so the token is a genuine ledger entry.
    """
    database = _make_test_db(request.module.__name__.rsplit(".", 1)[-1])
    app.router.lifespan_context = _patch_lifespan(database)

    with TestClient(app, raise_server_exceptions=True) as client:
        guard: LoginGuard = app.state.guard
        admin = guard.provision(ADMIN_USERNAME, ADMIN_PASSWORD, role="admin")
        result = guard.login(ADMIN_USERNAME, ADMIN_PASSWORD, CONTEXT)
        yield client, result.tokens.access_token, admin.id

    database.close()


@pytest.fixture
def register_user():
    """Return a helper that self-registers through the API and returns the AuthResponse body."""

    def _register(client: TestClient, username: str, password: str = "correct-horse") -> dict:
        resp = client.post("/api/v1/auth/register", json={"username": username, "password": password})
        assert resp.status_code == 201, resp.text
        return resp.json()

    return _register
