"""
tests/conftest.py -- Shared test fixtures for admin-auth unit and integration tests.

This module provides:
  - engine / users / sessions / audit / service: per-test in-memory stores
  - _make_test_engine(): named shared-memory DB for the TestClient fixture
  - _patch_lifespan(): wires the test engine into app.state, bypassing real startup
  - api_client: TestClient over the real FastAPI app
  - csrf_headers / make_user / login_token: helpers for end-to-end flows

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
for the TestClient because it runs route handlers in a thread pool. Plain
:memory: DBs are per-connection and would present a blank schema to each
worker thread. Unit tests run on one thread and use plain :memory:.

DEBUG, BCRYPT_ROUNDS and LOGIN_RATE_LIMIT must be set before any app module
import: get_settings() is cached on first call.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Callable, Generator
from contextlib import asynccontextmanager

# CRITICAL: Set before any auth/core import so get_settings() auto-generates
# SECRET_KEY in dev mode, hashes cheaply, and never rate-limits the suite.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.engine import Engine

from api.main import app
from auth.audit import AuditLog
from auth.csrf import CsrfGuard
from auth.service import AuthService
from auth.sessions import SessionStore
from auth.store import UserStore, create_auth_engine

PASSWORD = "Password123"

# ---------------------------------------------------------------------------
# Unit-test stores
# ---------------------------------------------------------------------------


@pytest.fixture()
def engine() -> Generator[Engine, None, None]:
    eng = create_auth_engine("sqlite:///:memory:")
    yield eng
    eng.dispose()


@pytest.fixture()
def users(engine: Engine) -> UserStore:
    return UserStore(engine)


@pytest.fixture()
def sessions(engine: Engine) -> SessionStore:
    return SessionStore(engine)


@pytest.fixture()
def audit(engine: Engine) -> AuditLog:
    return AuditLog(engine)


@pytest.fixture()
def service(engine: Engine) -> AuthService:
    return AuthService.from_engine(engine)


# ---------------------------------------------------------------------------
# TestClient
# ---------------------------------------------------------------------------


def _make_test_engine(db_suffix: str) -> Engine:
    """Create an isolated named shared-memory SQLite engine.

    Args:
        db_suffix: Unique string appended to the DB name so test modules
                   don't share state.
    """
    return create_auth_engine(f"sqlite:///file:test_auth_{db_suffix}?mode=memory&cache=shared&uri=true")


def _patch_lifespan(engine: Engine):
    """Return an async context manager that replaces the real lifespan.

    The purge_task is a long-sleeping coroutine (a real asyncio.Task is
    required; the shutdown path calls .cancel() on it).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.engine = engine
        app.state.auth_service = AuthService.from_engine(engine)
        app.state.csrf_guard = CsrfGuard()
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@pytest.fixture(scope="module")
def api_client(request) -> Generator[TestClient, None, None]:
    """One TestClient per test module, backed by that module's own database.

    Tests within a module share the database, so each test uses its own
    usernames (see make_user).
    """
    engine = _make_test_engine(request.module.__name__.rsplit(".", 1)[-1])
    app.router.lifespan_context = _patch_lifespan(engine)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client

    engine.dispose()


# ---------------------------------------------------------------------------
# End-to-end helpers
# ---------------------------------------------------------------------------


@pytest.fixture()
def csrf_headers(api_client: TestClient) -> Callable[[], dict[str, str]]:
    """Return a callable that mints a fresh token (and cookie) and returns the header."""

    def _mint() -> dict[str, str]:
        resp = api_client.get("/api/v1/csrf-token")
        assert resp.status_code == 200, resp.text
        return {"X-CSRF-Token": resp.json()["csrfToken"]}

    return _mint


@pytest.fixture()
def make_user(api_client: TestClient, csrf_headers) -> Callable[..., str]:
    """Register a uniquely-named user over HTTP and return the username."""

    def _make(prefix: str = "user", password: str = PASSWORD) -> str:
        username = f"{prefix}{uuid.uuid4().hex[:8]}"
        resp = api_client.post(
            "/api/v1/auth/register",
            json={"username": username, "email": f"{username}@example.com", "password": password},
            headers=csrf_headers(),
        )
        assert resp.status_code == 201, f"register failed: {resp.text}"
        return username

    return _make


@pytest.fixture()
def login_token(api_client: TestClient, csrf_headers) -> Callable[..., str]:
    """Log in over HTTP and return the bearer token."""

    def _login(identifier: str, password: str = PASSWORD) -> str:
        resp = api_client.post(
            "/api/v1/auth/login",
            json={"username": identifier, "password": password},
            headers=csrf_headers(),
        )
        assert resp.status_code == 200, f"login failed: {resp.text}"
        return resp.json()["token"]

    return _login
