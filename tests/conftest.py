"""
tests/conftest.py -- Shared test fixtures for authgate.

This module provides:
  - settings: a Settings instance with a fixed test SECRET_KEY
  - memory_store: an un-migrated named shared-memory SQLite store
  - store: a migrated file-backed SQLite store (one per test)
  - services: build_services() wired onto `store`
  - make_user: factory that registers a user through UserService
  - api_client: TestClient on the real app with a patched lifespan

Design: Named shared-memory SQLite URIs (not plain :memory:) are used for
schema tests because each thread gets its own connection from SQLAlchemy's
SingletonThreadPool. The named URI format (file:name?mode=memory&cache=shared&uri=true)
shares one in-memory instance across all connections in the same process.

Tests that validate API keys use a file-backed DB in tmp_path instead:
ApiKeyService writes last_used_at from a background thread, and a real
file honours the busy timeout where a shared-cache memory DB reports
"database table is locked" immediately.

The DEBUG env var must be set before any core/auth import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app
from auth.migrations import MigrationRunner
from auth.services import AuthServices, build_services
from auth.store import CredentialStore
from core.config import Settings

TEST_SECRET = "test-secret-key-0123456789abcdef0123456789abcdef"
TEST_PASSWORD = "Passw0rdOK"


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def memory_url(name: str) -> str:
    """Named shared-memory SQLite URI, unique per name."""
    return f"sqlite:///file:{name}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


def file_url(directory) -> str:
    return f"sqlite:///{directory / 'authgate_test.db'}"


@pytest.fixture
def settings() -> Settings:
    return Settings(debug=True, secret_key=TEST_SECRET)


@pytest.fixture
def memory_store() -> Generator[CredentialStore, None, None]:
    s = CredentialStore(memory_url("schema"))
    yield s
    s.close()


@pytest.fixture
def store(tmp_path) -> Generator[CredentialStore, None, None]:
    s = CredentialStore(file_url(tmp_path))
    MigrationRunner(s).run_migrations()
    yield s
    s.close()


@pytest.fixture
def services(settings, store) -> Generator[AuthServices, None, None]:
    svc = build_services(settings, store=store)
    yield svc
    svc.close()


@pytest.fixture
def make_user(services):
    """Register users with a valid password; usernames default from the email."""
    counter = iter(range(1, 10_000))

    def _make(email: str | None = None, username: str | None = None, **kwargs):
        n = next(counter)
        email = email or f"user{n}@example.com"
        username = username or f"user{n}"
        return services.users.register(email, username, TEST_PASSWORD, **kwargs)

    return _make


# ---------------------------------------------------------------------------
# API client
# ---------------------------------------------------------------------------


def _patch_lifespan(services: AuthServices):
    """Return an async context manager that replaces the real lifespan.

    Wires pre-built test services into app.state so TestClient routes see an
    isolated test DB rather than the configured database. Migrations still
    run here, the same startup barrier the real lifespan enforces.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        services.migrations.run_migrations()
        app.state.services = services
        yield

    return test_lifespan


@pytest.fixture(scope="module")
def api_client(tmp_path_factory) -> Generator[tuple[TestClient, AuthServices], None, None]:
    """Yield (client, services) for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so
    tests hit real route handlers but use an isolated database.
    """
    db_dir = tmp_path_factory.mktemp("api")
    svc = build_services(Settings(debug=True, secret_key=TEST_SECRET), store=CredentialStore(file_url(db_dir)))
    app.router.lifespan_context = _patch_lifespan(svc)
    limiter.reset()

    with TestClient(app, base_url="http://localhost", raise_server_exceptions=True) as client:
        yield client, svc

    svc.close()
