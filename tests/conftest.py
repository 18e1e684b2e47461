"""
tests/conftest.py -- Shared test fixtures for Gatehouse.

This module provides:
  - make_settings(): Settings with fixed test keys and the cheapest bcrypt cost
  - make_store(): isolated in-memory UserStore
  - _patch_lifespan(): wires test collaborators into app.state, bypassing real startup
  - client / hybrid_client / oauth_client: TestClients over the assembled app

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs sync route handlers in a thread pool. Plain :memory:
DBs are per-connection and would present a blank schema to each worker thread.

Environment variables must be set before any api/auth/core import so
get_settings() builds a debug-mode Settings with deterministic keys.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from unittest.mock import MagicMock

# CRITICAL: set before any core import so get_settings() does not raise
# (production mode requires keys) and bcrypt stays fast.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("SECRET_KEY", "test-access-signing-key-0123456789abcdef")
os.environ.setdefault("REFRESH_SECRET_KEY", "test-refresh-signing-key-0123456789abcdef")
os.environ.setdefault("BCRYPT_ROUNDS", "4")

import pytest
from fastapi.testclient import TestClient

from api.main import wire_services
from asgi import app
from auth.identity import IdentityResolver
from auth.sessions import SessionManager
from auth.store import UserStore
from auth.tokens import TokenService
from core.config import Settings


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def make_settings(**overrides) -> Settings:
    values = {
        "debug": True,
        "secret_key": "test-access-signing-key-0123456789abcdef",
        "refresh_secret_key": "test-refresh-signing-key-0123456789abcdef",
        "bcrypt_rounds": 4,
        "google_client_id": "",
        "google_client_secret": "",
        "github_client_id": "",
        "github_client_secret": "",
    }
    values.update(overrides)
    return Settings(**values)


def make_store() -> UserStore:
    """Create an isolated named shared-memory SQLite store."""
    return UserStore(f"sqlite:///file:test_auth_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true")


def _patch_lifespan(settings: Settings, store: UserStore, oauth=None):
    """Return a lifespan that wires test collaborators into app.state.

    The OAuth registry is a MagicMock so no test can reach a real provider.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        wire_services(app, settings, store, oauth=oauth if oauth is not None else MagicMock())
        yield

    return test_lifespan


def _client(settings: Settings) -> Generator[tuple[TestClient, UserStore, Settings], None, None]:
    store = make_store()
    app.router.lifespan_context = _patch_lifespan(settings, store)
    with TestClient(app, follow_redirects=False, raise_server_exceptions=True) as client:
        yield client, store, settings
    store.close()


# ---------------------------------------------------------------------------
# Unit fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def settings_factory():
    """Return make_settings() so tests can build variants with overrides."""
    return make_settings


@pytest.fixture
def store() -> Generator[UserStore, None, None]:
    user_store = make_store()
    yield user_store
    user_store.close()


@pytest.fixture
def tokens(settings: Settings) -> TokenService:
    return TokenService(settings)


@pytest.fixture
def resolver(store: UserStore, settings: Settings) -> IdentityResolver:
    return IdentityResolver(store, settings)


@pytest.fixture
def sessions(store: UserStore, tokens: TokenService, settings: Settings) -> SessionManager:
    return SessionManager(store, tokens, settings)


# ---------------------------------------------------------------------------
# Integration fixtures -- one TestClient per test for state isolation
# ---------------------------------------------------------------------------


@pytest.fixture
def client() -> Generator[tuple[TestClient, UserStore, Settings], None, None]:
    """Yield (client, store, settings) for the stateless token strategy.

    follow_redirects=False so tests can assert on redirect Location headers.
    """
    yield from _client(make_settings())


@pytest.fixture
def hybrid_client() -> Generator[tuple[TestClient, UserStore, Settings], None, None]:
    """Same as client, with SESSION_STRATEGY=hybrid."""
    yield from _client(make_settings(session_strategy="hybrid"))


@pytest.fixture
def oauth_client() -> Generator[tuple[TestClient, UserStore, Settings], None, None]:
    """Same as client, with both OAuth providers configured."""
    yield from _client(
        make_settings(
            google_client_id="google-id",
            google_client_secret="google-secret",
            github_client_id="github-id",
            github_client_secret="github-secret",
        )
    )
