"""
tests/conftest.py -- Shared test fixtures for keygate unit and integration tests.

This module provides:
  - _make_test_store(): creates an isolated in-memory auth DB
  - FakeProvider: a ProviderAdapter that never touches the network
  - _patch_lifespan(): wires test stores into app.state, bypassing real startup
  - store / cipher / provider / service: function-scoped unit fixtures
  - api_client: TestClient with a fake provider for HTTP integration tests

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

The DEBUG env var must be set before any auth module import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from urllib.parse import urlencode

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.cipher import SecretCipher, generate_key
from auth.errors import ProviderError
from auth.models import ProviderProfile, ProviderTokens
from auth.service import AuthService
from auth.store import UserStore

# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def _make_test_store(db_suffix: str, cipher: SecretCipher | None = None) -> UserStore:
    """Create an isolated named shared-memory SQLite store.

    Args:
        db_suffix: Unique string appended to the DB name so tests and test
                   modules don't share state.
        cipher:    Optional SecretCipher for provider-token encryption.
    """
    auth_url = f"sqlite:///file:test_auth_{db_suffix}?mode=memory&cache=shared&uri=true"
    return UserStore(db_url=auth_url, cipher=cipher)


def make_key() -> bytes:
    return bytes.fromhex(generate_key())


# ---------------------------------------------------------------------------
# Fake identity provider
# ---------------------------------------------------------------------------


class FakeProvider:
    """In-memory ProviderAdapter. Records every call; fails on demand."""

    name = "naver"
    label = "Naver"

    def __init__(self) -> None:
        self.profile = ProviderProfile(id="nv-1001", display_name="Naver User", email="naver.user@example.com")
        self.exchanged: list[tuple[str, str]] = []
        self.fail_exchange = False
        self.fail_profile = False

    def authorization_url(self, state: str) -> str:
        return "https://provider.test/authorize?" + urlencode({"client_id": "test-client", "state": state})

    def exchange_code(self, code: str, state: str) -> ProviderTokens:
        self.exchanged.append((code, state))
        if self.fail_exchange:
            raise ProviderError("invalid_grant: code expired")
        return ProviderTokens(access_token=f"provider-access-{code}", refresh_token=f"provider-refresh-{code}")

    def fetch_profile(self, access_token: str) -> ProviderProfile:
        if self.fail_profile:
            raise ProviderError("profile fetch returned '024': Authentication failed")
        return self.profile


# ---------------------------------------------------------------------------
# Lifespan patch
# ---------------------------------------------------------------------------


def _patch_lifespan(user_store: UserStore, service: AuthService):
    """Return an async context manager that replaces the real lifespan.

    Wires pre-created test stores and the service into app.state so TestClient
    routes see isolated test DBs and the fake provider.

    The purge_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.user_store = user_store
        app.state.auth_service = service
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


# ---------------------------------------------------------------------------
# Unit fixtures -- a fresh database per test
# ---------------------------------------------------------------------------


@pytest.fixture()
def cipher() -> SecretCipher:
    return SecretCipher(make_key())


@pytest.fixture()
def store(cipher: SecretCipher) -> Generator[UserStore, None, None]:
    user_store = _make_test_store(uuid.uuid4().hex, cipher=cipher)
    yield user_store
    user_store.close()


@pytest.fixture()
def store_factory() -> Generator:
    """Build extra stores (e.g. the same DB under a rotated cipher); all closed at teardown."""
    created: list[UserStore] = []

    def factory(db_suffix: str, cipher: SecretCipher | None = None) -> UserStore:
        user_store = _make_test_store(db_suffix, cipher=cipher)
        created.append(user_store)
        return user_store

    yield factory
    for user_store in created:
        user_store.close()


@pytest.fixture()
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture()
def service(store: UserStore, provider: FakeProvider) -> AuthService:
    return AuthService.build(store, {provider.name: provider})


# ---------------------------------------------------------------------------
# Module-scoped fixtures -- one TestClient per test module for speed
# ---------------------------------------------------------------------------


@pytest.fixture(scope="module")
def api_client() -> Generator[tuple[TestClient, FakeProvider], None, None]:
    """Yield (client, provider) for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so
    tests hit real route handlers but use an isolated in-memory store.
    base_url uses localhost so TrustedHostMiddleware accepts the requests;
    follow_redirects=False keeps redirect Location headers visible.
    """
    user_store = _make_test_store(f"api_{uuid.uuid4().hex}", cipher=SecretCipher(make_key()))
    provider = FakeProvider()
    service = AuthService.build(user_store, {provider.name: provider})

    app.router.lifespan_context = _patch_lifespan(user_store, service)

    with TestClient(
        app, base_url="http://localhost", follow_redirects=False, raise_server_exceptions=True
    ) as client:
        yield client, provider

    user_store.close()
