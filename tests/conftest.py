"""
tests/conftest.py -- Shared test fixtures for FlowForge accounts tests.

This module provides:
  - store / sessions / api_keys / sender: unit-test services over a private
    in-memory database, rebuilt for every test
  - api_client: TestClient over the real FastAPI app with a patched lifespan
    and an isolated named shared-memory database, one per test module
  - client: the same TestClient with its cookie jar emptied before each test

Design: Named shared-memory SQLite URIs (not plain :memory:) are required for
the API fixture because TestClient runs sync route handlers in a thread pool.
Plain :memory: DBs are per-connection and would present a blank schema to
each worker thread.

DEBUG and BCRYPT_ROUNDS must be set before any auth/core import:
get_settings() auto-generates SECRET_KEY only in debug mode, and the lowest
bcrypt cost keeps the password tests fast.
"""

from __future__ import annotations

import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

# CRITICAL: Set before any auth/core import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app, install_services
from auth.api_keys import ApiKeyManager
from auth.models import User
from auth.sessions import SessionService
from auth.store import AccountStore, _api_keys, _to_iso

# Rate limits would trip across a module's worth of logins from one client IP.
limiter.enabled = False


class RecordingSender:
    """Captures single-use tokens instead of delivering them."""

    def __init__(self) -> None:
        self.sent: list[tuple[User, str, str]] = []

    def send(self, user: User, token: str, purpose: str) -> None:
        self.sent.append((user, token, purpose))

    def last(self, purpose: str, email: str | None = None) -> str:
        for user, token, sent_purpose in reversed(self.sent):
            if sent_purpose == purpose and (email is None or user.email == email.lower()):
                return token
        raise AssertionError(f"no {purpose} token was sent")


# ---------------------------------------------------------------------------
# Unit fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def store() -> Generator[AccountStore, None, None]:
    s = AccountStore("sqlite:///:memory:")
    yield s
    s.close()


@pytest.fixture
def sender() -> RecordingSender:
    return RecordingSender()


@pytest.fixture
def sessions(store: AccountStore, sender: RecordingSender) -> SessionService:
    return SessionService(store, sender=sender)


@pytest.fixture
def api_keys(store: AccountStore) -> ApiKeyManager:
    return ApiKeyManager(store)


@pytest.fixture
def user(store: AccountStore) -> User:
    return store.create_user(User(email="owner@example.com"))


@pytest.fixture
def other_user(store: AccountStore) -> User:
    return store.create_user(User(email="other@example.com"))


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(store: AccountStore, sender: RecordingSender):
    """Return a lifespan that wires the test store into app.state.

    No purge task: tests call purge_expired() directly when they need it.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        install_services(app, store, SessionService(store, sender=sender))
        yield

    return test_lifespan


@pytest.fixture(scope="module")
def api_client(request) -> Generator[tuple[TestClient, RecordingSender], None, None]:
    """Yield (client, sender) backed by a database private to the test module."""
    db_name = request.module.__name__.replace(".", "_")
    store = AccountStore(f"sqlite:///file:{db_name}?mode=memory&cache=shared&uri=true")
    sender = RecordingSender()

    app.router.lifespan_context = _patch_lifespan(store, sender)

    with TestClient(app, raise_server_exceptions=True) as test_client:
        yield test_client, sender

    store.close()


@pytest.fixture
def client(api_client: tuple[TestClient, RecordingSender]) -> TestClient:
    test_client, _sender = api_client
    test_client.cookies.clear()
    return test_client


@pytest.fixture
def api_sender(api_client: tuple[TestClient, RecordingSender]) -> RecordingSender:
    return api_client[1]


@pytest.fixture
def expire_key(store: AccountStore):
    """Return a function that moves an API key's expires_at into the past."""

    def _expire(key_id: str) -> None:
        past = datetime.now(timezone.utc) - timedelta(seconds=1)
        with store.engine.begin() as conn:
            conn.execute(_api_keys.update().where(_api_keys.c.id == key_id).values(expires_at=_to_iso(past)))

    return _expire
