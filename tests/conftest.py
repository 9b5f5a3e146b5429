"""
tests/conftest.py -- Shared test fixtures for the Precinct admin test suite.

This module provides:
  - make_docstore(): isolated named shared-memory DocumentStore
  - FakeRequest: the two request attributes the auth core reads
  - make_principal(): Principal factory for permission tests
  - docstore: function-scoped store fixture
  - api_client: TestClient over the real app with a patched lifespan

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

Environment must be set before any auth/core import so get_settings() sees
it: DEBUG generates a throwaway SESSION_SECRET, SECURE_COOKIES=false lets the
http://testserver cookie jar keep the cookies, and the Discord settings make
the discord provider count as configured.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager

# CRITICAL: Set env before any auth/core import so get_settings() picks it up.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("SECURE_COOKIES", "false")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")
os.environ.setdefault("DISCORD_CLIENT_ID", "test-client-id")
os.environ.setdefault("DISCORD_CLIENT_SECRET", "test-client-secret")
os.environ.setdefault("DISCORD_GUILD_ID", "100000000000000000")
os.environ.setdefault("DISCORD_BOT_TOKEN", "test-bot-token")
os.environ.setdefault("DISCORD_SUPERADMIN_ROLE_ID", "900000000000000001")
os.environ.setdefault("DISCORD_SUBDIV_ROLE_ID", "900000000000000002")
os.environ.setdefault("DISCORD_ALLOTHERS_ROLE_ID", "900000000000000003")
os.environ.setdefault("GOOGLE_CLIENT_ID", "")
os.environ.setdefault("GOOGLE_CLIENT_SECRET", "")
os.environ.setdefault("AUDIT_WEBHOOK_URL", "")

import pytest
from fastapi.testclient import TestClient

from api.main import app, build_state
from auth.models import AdminAccount, Principal
from auth.passwords import hash_password
from docstore.store import DocumentStore

SUPERADMIN_ROLE_ID = "900000000000000001"
SUBDIV_ROLE_ID = "900000000000000002"
ALLOTHERS_ROLE_ID = "900000000000000003"

TEST_ADMIN_USERNAME = "Chief"
TEST_ADMIN_PASSWORD = "Correct-Horse-42!"

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def make_docstore(name: str | None = None) -> DocumentStore:
    """Create an isolated named shared-memory DocumentStore."""
    name = name or uuid.uuid4().hex
    return DocumentStore(f"sqlite:///file:test_docs_{name}?mode=memory&cache=shared&uri=true")


class FakeRequest:
    """Stands in for a starlette Request where only headers and cookies are read."""

    def __init__(self, user_agent: str = "testclient", cookies: dict[str, str] | None = None) -> None:
        self.headers = {"user-agent": user_agent}
        self.cookies = cookies or {}


def make_principal(role: str = "custom", **kwargs) -> Principal:
    defaults = {
        "identity_id": "discord-42",
        "username": "officer",
        "display_name": "Officer",
        "provider": "discord",
        "role": role,
    }
    defaults.update(kwargs)
    return Principal(**defaults)


def _patch_lifespan(docstore: DocumentStore):
    """Return an async context manager that replaces the real lifespan.

    Wires the collaborators around the test store instead of the configured
    DOCSTORE_URL. The purge_task is a long-sleeping coroutine so shutdown has a
    real asyncio.Task to cancel.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        build_state(app, docstore)
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def docstore() -> Generator[DocumentStore, None, None]:
    store = make_docstore()
    yield store
    store.close()


@pytest.fixture(scope="module")
def api_client() -> Generator[TestClient, None, None]:
    """Yield a TestClient over the real app, one isolated store per test module.

    follow_redirects=False is essential: the OAuth routes answer with
    redirects and tests assert on the Location header.

    A local super_admin account (TEST_ADMIN_USERNAME / TEST_ADMIN_PASSWORD) is
    seeded before the client starts. Low PBKDF2 iterations keep the suite fast;
    the login upgrades the hash afterwards.
    """
    store = make_docstore()
    app.router.lifespan_context = _patch_lifespan(store)

    with TestClient(app, follow_redirects=False, raise_server_exceptions=True) as client:
        app.state.accounts.save_admin(
            AdminAccount(
                username=TEST_ADMIN_USERNAME,
                password_hash=hash_password(TEST_ADMIN_PASSWORD, iterations=1000),
                display_name="Chief of Police",
                role="super_admin",
            )
        )
        yield client

    store.close()


@pytest.fixture
def client(api_client: TestClient) -> TestClient:
    """api_client with an empty cookie jar, so no session leaks between tests."""
    api_client.cookies.clear()
    return api_client
