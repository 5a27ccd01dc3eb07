"""
tests/conftest.py -- Shared test fixtures for the Bookshelf auth service.

This module provides:
  - FakeClock: a settable datetime clock for expiry tests
  - FakeRelyingParty: real py_webauthn option generation, synthetic verification
  - store / challenges / rp / registration / authentication / devices fixtures
  - client: TestClient over the real app with a patched lifespan
  - webauthn_client: the same, verifying with the real RelyingParty

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process. Each
fixture gets a fresh name so tests never see each other's accounts.

Environment must be set before any auth/core import: get_settings() is read
at module load by auth.tokens and api.main.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

# CRITICAL: Set env before any auth/core import. DEBUG lets get_settings()
# auto-generate SECRET_KEY; RP_ID/RP_ORIGIN have no defaults.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("RP_ID", "localhost")
os.environ.setdefault("RP_ORIGIN", "http://localhost:5173")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost"]')
os.environ.setdefault("RECOVERY_CODE_ROUNDS", "4")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.authentication import AuthenticationCeremony
from auth.devices import DeviceManager
from auth.errors import VerificationFailed
from auth.models import NewCredential, PasskeyCredential
from auth.registration import RegistrationCeremony
from auth.relying_party import RelyingParty
from auth.store import CredentialStore
from cache.store import MemoryChallengeCache, RevokedTokens
from helpers import APP_URL

# ---------------------------------------------------------------------------
# Clock and relying party doubles
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable returning a fixed UTC datetime until advanced."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def _fake_public_key(credential_id: str) -> bytes:
    return f"fake-cose-key:{credential_id}".encode()


class FakeRelyingParty(RelyingParty):
    """Option generation is inherited unchanged; verification is synthetic.

    A fake attestation or assertion is accepted when it echoes the expected
    challenge. Assertions must also present the key registered for the
    credential and a counter that increases (0 -> 0 is allowed, matching
    authenticators that do not implement counters).
    """

    def verify_registration(self, credential: dict, expected_challenge: str) -> NewCredential:
        if credential.get("challenge") != expected_challenge or not credential.get("id"):
            raise VerificationFailed()
        return NewCredential(
            credential_id=credential["id"],
            public_key=_fake_public_key(credential["id"]),
            sign_count=credential.get("signCount", 0),
            transports=credential.get("transports", []),
        )

    def verify_authentication(self, credential: dict, expected_challenge: str, stored: PasskeyCredential) -> int:
        if credential.get("challenge") != expected_challenge:
            raise VerificationFailed()
        if stored.public_key != _fake_public_key(credential.get("id", "")):
            raise VerificationFailed()
        new_count = credential.get("signCount", 0)
        if (new_count or stored.sign_count) and new_count <= stored.sign_count:
            raise VerificationFailed()
        return new_count


def memory_db_url(prefix: str = "test_auth") -> str:
    return f"sqlite:///file:{prefix}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


# ---------------------------------------------------------------------------
# Service-level fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock: FakeClock) -> Generator[CredentialStore, None, None]:
    credential_store = CredentialStore(db_url=memory_db_url(), clock=clock)
    yield credential_store
    credential_store.close()


@pytest.fixture
def challenges() -> MemoryChallengeCache:
    return MemoryChallengeCache(ttl=300)


@pytest.fixture
def rp() -> FakeRelyingParty:
    return FakeRelyingParty(rp_id="localhost", rp_name="Bookshelf", origin=APP_URL)


@pytest.fixture
def registration(store, challenges, rp) -> RegistrationCeremony:
    return RegistrationCeremony(store, challenges, rp)


@pytest.fixture
def authentication(store, challenges, rp) -> AuthenticationCeremony:
    return AuthenticationCeremony(store, challenges, rp)


@pytest.fixture
def devices(store, challenges, rp) -> DeviceManager:
    return DeviceManager(store, challenges, rp, app_url=APP_URL)


# ---------------------------------------------------------------------------
# HTTP fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(store: CredentialStore, relying_party: RelyingParty):
    """Return an async context manager that replaces the real lifespan.

    Wires the test store and fake relying party into app.state so TestClient
    routes see an isolated DB and accept synthetic credentials.

    The maintenance task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        challenges = MemoryChallengeCache(ttl=300)
        app.state.challenges = challenges
        app.state.revoked_tokens = RevokedTokens()
        app.state.store = store
        app.state.registration = RegistrationCeremony(store, challenges, relying_party)
        app.state.authentication = AuthenticationCeremony(store, challenges, relying_party)
        app.state.devices = DeviceManager(store, challenges, relying_party, app_url=APP_URL)
        app.state.maintenance_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.maintenance_task.cancel()

    return test_lifespan


@pytest.fixture
def client(store: CredentialStore, rp: FakeRelyingParty) -> Generator[TestClient, None, None]:
    """TestClient over the real app, backed by a fresh empty store."""
    app.router.lifespan_context = _patch_lifespan(store, rp)
    with TestClient(app, raise_server_exceptions=True) as test_client:
        yield test_client


@pytest.fixture
def webauthn_client(store: CredentialStore) -> Generator[TestClient, None, None]:
    """TestClient whose ceremonies verify with the real py_webauthn library."""
    relying_party = RelyingParty(rp_id="localhost", rp_name="Bookshelf", origin=APP_URL)
    app.router.lifespan_context = _patch_lifespan(store, relying_party)
    with TestClient(app, raise_server_exceptions=True) as test_client:
        yield test_client
