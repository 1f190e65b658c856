"""
tests/conftest.py -- Shared test fixtures for VaultPass.

This module provides:
  - FakeClock: real "now" plus a movable offset (advance())
  - RecordingNotifier: captures outbound mail instead of sending it
  - make_service(): wires AuthService over in-memory stores with an inline dispatcher
  - service / clock / notifier / device fixtures for core tests
  - file_db_url + run_concurrently(): threaded races over a file-backed database
  - api_client: TestClient with admin JWT for API integration tests

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
for the API client because TestClient runs route handlers in a thread pool.
Plain :memory: DBs are per-connection and would present a blank schema to
each worker thread. The named URI format
(file:name?mode=memory&cache=shared&uri=true) shares one in-memory instance
across all connections in the same process.

The clock starts at real time; tests move it with clock.advance(). Token
expiry is checked against this clock, not the wall clock.

The environment must be set before any project import so get_settings()
auto-generates the signing keys in dev mode, hashes cheaply, and does not
rate-limit the test client.
"""

from __future__ import annotations

import asyncio
import os
import threading
from collections.abc import Generator
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Optional

# CRITICAL: Set these before any auth/core import (get_settings() is cached).
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")
os.environ.setdefault("API_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from audit.store import SecurityEventLog
from auth.service import AuthService
from auth.store import UserStore
from core.background import TaskDispatcher
from core.clock import utcnow
from core.config import get_settings
from risk.engine import RiskEngine
from sessions.fingerprint import parse_device_info
from sessions.models import DeviceInfo
from sessions.store import SessionRegistry

STRONG_PASSWORD = "Str0ng!Passw0rd"
OTHER_STRONG_PASSWORD = "An0ther#Secret99"

CHROME_UA = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0 Safari/537.36"
FIREFOX_UA = "Mozilla/5.0 (X11; Linux x86_64; rv:121.0) Gecko/20100101 Firefox/121.0"
IPHONE_UA = "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15 Version/17.0 Mobile Safari/604.1"


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable clock: utcnow() shifted by an adjustable offset."""

    def __init__(self) -> None:
        self.offset = timedelta(0)

    def __call__(self):
        return utcnow() + self.offset

    def advance(self, **kwargs) -> None:
        self.offset += timedelta(**kwargs)


class RecordingNotifier:
    """Notifier that records every message as (kind, email, payload)."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, Optional[str]]] = []

    def send_verification(self, email: str, token: str, name: Optional[str] = None) -> None:
        self.sent.append(("verification", email, token))

    def send_password_reset(self, email: str, token: str, name: Optional[str] = None) -> None:
        self.sent.append(("password_reset", email, token))

    def send_password_changed(self, email: str, name: Optional[str] = None) -> None:
        self.sent.append(("password_changed", email, None))

    def send_security_alert(self, email: str, title: str, body: str, ip: str, name: Optional[str] = None) -> None:
        self.sent.append(("alert", email, title))

    def of_kind(self, kind: str) -> list[tuple[str, str, Optional[str]]]:
        return [m for m in self.sent if m[0] == kind]

    def last_token(self, kind: str) -> str:
        return self.of_kind(kind)[-1][2]


# ---------------------------------------------------------------------------
# Wiring helpers
# ---------------------------------------------------------------------------


def make_service(
    db_url: str,
    clock: FakeClock,
    notifier: RecordingNotifier,
    resolver=None,
) -> AuthService:
    """AuthService over fresh stores at db_url with an inline dispatcher."""
    dispatcher = TaskDispatcher(inline=True)
    users = UserStore(db_url, clock=clock)
    sessions = SessionRegistry(db_url, clock=clock)
    events = SecurityEventLog(db_url, resolver=resolver, dispatcher=dispatcher, clock=clock)
    risk = RiskEngine(events, resolver=resolver, clock=clock)
    return AuthService.from_settings(
        get_settings(),
        users=users,
        sessions=sessions,
        events=events,
        risk=risk,
        notifier=notifier,
        dispatcher=dispatcher,
        clock=clock,
    )


def close_service(service: AuthService) -> None:
    service.users.close()
    service.sessions.close()
    service.events.close()


def run_concurrently(fn, workers: int) -> list:
    """Call fn() from `workers` threads released together by a barrier.

    Returns each call's result, or the exception it raised, in submission order.
    """
    barrier = threading.Barrier(workers)

    def _call():
        barrier.wait()
        try:
            return fn()
        except Exception as exc:
            return exc

    with ThreadPoolExecutor(max_workers=workers) as pool:
        futures = [pool.submit(_call) for _ in range(workers)]
        return [f.result() for f in futures]


# ---------------------------------------------------------------------------
# Core fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def device() -> DeviceInfo:
    return parse_device_info(CHROME_UA, "203.0.113.10")


@pytest.fixture
def other_device() -> DeviceInfo:
    return parse_device_info(FIREFOX_UA, "198.51.100.77")


@pytest.fixture
def file_db_url(tmp_path) -> str:
    """File-backed SQLite URL. Every thread gets its own connection to the same data."""
    return f"sqlite:///{tmp_path / 'vaultpass.db'}"


@pytest.fixture
def user_store(clock: FakeClock) -> Generator[UserStore, None, None]:
    store = UserStore("sqlite://", clock=clock)
    yield store
    store.close()


@pytest.fixture
def registry(clock: FakeClock) -> Generator[SessionRegistry, None, None]:
    store = SessionRegistry("sqlite://", clock=clock)
    yield store
    store.close()


@pytest.fixture
def event_log(clock: FakeClock) -> Generator[SecurityEventLog, None, None]:
    log = SecurityEventLog("sqlite://", clock=clock)
    yield log
    log.close()


@pytest.fixture
def service(clock: FakeClock, notifier: RecordingNotifier) -> Generator[AuthService, None, None]:
    svc = make_service("sqlite://", clock, notifier)
    yield svc
    close_service(svc)


@pytest.fixture
def verified_user(service: AuthService):
    """A verified account with STRONG_PASSWORD, created through the operator path."""
    return service.provision_user("alice@example.com", STRONG_PASSWORD)


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(service: AuthService):
    """Return an async context manager that replaces the real lifespan.

    Wires the pre-built test service into app.state so TestClient routes see
    isolated in-memory stores rather than the production database. The
    sweep_task is a long-sleeping coroutine (a real asyncio.Task is required;
    MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.auth_service = service
        app.state.user_store = service.users
        app.state.session_registry = service.sessions
        app.state.event_log = service.events
        app.state.dispatcher = service.dispatcher
        app.state.sweep_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.sweep_task.cancel()

    return test_lifespan


@pytest.fixture(scope="module")
def api_client(request) -> Generator[tuple[TestClient, str, int], None, None]:
    """Yield (client, token, user_id) for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so tests
    hit real route handlers but use an isolated shared-memory database per
    test module. An admin account is provisioned before the client starts and
    an access token is issued for it. The service (and its RecordingNotifier)
    is reachable as client.app.state.auth_service.
    """
    name = request.module.__name__.rsplit(".", 1)[-1]
    db_url = f"sqlite:///file:vp_{name}?mode=memory&cache=shared&uri=true"
    service = make_service(db_url, FakeClock(), RecordingNotifier())

    admin = service.provision_user("admin@example.com", STRONG_PASSWORD, role="admin")
    token = service.tokens.issue_pair(admin).access_token

    app.router.lifespan_context = _patch_lifespan(service)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, token, admin.id

    close_service(service)
