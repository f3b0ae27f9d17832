"""
tests/conftest.py -- Shared test fixtures for csrfguard.

This module provides:
  - FakeClock: settable clock injected into stores for expiry tests
  - SpyStore: MemoryTokenStore that counts validate_and_consume() calls
  - make_request(): a bare Starlette Request for transport unit tests
  - build_wrapped_app(): a minimal Starlette app whose endpoints go through
    CSRFProtect.wrap() -- the framework-independent composition point
  - api_client: TestClient for the full FastAPI app with a patched lifespan

The DEBUG env var must be set before any core/api import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

# CRITICAL: Set DEBUG before any core/api import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.sessions import SessionMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, PlainTextResponse
from starlette.routing import Route

from api.main import build_protector
from asgi import app
from core.config import get_settings
from core.models import Outcome
from csrf.middleware import CSRFProtect
from csrf.session import StarletteSessionProvider
from csrf.store import MemoryTokenStore

TEST_SECRET = "test-secret-key-for-session-cookies-0123456789"


class FakeClock:
    """Callable clock that only moves when a test says so."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> None:
        self.now += timedelta(**delta)


class SpyStore(MemoryTokenStore):
    """MemoryTokenStore that records every validate_and_consume() call."""

    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        self.validate_calls: list[tuple[str, str]] = []

    def validate_and_consume(self, session_id: str, candidate: str) -> Outcome:
        self.validate_calls.append((session_id, candidate))
        return super().validate_and_consume(session_id, candidate)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# ---------------------------------------------------------------------------
# Request / app builders
# ---------------------------------------------------------------------------


def make_request(
    method: str = "POST",
    headers: dict[str, str] | None = None,
    cookies: dict[str, str] | None = None,
    body: bytes = b"",
    path: str = "/",
) -> Request:
    """Build a Starlette Request without a server, for extract() tests."""
    raw_headers = [(k.lower().encode("latin-1"), v.encode("latin-1")) for k, v in (headers or {}).items()]
    if cookies:
        cookie_header = "; ".join(f"{k}={v}" for k, v in cookies.items())
        raw_headers.append((b"cookie", cookie_header.encode("latin-1")))
    scope = {
        "type": "http",
        "method": method,
        "path": path,
        "query_string": b"",
        "headers": raw_headers,
    }
    sent = False

    async def receive():
        nonlocal sent
        if sent:
            return {"type": "http.disconnect"}
        sent = True
        return {"type": "http.request", "body": body, "more_body": False}

    return Request(scope, receive)


def build_wrapped_app(protect: CSRFProtect, calls: list[str] | None = None) -> Starlette:
    """Starlette app with every endpoint guarded by protect.wrap().

    GET  /page          -- returns the current token as text
    POST /transfer      -- the business handler; appends to `calls`
    POST /logout        -- ends the session
    POST /hooks/inbound -- intended to be exempted by tests that need it
    """
    seen = calls if calls is not None else []

    async def page(request: Request) -> PlainTextResponse:
        return PlainTextResponse(getattr(request.state, "csrf_token", ""))

    async def transfer(request: Request) -> JSONResponse:
        seen.append("transfer")
        return JSONResponse({"ok": True, "next_token": getattr(request.state, "csrf_token", None)})

    def logout(request: Request) -> JSONResponse:
        ended = protect.sessions.end_session(request)
        return JSONResponse({"ended": ended is not None})

    async def inbound(request: Request) -> JSONResponse:
        seen.append("inbound")
        return JSONResponse({"ok": True})

    routes = [
        Route("/page", protect.wrap(page), methods=["GET"]),
        Route("/transfer", protect.wrap(transfer), methods=["POST"]),
        Route("/logout", protect.wrap(logout), methods=["POST"]),
        Route("/hooks/inbound", protect.wrap(inbound), methods=["POST"]),
    ]
    return Starlette(routes=routes, middleware=[Middleware(SessionMiddleware, secret_key=TEST_SECRET)])


# ---------------------------------------------------------------------------
# Full app fixture
# ---------------------------------------------------------------------------


def _patch_lifespan(store: MemoryTokenStore):
    """Return an async context manager that replaces the real lifespan.

    Wires a test-owned store into app.state so tests can inspect it. The
    sweep_task is a long-sleeping coroutine (a real asyncio.Task is required;
    MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.token_store = store
        app.state.sessions = StarletteSessionProvider()
        app.state.csrf = build_protector(get_settings(), store, app.state.sessions)
        app.state.sweep_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.sweep_task.cancel()

    return test_lifespan


@pytest.fixture
def api_client() -> Generator[tuple[TestClient, MemoryTokenStore], None, None]:
    """Yield (client, store) for integration tests against the full app.

    Function-scoped: each test starts with an empty store and a cookie jar
    without a session, so session state never leaks between tests.
    """
    store = MemoryTokenStore()
    app.router.lifespan_context = _patch_lifespan(store)
    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, store
