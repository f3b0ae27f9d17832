"""
api/main.py -- FastAPI application entry point for the csrfguard reference host.

Exposes the CSRF mechanism behind a small set of routes so it can be wired,
exercised and load-tested end to end. Any other ASGI app can reuse the same
pieces: build a CSRFProtect and either wrap() individual endpoints or install
CSRFMiddleware.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. log_requests      -- latency + status for every request
  2. SessionMiddleware -- signed cookie carrying the session id
  3. CSRFMiddleware    -- issue / validate tokens (needs the session)

Lifespan handles startup (policy, token store, session provider, sweep task)
and shutdown (cancel sweep task, close the store) symmetrically. A bad CSRF
policy raises InvalidConfiguration during startup and the server never
accepts a request.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool
from starlette.middleware.sessions import SessionMiddleware

from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.csrf import router as csrf_router
from core.config import Settings, get_settings
from core.errors import StoreUnavailable
from csrf.middleware import CSRFMiddleware, CSRFProtect
from csrf.session import SessionProvider, StarletteSessionProvider
from csrf.sql_store import SQLTokenStore
from csrf.store import MemoryTokenStore, TokenStore
from csrf.transport import TransportBinder

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("csrfguard.api")

_settings = get_settings()

# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


def build_store(settings: Settings) -> TokenStore:
    """In-memory for a single process; SQL when CSRF_STORE_URL is set."""
    if settings.csrf_store_url:
        return SQLTokenStore(settings.csrf_store_url)
    return MemoryTokenStore()


def build_protector(settings: Settings, store: TokenStore, sessions: SessionProvider) -> CSRFProtect:
    """Assemble CSRFProtect from settings. Raises InvalidConfiguration on a bad policy."""
    policy = settings.policy()
    binder = TransportBinder(
        policy,
        cookie_secure=settings.secure_cookies,
        cookie_samesite=settings.csrf_cookie_samesite,
    )
    return CSRFProtect(
        store,
        policy,
        sessions,
        binder=binder,
        exempt_paths=settings.csrf_exempt_paths,
    )


# ---------------------------------------------------------------------------
# Background sweep task
# ---------------------------------------------------------------------------


async def _sweep_loop(app: FastAPI, interval: int) -> None:
    """Purge expired and consumed token records every `interval` seconds.

    Best effort only: expiry is also enforced at validation time, so a missed
    sweep never lets a stale token through. A store outage is logged and the
    loop keeps going. CancelledError from task.cancel() during shutdown
    propagates out of asyncio.sleep and unwinds the coroutine cleanly.
    """
    while True:
        await asyncio.sleep(interval)
        try:
            await run_in_threadpool(app.state.token_store.purge_expired)
        except StoreUnavailable:
            logger.warning("Token sweep skipped -- store unavailable")


# ---------------------------------------------------------------------------
# Lifespan -- modern startup / shutdown pattern (replaces @app.on_event)
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order matters:
      1. Store first -- the protector and the sweep both reference it.
      2. Session provider and protector -- the protector subscribes to
         session-end events so logout drops the session's token.
      3. Sweep task last -- references app.state.token_store.
    """
    logger.info("csrfguard API starting up")
    settings = get_settings()
    app.state.token_store = build_store(settings)
    app.state.sessions = StarletteSessionProvider()
    app.state.csrf = build_protector(settings, app.state.token_store, app.state.sessions)
    policy = app.state.csrf.policy
    logger.info(
        "CSRF protection initialized (mode=%s, transport=%s, store=%s)",
        policy.mode.value,
        policy.transport.value,
        type(app.state.token_store).__name__,
    )
    app.state.sweep_task = asyncio.create_task(_sweep_loop(app, settings.csrf_sweep_interval_seconds))

    yield

    app.state.sweep_task.cancel()
    app.state.token_store.close()
    logger.info("csrfguard API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="csrfguard",
    description="Anti-CSRF token issuance and validation.",
    version=VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# add_middleware() prepends, so the last one registered is the outermost.
# CSRFMiddleware must sit inside SessionMiddleware: it reads the session id.
# ---------------------------------------------------------------------------

app.add_middleware(CSRFMiddleware)

app.add_middleware(
    SessionMiddleware,
    secret_key=_settings.secret_key,
    session_cookie="csrfguard_session",
    same_site="lax",
    https_only=_settings.secure_cookies,
)


# ---------------------------------------------------------------------------
# Request logging middleware
#
# @app.middleware("http") is registered after add_middleware() above, so it is
# the outermost layer and also times (and logs) requests CSRF rejected.
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(csrf_router, prefix="/api/v1", tags=["CSRF"])
# Web UI router is mounted by asgi.py, not here.


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema. CSRF
# rejections use it too (code "csrf_failed"), built inside csrf/middleware.py.
# ---------------------------------------------------------------------------


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Request validation failed.",
                detail=str(exc.errors()),
            )
        ).model_dump(),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    When detail is already a structured dict, use it directly as the error
    field rather than stringifying it -- str(dict) produces a Python repr,
    not JSON.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
        )
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
    )


@app.exception_handler(StoreUnavailable)
async def store_unavailable_handler(request: Request, exc: StoreUnavailable) -> JSONResponse:
    """A route touched the token store while it was down (e.g. logout)."""
    logger.error("Token store unavailable on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=503,
        content=ErrorResponse(
            error=ErrorDetail(
                code="store_unavailable",
                message="Service temporarily unavailable.",
            )
        ).model_dump(),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception goes to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(
                code="internal_error",
                message="An unexpected error occurred.",
            )
        ).model_dump(),
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. A GET, so CSRF never blocks it.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
async def health(request: Request) -> HealthResponse:
    """Return liveness, version, and whether the token store answers."""
    store: TokenStore = request.app.state.token_store
    try:
        await run_in_threadpool(store.get, "__health__")
        store_status = "ok"
    except StoreUnavailable:
        store_status = "error"
    return HealthResponse(
        status="healthy" if store_status == "ok" else "degraded",
        version=VERSION,
        components={"app": "ok", "token_store": store_status},
    )
