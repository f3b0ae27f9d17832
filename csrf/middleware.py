"""
csrf/middleware.py -- Request lifecycle orchestration.

CSRFProtect ties the pieces together and is the single composition point:

    protect = CSRFProtect(store, policy, sessions)
    routes = [Route("/transfer", protect.wrap(transfer), methods=["GET", "POST"])]

or app-wide through CSRFMiddleware (a Starlette BaseHTTPMiddleware that runs
the same dispatch() for every request).

Safe methods (GET, HEAD, OPTIONS, TRACE):
  ensure the session has an active token (issue one if it has none, or its
  token expired or was consumed), expose it on request.state.csrf_token, run
  the handler, embed the token in the response.

Mutating methods:
  extract the candidate, validate it against the session's record. Anything
  but VALID is a 403 with a generic body -- the specific outcome goes to the
  log only, so a client cannot tell "wrong session" from "expired" from
  "replayed". On VALID under the one-time policy a fresh token is issued
  before the handler runs, so the handler can render it and the response
  carries it.

Store calls go through run_in_threadpool: a backend round trip may block, the
event loop must not. No lock is held while extracting or embedding.

Known limitation: a one-time token consumed by a request that is then
cancelled before the handler finishes stays consumed. The client fetches a
fresh token with a new safe request.
"""

from __future__ import annotations

import functools
import inspect
import logging
from collections.abc import Awaitable, Callable, Iterable

from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.types import ASGIApp

from core.errors import StoreUnavailable
from core.models import SAFE_METHODS, Outcome, Policy, Token
from csrf.generator import generate
from csrf.session import SessionProvider
from csrf.store import TokenStore
from csrf.transport import TransportBinder
from csrf.validator import Validator

logger = logging.getLogger("csrfguard.middleware")

Endpoint = Callable[[Request], Awaitable[Response]]

# Same envelope as the API's ErrorResponse, built here so csrf/ stays
# independent of api/.
_REJECTION_BODY = {"error": {"code": "csrf_failed", "message": "CSRF validation failed."}}


class CSRFProtect:
    """Issue, embed, extract and validate CSRF tokens around a handler."""

    def __init__(
        self,
        store: TokenStore,
        policy: Policy,
        sessions: SessionProvider,
        binder: TransportBinder | None = None,
        generator: Callable[[int], Token] = generate,
        exempt_paths: Iterable[str] = (),
    ) -> None:
        self.store = store
        self.policy = policy
        self.sessions = sessions
        self.binder = binder or TransportBinder(policy)
        self.generator = generator
        self.validator = Validator(store)
        self.exempt_paths = tuple(p.rstrip("/") or "/" for p in exempt_paths)
        sessions.on_session_end(self.on_session_end)

    # ------------------------------------------------------------------
    # Token lifecycle
    # ------------------------------------------------------------------

    def issue(self, session_id: str) -> Token:
        """Generate and store a new token for session_id, replacing the old one."""
        token = self.generator(self.policy.byte_length)
        self.store.put(session_id, token, self.policy)
        return token

    def ensure_token(self, session_id: str) -> Token:
        """Return the session's active token, issuing one if there is none."""
        record = self.store.get(session_id)
        if record is not None and not record.consumed:
            return Token(record.value)
        return self.issue(session_id)

    def rotate(self, session_id: str) -> Token:
        """Replace the session's token, e.g. right after login."""
        logger.info("Rotating CSRF token")
        return self.issue(session_id)

    def on_session_end(self, session_id: str) -> None:
        self.store.invalidate(session_id)

    # ------------------------------------------------------------------
    # Request handling
    # ------------------------------------------------------------------

    def is_exempt(self, path: str) -> bool:
        for prefix in self.exempt_paths:
            if prefix == "/" or path == prefix or path.startswith(prefix + "/"):
                return True
        return False

    async def dispatch(self, request: Request, call_next: Endpoint) -> Response:
        if self.is_exempt(request.url.path):
            return await call_next(request)
        if request.method in SAFE_METHODS:
            return await self._handle_safe(request, call_next)
        return await self._handle_mutating(request, call_next)

    async def _handle_safe(self, request: Request, call_next: Endpoint) -> Response:
        session_id = self.sessions.current_session_id(request, create=True)
        try:
            token = await run_in_threadpool(self.ensure_token, session_id)
        except StoreUnavailable:
            # Reads still work; the next mutating request will be rejected.
            logger.error("Could not issue CSRF token for %s %s", request.method, request.url.path)
            return await call_next(request)
        self.binder.expose(request, token)
        response = await call_next(request)
        self.binder.embed(response, token)
        return response

    async def _handle_mutating(self, request: Request, call_next: Endpoint) -> Response:
        session_id = self.sessions.current_session_id(request)
        candidate = await self.binder.extract(request)
        if isinstance(candidate, Outcome):
            # Rejected by the transport; the validator never sees it.
            outcome = candidate
            logger.warning("CSRF validation failed: %s", outcome.value)
        else:
            outcome = await run_in_threadpool(self.validator.validate, session_id, candidate)

        if outcome is not Outcome.VALID:
            logger.info("CSRF rejected %s %s", request.method, request.url.path)
            return JSONResponse(status_code=403, content=_REJECTION_BODY)

        next_token = None
        if self.policy.single_use:
            try:
                next_token = await run_in_threadpool(self.issue, session_id)
            except StoreUnavailable:
                logger.error("Could not re-issue one-time CSRF token after %s %s", request.method, request.url.path)
            else:
                self.binder.expose(request, next_token)

        response = await call_next(request)
        if next_token is not None:
            self.binder.embed(response, next_token)
        return response

    # ------------------------------------------------------------------
    # Composition
    # ------------------------------------------------------------------

    def wrap(self, handler: Callable[[Request], Response | Awaitable[Response]]) -> Endpoint:
        """Return handler guarded by CSRF protection. Sync handlers run in the threadpool."""
        if inspect.iscoroutinefunction(handler):
            target = handler
        else:

            async def target(request: Request) -> Response:
                return await run_in_threadpool(handler, request)

        @functools.wraps(handler)
        async def protected(request: Request) -> Response:
            return await self.dispatch(request, target)

        return protected


class CSRFMiddleware(BaseHTTPMiddleware):
    """App-wide CSRF protection.

    The CSRFProtect instance may be passed directly or, when it is built in
    the app's lifespan, looked up on app.state.csrf at request time.
    SessionMiddleware must wrap this middleware (be added after it).
    """

    def __init__(self, app: ASGIApp, protector: CSRFProtect | None = None) -> None:
        super().__init__(app)
        self.protector = protector

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        protector = self.protector or request.app.state.csrf
        return await protector.dispatch(request, call_next)
