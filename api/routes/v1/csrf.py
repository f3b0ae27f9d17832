"""
api/routes/v1/csrf.py -- Token and session endpoints for API clients.

CSRF checks themselves happen in CSRFMiddleware before any of these handlers
run. By the time a POST handler executes, its token has been validated (and,
under the one-time policy, a replacement issued onto request.state).

Routes:
  GET  /csrf/token       -- current token for header-mode / SPA clients
  POST /echo             -- a protected mutation; echoes the message back
  POST /session/logout   -- end the session; its token is invalidated
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Form, HTTPException, Request

from api.models import CSRFTokenResponse, EchoResponse, LogoutResponse
from csrf.middleware import CSRFProtect
from csrf.session import SessionProvider
from csrf.transport import CONTEXT_KEY

logger = logging.getLogger("csrfguard.api")

router = APIRouter()


@router.get("/csrf/token", response_model=CSRFTokenResponse)
async def get_csrf_token(request: Request) -> CSRFTokenResponse:
    """Return the session's active token.

    The middleware has already ensured one exists and placed it on
    request.state. If the store was down at that moment there is no token to
    hand out, so report 503 rather than an empty string.
    """
    protect: CSRFProtect = request.app.state.csrf
    token = getattr(request.state, CONTEXT_KEY, None)
    if token is None:
        raise HTTPException(
            status_code=503,
            detail={"code": "store_unavailable", "message": "CSRF token store is unavailable."},
        )
    ttl = protect.policy.ttl
    return CSRFTokenResponse(
        token=token,
        header_name=protect.binder.header_name,
        field_name=protect.binder.field_name,
        expires_in=int(ttl.total_seconds()) if ttl is not None else None,
        single_use=protect.policy.single_use,
    )


@router.post("/echo", response_model=EchoResponse)
async def echo(message: str = Form(..., min_length=1, max_length=1000)) -> EchoResponse:
    """Protected mutation used by clients to confirm their token round trip.

    Takes a form body so it works under every transport, including the
    embedded-field one where the token travels in the same form.
    """
    return EchoResponse(message=message.strip())


@router.post("/session/logout", response_model=LogoutResponse)
async def logout(request: Request) -> LogoutResponse:
    """End the session. The session-end hook drops its CSRF token."""
    sessions: SessionProvider = request.app.state.sessions
    ended = sessions.end_session(request) is not None
    if ended:
        logger.info("Session ended")
    return LogoutResponse(ended=ended)
