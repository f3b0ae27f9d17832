"""
csrf/transport.py -- Moving tokens in and out of HTTP messages.

One TransportBinder per deployment, chosen by Policy.transport:

  FIELD                 token rendered by the template layer as
                        <input type="hidden" name="csrf_token" value="...">
                        and read back from the urlencoded / multipart body.
  HEADER                token sent in the X-CSRF-Token response header (or
                        read from request.state by a <meta> tag) and expected
                        back in the X-CSRF-Token request header.
  DOUBLE_SUBMIT_COOKIE  token set as a non-HttpOnly cookie so client script
                        can mirror it into the X-CSRF-Token header. Both must
                        arrive and be equal before the store is consulted.
                        The value is then still checked against the session's
                        stored token, so a cookie planted from a sibling
                        sub-domain is not enough on its own.

Every binder also exposes the current token on request.state.csrf_token --
the context key the template layer reads.

embed() and extract() are pure transforms on the message. They never touch
the store and never take a lock.
"""

from __future__ import annotations

import html

from starlette.formparsers import MultiPartException
from starlette.requests import Request
from starlette.responses import Response

from core.errors import InvalidConfiguration
from core.models import Outcome, Policy, Token, Transport
from csrf.store import constant_time_equals

FIELD_NAME = "csrf_token"
HEADER_NAME = "X-CSRF-Token"
COOKIE_NAME = "csrf_token"
CONTEXT_KEY = "csrf_token"

_FORM_CONTENT_TYPES = ("application/x-www-form-urlencoded", "multipart/form-data")


class TransportBinder:
    """Embed tokens into responses and extract candidates from requests."""

    def __init__(
        self,
        policy: Policy,
        field_name: str = FIELD_NAME,
        header_name: str = HEADER_NAME,
        cookie_name: str = COOKIE_NAME,
        cookie_secure: bool = True,
        cookie_samesite: str = "lax",
        cookie_path: str = "/",
    ) -> None:
        samesite = cookie_samesite.lower()
        if samesite not in ("lax", "strict"):
            raise InvalidConfiguration("CSRF cookie SameSite must be 'lax' or 'strict'.")
        self.policy = policy
        self.field_name = field_name
        self.header_name = header_name
        self.cookie_name = cookie_name
        self.cookie_secure = cookie_secure
        self.cookie_samesite = samesite
        self.cookie_path = cookie_path

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    def expose(self, request: Request, token: Token) -> None:
        """Make the token available to handlers and templates for this request."""
        setattr(request.state, CONTEXT_KEY, token.value)

    def embed(self, response: Response, token: Token) -> None:
        """Write the token onto the response as the configured transport requires.

        FIELD writes nothing here: the hidden input is rendered by the template
        layer from the context key set by expose().
        """
        transport = self.policy.transport
        if transport is Transport.FIELD:
            return
        if transport is Transport.HEADER:
            response.headers[self.header_name] = token.value
        elif transport is Transport.DOUBLE_SUBMIT_COOKIE:
            ttl = self.policy.ttl
            response.set_cookie(
                self.cookie_name,
                value=token.value,
                max_age=int(ttl.total_seconds()) if ttl is not None else None,
                path=self.cookie_path,
                secure=self.cookie_secure,
                httponly=False,  # client script mirrors it into the header
                samesite=self.cookie_samesite,
            )
        else:
            raise InvalidConfiguration(f"Unknown CSRF transport: {transport!r}")

    def hidden_field(self, token: Token | str) -> str:
        """Return the hidden form input carrying token, attribute-escaped."""
        value = token.value if isinstance(token, Token) else token
        return (
            f'<input type="hidden" name="{html.escape(self.field_name, quote=True)}" '
            f'value="{html.escape(value, quote=True)}">'
        )

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    async def extract(self, request: Request) -> str | Outcome:
        """Return the candidate token carried by request, or the rejecting Outcome.

        MISSING_TOKEN when nothing usable was sent. In double-submit mode an
        unequal cookie/header pair is TOKEN_MISMATCH without a store lookup.
        """
        transport = self.policy.transport
        if transport is Transport.FIELD:
            candidate = await self._form_value(request)
        elif transport is Transport.HEADER:
            candidate = request.headers.get(self.header_name)
        elif transport is Transport.DOUBLE_SUBMIT_COOKIE:
            cookie_value = request.cookies.get(self.cookie_name)
            header_value = request.headers.get(self.header_name)
            if not cookie_value or not header_value:
                return Outcome.MISSING_TOKEN
            if not constant_time_equals(cookie_value, header_value):
                return Outcome.TOKEN_MISMATCH
            candidate = header_value
        else:
            raise InvalidConfiguration(f"Unknown CSRF transport: {transport!r}")
        return candidate if candidate else Outcome.MISSING_TOKEN

    async def _form_value(self, request: Request) -> str | None:
        media_type = request.headers.get("content-type", "").split(";", 1)[0].strip().lower()
        if media_type not in _FORM_CONTENT_TYPES:
            return None
        # Read the raw body first so it stays cached on the request and the
        # wrapped handler can still parse the same form.
        await request.body()
        try:
            form = await request.form()
        except MultiPartException:
            return None
        value = form.get(self.field_name)
        return value if isinstance(value, str) else None
