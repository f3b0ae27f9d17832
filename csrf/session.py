"""
csrf/session.py -- The session collaborator, seen from the CSRF side.

Sessions are owned by someone else. The CSRF layer only needs two things from
them: an opaque session id for the current request, and a callback when a
session ends so the session's token can be dropped. SessionProvider is that
boundary; nothing in csrf/ reaches for "the current session" any other way.

StarletteSessionProvider is the adapter used by the reference app: it keeps a
random session id inside Starlette's signed session cookie
(starlette.middleware.sessions.SessionMiddleware must be installed).
"""

from __future__ import annotations

import logging
import secrets
from abc import ABC, abstractmethod
from collections.abc import Callable

from starlette.requests import Request

logger = logging.getLogger("csrfguard.session")

SessionEndListener = Callable[[str], None]


class SessionProvider(ABC):
    def __init__(self) -> None:
        self._end_listeners: list[SessionEndListener] = []

    @abstractmethod
    def current_session_id(self, request: Request, create: bool = False) -> str | None:
        """Return the request's session id. With create=True, start a session if there is none."""

    @abstractmethod
    def _forget(self, request: Request) -> str | None:
        """Remove the session from the request's storage; return its id."""

    def on_session_end(self, listener: SessionEndListener) -> None:
        """Register listener(session_id), called whenever a session ends."""
        self._end_listeners.append(listener)

    def end_session(self, request: Request) -> str | None:
        session_id = self._forget(request)
        if session_id is not None:
            for listener in self._end_listeners:
                listener(session_id)
        return session_id


class StarletteSessionProvider(SessionProvider):
    """Session ids stored under one key in Starlette's signed session cookie."""

    def __init__(self, key: str = "_sid", id_bytes: int = 32) -> None:
        super().__init__()
        self.key = key
        self.id_bytes = id_bytes

    def current_session_id(self, request: Request, create: bool = False) -> str | None:
        session_id = request.session.get(self.key)
        if session_id is None and create:
            session_id = secrets.token_urlsafe(self.id_bytes)
            request.session[self.key] = session_id
            logger.debug("Started session")
        return session_id

    def _forget(self, request: Request) -> str | None:
        return request.session.pop(self.key, None)
