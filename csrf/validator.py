"""
csrf/validator.py -- Turn a candidate token into a typed Outcome.

Order of checks:
  1. no candidate                        -> MISSING_TOKEN
  2. no session id                       -> TOKEN_MISMATCH (nothing it could match)
  3. store.validate_and_consume()        -> expiry, constant-time compare,
                                            consumed check, one-time consumption
  4. backend unreachable                 -> STORE_UNAVAILABLE (fail closed)

Per-request failures are values, not exceptions. The middleware logs the
specific kind for operators and never puts it in a response body.

Record state machine, as the store enforces it:
  Issued -> Active -> Consumed | Expired | Revoked
Consumed, Expired and Revoked are terminal.
"""

from __future__ import annotations

import logging

from core.errors import StoreUnavailable
from core.models import Outcome
from csrf.store import TokenStore

logger = logging.getLogger("csrfguard.validator")


class Validator:
    def __init__(self, store: TokenStore) -> None:
        self.store = store

    def validate(self, session_id: str | None, candidate: str | None) -> Outcome:
        if not candidate:
            outcome = Outcome.MISSING_TOKEN
        elif not session_id:
            outcome = Outcome.TOKEN_MISMATCH
        else:
            try:
                outcome = self.store.validate_and_consume(session_id, candidate)
            except StoreUnavailable:
                logger.error("Token store unavailable; rejecting request (fail closed)")
                outcome = Outcome.STORE_UNAVAILABLE

        if outcome is not Outcome.VALID:
            logger.warning("CSRF validation failed: %s (session=%s)", outcome.value, _short(session_id))
        return outcome


def _short(session_id: str | None) -> str:
    """Enough of a session id to correlate log lines without logging the whole id."""
    if not session_id:
        return "-"
    return session_id[:8] + "..." if len(session_id) > 8 else session_id
