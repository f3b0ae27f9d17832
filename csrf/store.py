"""
csrf/store.py -- TokenStore interface and the in-memory backend.

Pattern: Repository. TokenStore is the only shared mutable resource in the
subsystem; the validator and middleware reach token records exclusively
through it. Nothing holds a module-level token map -- a store instance is
built at startup and injected.

The critical operation is validate_and_consume(). Lookup, expiry check,
comparison and (for single-use records) consumption happen as one step with
respect to other callers for the same session, so two concurrent requests
replaying one one-time token get exactly one VALID between them. A naive
get() followed by a separate write would let both through.

check_record() holds the decision order shared by every backend:
  1. no record            -> TOKEN_MISMATCH (fail closed)
  2. expired              -> TOKEN_EXPIRED
  3. value differs        -> TOKEN_MISMATCH   (hmac.compare_digest)
  4. already consumed     -> TOKEN_ALREADY_CONSUMED
  5. otherwise            -> VALID

Usage:
    store = MemoryTokenStore()
    store.put("sess-1", generate(32), policy)
    outcome = store.validate_and_consume("sess-1", candidate)
    store.invalidate("sess-1")
"""

from __future__ import annotations

import hmac
import logging
import threading
import zlib
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime, timezone

from core.models import Outcome, Policy, Token, TokenRecord

logger = logging.getLogger("csrfguard.store")

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def constant_time_equals(a: str, b: str) -> bool:
    """Compare two token strings without leaking where they differ."""
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


def check_record(record: TokenRecord | None, candidate: str, now: datetime) -> Outcome:
    """Apply the validation order to one record. Pure; callers hold the lock."""
    if record is None:
        return Outcome.TOKEN_MISMATCH
    if record.is_expired(now):
        return Outcome.TOKEN_EXPIRED
    if not constant_time_equals(record.value, candidate):
        return Outcome.TOKEN_MISMATCH
    if record.consumed:
        return Outcome.TOKEN_ALREADY_CONSUMED
    return Outcome.VALID


class TokenStore(ABC):
    """Backend interface: session id -> at most one active TokenRecord."""

    @abstractmethod
    def put(self, session_id: str, token: Token, policy: Policy) -> TokenRecord:
        """Store token for session_id, replacing any existing record."""

    @abstractmethod
    def get(self, session_id: str) -> TokenRecord | None:
        """Return the session's record, or None if there is none."""

    @abstractmethod
    def validate_and_consume(self, session_id: str, candidate: str) -> Outcome:
        """Check candidate against the session's record atomically.

        Single-use records are marked consumed in the same step that returns
        VALID. Raises StoreUnavailable if the backend cannot be reached.
        """

    @abstractmethod
    def invalidate(self, session_id: str) -> None:
        """Drop the session's record. No-op if there is none."""

    @abstractmethod
    def purge_expired(self) -> int:
        """Delete expired and consumed records. Returns the number removed."""

    def close(self) -> None:
        return None


class MemoryTokenStore(TokenStore):
    """Single-process store: a dict guarded by striped locks.

    Sessions hash onto a fixed set of locks, so the lock for a session always
    exists and never has to be created or torn down alongside its record.
    Different sessions rarely contend; one session always serializes.
    """

    def __init__(self, clock: Clock = utcnow, stripes: int = 64) -> None:
        self._clock = clock
        self._records: dict[str, TokenRecord] = {}
        self._locks = [threading.Lock() for _ in range(stripes)]

    def _lock_for(self, session_id: str) -> threading.Lock:
        return self._locks[zlib.crc32(session_id.encode("utf-8")) % len(self._locks)]

    def put(self, session_id: str, token: Token, policy: Policy) -> TokenRecord:
        now = self._clock()
        record = TokenRecord(
            value=token.value,
            session_id=session_id,
            issued_at=now,
            expires_at=policy.expires_at(now),
            single_use=policy.single_use,
        )
        with self._lock_for(session_id):
            self._records[session_id] = record
        return record

    def get(self, session_id: str) -> TokenRecord | None:
        with self._lock_for(session_id):
            record = self._records.get(session_id)
            if record is not None and record.is_expired(self._clock()):
                # Lazy expiry: an expired record is never handed out as current.
                del self._records[session_id]
                return None
            return replace(record) if record is not None else None

    def validate_and_consume(self, session_id: str, candidate: str) -> Outcome:
        with self._lock_for(session_id):
            record = self._records.get(session_id)
            outcome = check_record(record, candidate, self._clock())
            if outcome is Outcome.VALID and record.single_use:
                record.consumed = True
            return outcome

    def invalidate(self, session_id: str) -> None:
        with self._lock_for(session_id):
            self._records.pop(session_id, None)

    def purge_expired(self) -> int:
        removed = 0
        for session_id in list(self._records):
            with self._lock_for(session_id):
                record = self._records.get(session_id)
                if record is not None and not record.is_active(self._clock()):
                    del self._records[session_id]
                    removed += 1
        if removed:
            logger.info("Purged %d inactive CSRF token record(s)", removed)
        return removed

    def __len__(self) -> int:
        return len(self._records)
