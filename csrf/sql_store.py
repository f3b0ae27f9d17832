"""
csrf/sql_store.py -- SQLAlchemy Core backend for the TokenStore.

For deployments with more than one worker process: every process points at
the same database, and one-time consumption is settled by the database rather
than by a process-local lock.

Pattern: Repository + Data Mapper (same as the in-memory store's interface).
_row_to_record is the mapper. Callers never touch SQL directly.

Atomicity:
  validate_and_consume() reads the row, decides with check_record() (constant-
  time comparison happens in Python, never in SQL against attacker input), and
  for single-use records finishes with a compare-and-swap:

      UPDATE csrf_tokens SET consumed = 1
      WHERE session_id = :sid AND token = :stored AND consumed = 0

  Only one caller's UPDATE can touch the row. The loser sees rowcount 0 and
  reports TOKEN_ALREADY_CONSUMED. The read and the CAS run in separate
  transactions so SQLite in WAL mode never has to upgrade a stale read
  snapshot to a write lock.

Failure semantics:
  Any SQLAlchemyError is re-raised as StoreUnavailable. The validator turns
  that into a rejection (fail closed).

Timestamps are stored as fixed-width UTC text so that lexicographic order in
SQL matches chronological order (purge_expired relies on this).

Security: all queries use bound parameters. No f-strings in SQL.

Usage:
    store = SQLTokenStore()                                  # SQLite file default
    store = SQLTokenStore("postgresql://user:pw@host/db")    # shared backend
    store.put("sess-1", token, policy)
    store.validate_and_consume("sess-1", candidate)
    store.close()
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import Column, Integer, MetaData, String, Table, create_engine, delete, event, or_, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.pool import StaticPool

from core.errors import StoreUnavailable
from core.models import Outcome, Policy, Token, TokenRecord
from csrf.store import Clock, TokenStore, check_record, utcnow

logger = logging.getLogger("csrfguard.store")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'csrfguard_tokens.db'}"

_TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_tokens = Table(
    "csrf_tokens",
    _metadata,
    Column("session_id", String(255), primary_key=True),
    Column("token", String(255), nullable=False),
    Column("issued_at", String(32), nullable=False),
    Column("expires_at", String(32)),  # NULL = no time-based expiry
    Column("single_use", Integer, nullable=False, server_default="0"),
    Column("consumed", Integer, nullable=False, server_default="0"),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL so token reads do not block behind a consuming write."""
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _to_text(ts: datetime | None) -> str | None:
    if ts is None:
        return None
    return ts.astimezone(timezone.utc).strftime(_TS_FORMAT)


def _from_text(raw: str | None) -> datetime | None:
    if raw is None:
        return None
    return datetime.strptime(raw, _TS_FORMAT).replace(tzinfo=timezone.utc)


def _row_to_record(row) -> TokenRecord:
    return TokenRecord(
        value=row.token,
        session_id=row.session_id,
        issued_at=_from_text(row.issued_at),
        expires_at=_from_text(row.expires_at),
        single_use=bool(row.single_use),
        consumed=bool(row.consumed),
    )


def _is_memory_sqlite(db_url: str) -> bool:
    return db_url in ("sqlite://", "sqlite:///:memory:")


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class SQLTokenStore(TokenStore):
    """TokenStore backed by one SQL table, keyed by session id."""

    def __init__(self, db_url: str = _DEFAULT_DB_URL, clock: Clock = utcnow) -> None:
        self._clock = clock
        engine_kwargs: dict = {}
        if db_url.startswith("sqlite"):
            engine_kwargs["connect_args"] = {"check_same_thread": False}
            if _is_memory_sqlite(db_url):
                # One shared connection, otherwise every worker thread would
                # open its own empty in-memory database.
                engine_kwargs["poolclass"] = StaticPool
        self.engine: Engine = create_engine(db_url, **engine_kwargs)
        if db_url.startswith("sqlite") and not _is_memory_sqlite(db_url):
            event.listen(self.engine, "connect", _set_wal_mode)
        with self._translate_errors("create schema"):
            _metadata.create_all(self.engine)

    @contextmanager
    def _translate_errors(self, operation: str) -> Iterator[None]:
        try:
            yield
        except SQLAlchemyError as exc:
            logger.error("Token store %s failed: %s", operation, exc.__class__.__name__)
            raise StoreUnavailable(f"token store {operation} failed") from exc

    def _select(self, session_id: str) -> TokenRecord | None:
        with self.engine.connect() as conn:
            row = conn.execute(select(_tokens).where(_tokens.c.session_id == session_id)).first()
        return _row_to_record(row) if row is not None else None

    # ------------------------------------------------------------------
    # TokenStore interface
    # ------------------------------------------------------------------

    def put(self, session_id: str, token: Token, policy: Policy) -> TokenRecord:
        now = self._clock()
        record = TokenRecord(
            value=token.value,
            session_id=session_id,
            issued_at=now,
            expires_at=policy.expires_at(now),
            single_use=policy.single_use,
        )
        values = {
            "token": record.value,
            "issued_at": _to_text(record.issued_at),
            "expires_at": _to_text(record.expires_at),
            "single_use": int(record.single_use),
            "consumed": 0,
        }
        replace_stmt = update(_tokens).where(_tokens.c.session_id == session_id).values(**values)
        with self._translate_errors("put"):
            try:
                with self.engine.begin() as conn:
                    result = conn.execute(replace_stmt)
                    if result.rowcount == 0:
                        conn.execute(_tokens.insert().values(session_id=session_id, **values))
            except IntegrityError:
                # A concurrent put inserted first; last writer wins.
                with self.engine.begin() as conn:
                    conn.execute(replace_stmt)
        return record

    def get(self, session_id: str) -> TokenRecord | None:
        with self._translate_errors("get"):
            record = self._select(session_id)
        if record is not None and record.is_expired(self._clock()):
            return None
        return record

    def validate_and_consume(self, session_id: str, candidate: str) -> Outcome:
        with self._translate_errors("validate"):
            record = self._select(session_id)
            outcome = check_record(record, candidate, self._clock())
            if outcome is not Outcome.VALID or not record.single_use:
                return outcome

            with self.engine.begin() as conn:
                result = conn.execute(
                    update(_tokens)
                    .where(
                        _tokens.c.session_id == session_id,
                        _tokens.c.token == record.value,
                        _tokens.c.consumed == 0,
                    )
                    .values(consumed=1)
                )
            if result.rowcount == 1:
                return Outcome.VALID

            # Lost the CAS: either a concurrent caller consumed this token or
            # the record was rotated away between the read and the update.
            current = self._select(session_id)
        if current is not None and current.value == record.value:
            return Outcome.TOKEN_ALREADY_CONSUMED
        return Outcome.TOKEN_MISMATCH

    def invalidate(self, session_id: str) -> None:
        with self._translate_errors("invalidate"):
            with self.engine.begin() as conn:
                conn.execute(delete(_tokens).where(_tokens.c.session_id == session_id))

    def purge_expired(self) -> int:
        now = _to_text(self._clock())
        with self._translate_errors("purge"):
            with self.engine.begin() as conn:
                result = conn.execute(
                    delete(_tokens).where(
                        or_(
                            _tokens.c.consumed == 1,
                            (_tokens.c.expires_at.is_not(None)) & (_tokens.c.expires_at < now),
                        )
                    )
                )
        removed = result.rowcount or 0
        if removed:
            logger.info("Purged %d inactive CSRF token record(s)", removed)
        return removed

    def close(self) -> None:
        self.engine.dispose()
