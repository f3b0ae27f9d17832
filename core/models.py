"""
core/models.py -- Domain dataclasses and enums for CSRF tokens.

Pattern: Data class. Stores own persistence, the validator owns decisions;
these types only carry shape plus the two time checks every layer needs.

Policy is the one exception to "zero logic": it validates itself on
construction so an unusable policy can never exist at runtime.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from core.errors import InvalidConfiguration

# 16 bytes == 128 bits, the accepted floor for unguessable tokens.
MIN_BYTE_LENGTH = 16

SAFE_METHODS: frozenset[str] = frozenset({"GET", "HEAD", "OPTIONS", "TRACE"})


class Mode(str, Enum):
    ONE_TIME = "one_time"
    MULTI_USE = "multi_use"


class Transport(str, Enum):
    FIELD = "field"
    HEADER = "header"
    DOUBLE_SUBMIT_COOKIE = "double_submit_cookie"


class Outcome(str, Enum):
    """Result of validating one candidate token. Only VALID lets a request through."""

    VALID = "valid"
    MISSING_TOKEN = "missing_token"
    TOKEN_MISMATCH = "token_mismatch"
    TOKEN_EXPIRED = "token_expired"
    TOKEN_ALREADY_CONSUMED = "token_already_consumed"
    STORE_UNAVAILABLE = "store_unavailable"


@dataclass(frozen=True)
class Token:
    value: str

    def __str__(self) -> str:
        return self.value

    def __repr__(self) -> str:
        # Keep token values out of logs and tracebacks.
        return f"Token(<{len(self.value)} chars>)"


@dataclass(frozen=True)
class Policy:
    """Deployment-wide token policy. Immutable once built.

    ttl=None means tokens never expire on their own; they still die on
    session end, rotation, or (one-time mode) first use.
    """

    byte_length: int = 32
    ttl: timedelta | None = timedelta(hours=1)
    mode: Mode = Mode.MULTI_USE
    transport: Transport = Transport.FIELD

    def __post_init__(self) -> None:
        if self.byte_length < MIN_BYTE_LENGTH:
            raise InvalidConfiguration(
                f"CSRF token byte length must be at least {MIN_BYTE_LENGTH}, got {self.byte_length}."
            )
        if self.ttl is not None and self.ttl <= timedelta(0):
            raise InvalidConfiguration("CSRF token ttl must be positive or None.")
        if not isinstance(self.mode, Mode):
            raise InvalidConfiguration(f"Unknown CSRF mode: {self.mode!r}")
        if not isinstance(self.transport, Transport):
            raise InvalidConfiguration(f"Unknown CSRF transport: {self.transport!r}")

    @property
    def single_use(self) -> bool:
        return self.mode is Mode.ONE_TIME

    def expires_at(self, issued_at: datetime) -> datetime | None:
        return issued_at + self.ttl if self.ttl is not None else None


@dataclass
class TokenRecord:
    """One session's active token, as held by a TokenStore.

    session_id is a reference to a session owned by the session manager;
    the record never outlives its session (invalidate() on session end).
    """

    value: str
    session_id: str
    issued_at: datetime
    expires_at: datetime | None = None
    single_use: bool = False
    consumed: bool = False

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and now > self.expires_at

    def is_active(self, now: datetime) -> bool:
        return not self.consumed and not self.is_expired(now)

    def __repr__(self) -> str:
        return (
            f"TokenRecord(session_id={self.session_id!r}, issued_at={self.issued_at.isoformat()}, "
            f"expires_at={self.expires_at.isoformat() if self.expires_at else None}, "
            f"single_use={self.single_use}, consumed={self.consumed})"
        )
