"""
csrf/generator.py -- CSPRNG token values.

secrets.token_urlsafe(n) draws n bytes from the OS CSPRNG and encodes them as
base64url without padding, so the value is safe in URLs, headers, cookies and
HTML attributes as-is. 16 bytes (128 bits) is the floor; the default policy
uses 32.

Nothing here may be derived from timestamps, counters or user data.
"""

from __future__ import annotations

import secrets

from core.errors import InvalidConfiguration
from core.models import MIN_BYTE_LENGTH, Token


def generate(byte_length: int = 32) -> Token:
    """Return a fresh random token of byte_length bytes of entropy.

    Raises InvalidConfiguration if byte_length is below 16.
    """
    if byte_length < MIN_BYTE_LENGTH:
        raise InvalidConfiguration(f"CSRF token byte length must be at least {MIN_BYTE_LENGTH}, got {byte_length}.")
    return Token(secrets.token_urlsafe(byte_length))
