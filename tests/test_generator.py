"""
tests/test_generator.py -- Unit tests for csrf/generator.py.

Covers:
  - Thousands of tokens, no duplicates
  - Output is URL-safe with no padding
  - Length tracks byte_length (>= 128 bits of entropy)
  - byte_length below 16 is InvalidConfiguration
"""

from __future__ import annotations

import re

import pytest

from core.errors import InvalidConfiguration
from core.models import Token
from csrf.generator import generate

_URLSAFE = re.compile(r"^[A-Za-z0-9_-]+$")


@pytest.mark.parametrize("byte_length", [16, 32, 64])
def test_no_duplicates_across_thousands_of_calls(byte_length: int) -> None:
    values = {generate(byte_length).value for _ in range(5000)}
    assert len(values) == 5000


def test_token_is_url_safe_without_padding() -> None:
    for _ in range(200):
        value = generate(32).value
        assert _URLSAFE.match(value), value
        assert "=" not in value


def test_encoded_length_matches_entropy() -> None:
    # base64url without padding: ceil(n * 4 / 3) characters
    assert len(generate(16).value) == 22
    assert len(generate(32).value) == 43


@pytest.mark.parametrize("byte_length", [0, 8, 15])
def test_short_byte_length_rejected(byte_length: int) -> None:
    with pytest.raises(InvalidConfiguration):
        generate(byte_length)


def test_token_repr_does_not_leak_value() -> None:
    token = generate(32)
    assert isinstance(token, Token)
    assert token.value not in repr(token)
    assert str(token) == token.value
