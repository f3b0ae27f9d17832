"""
tests/test_transport.py -- Unit tests for TransportBinder.

Covers:
  - Round trip: extract(request built from embed(response, T)) == T for the
    embedded-field, header, and double-submit-cookie transports
  - Missing candidates -> MISSING_TOKEN
  - Double-submit: unequal cookie/header -> TOKEN_MISMATCH
  - Cookie attributes: not HttpOnly, SameSite, Secure, Max-Age
  - Hidden field escaping; unusable SameSite rejected at construction
"""

from __future__ import annotations

import asyncio
import re
from datetime import timedelta
from urllib.parse import urlencode

import pytest
from starlette.responses import Response

from conftest import make_request
from core.errors import InvalidConfiguration
from core.models import Outcome, Policy, Token, Transport
from csrf.generator import generate
from csrf.transport import TransportBinder


def _binder(transport: Transport, **kwargs) -> TransportBinder:
    return TransportBinder(Policy(transport=transport, ttl=timedelta(minutes=30)), **kwargs)


def _extract(binder: TransportBinder, request) -> str | Outcome:
    return asyncio.run(binder.extract(request))


def _set_cookie_headers(response: Response) -> list[str]:
    return [v.decode("latin-1") for k, v in response.raw_headers if k == b"set-cookie"]


class TestRoundTrip:
    def test_field_round_trip(self) -> None:
        binder = _binder(Transport.FIELD)
        token = generate(32)
        response = Response()
        binder.embed(response, token)
        # Field transport writes nothing onto the response itself.
        assert "x-csrf-token" not in response.headers
        assert _set_cookie_headers(response) == []

        markup = binder.hidden_field(token)
        value = re.search(r'value="([^"]*)"', markup).group(1)
        body = urlencode({"csrf_token": value, "amount": "10"}).encode()
        request = make_request(headers={"content-type": "application/x-www-form-urlencoded"}, body=body)
        assert _extract(binder, request) == token.value

    def test_header_round_trip(self) -> None:
        binder = _binder(Transport.HEADER)
        token = generate(32)
        response = Response()
        binder.embed(response, token)
        echoed = response.headers["X-CSRF-Token"]
        request = make_request(headers={"X-CSRF-Token": echoed})
        assert _extract(binder, request) == token.value

    def test_double_submit_round_trip(self) -> None:
        binder = _binder(Transport.DOUBLE_SUBMIT_COOKIE)
        token = generate(32)
        response = Response()
        binder.embed(response, token)
        cookie_header = _set_cookie_headers(response)[0]
        name, value = cookie_header.split(";", 1)[0].split("=", 1)
        assert name == "csrf_token"
        # Client script reads the cookie and mirrors it into the header.
        request = make_request(headers={"X-CSRF-Token": value}, cookies={name: value})
        assert _extract(binder, request) == token.value

    def test_field_from_multipart_body(self) -> None:
        binder = _binder(Transport.FIELD)
        boundary = "xyzBOUNDARY"
        body = (
            f"--{boundary}\r\n"
            'Content-Disposition: form-data; name="csrf_token"\r\n\r\n'
            "tok-123\r\n"
            f"--{boundary}--\r\n"
        ).encode()
        request = make_request(headers={"content-type": f"multipart/form-data; boundary={boundary}"}, body=body)
        assert _extract(binder, request) == "tok-123"

    def test_field_media_type_is_case_insensitive(self) -> None:
        binder = _binder(Transport.FIELD)
        request = make_request(
            headers={"content-type": "Application/X-WWW-Form-Urlencoded; Charset=UTF-8"},
            body=b"csrf_token=tok-456&amount=10",
        )
        assert _extract(binder, request) == "tok-456"


class TestMissing:
    def test_field_missing_from_form(self) -> None:
        binder = _binder(Transport.FIELD)
        request = make_request(headers={"content-type": "application/x-www-form-urlencoded"}, body=b"amount=10")
        assert _extract(binder, request) is Outcome.MISSING_TOKEN

    def test_field_ignores_json_body(self) -> None:
        binder = _binder(Transport.FIELD)
        request = make_request(headers={"content-type": "application/json"}, body=b'{"csrf_token": "x"}')
        assert _extract(binder, request) is Outcome.MISSING_TOKEN

    def test_empty_header_is_missing(self) -> None:
        binder = _binder(Transport.HEADER)
        assert _extract(binder, make_request(headers={"X-CSRF-Token": ""})) is Outcome.MISSING_TOKEN

    @pytest.mark.parametrize(
        "headers,cookies",
        [({"X-CSRF-Token": "abc"}, None), ({}, {"csrf_token": "abc"}), ({}, None)],
    )
    def test_double_submit_requires_both(self, headers, cookies) -> None:
        binder = _binder(Transport.DOUBLE_SUBMIT_COOKIE)
        assert _extract(binder, make_request(headers=headers, cookies=cookies)) is Outcome.MISSING_TOKEN


class TestDoubleSubmitFilter:
    def test_unequal_pair_is_mismatch(self) -> None:
        binder = _binder(Transport.DOUBLE_SUBMIT_COOKIE)
        request = make_request(headers={"X-CSRF-Token": "xyz"}, cookies={"csrf_token": "abc"})
        assert _extract(binder, request) is Outcome.TOKEN_MISMATCH

    def test_cookie_attributes(self) -> None:
        binder = _binder(Transport.DOUBLE_SUBMIT_COOKIE, cookie_secure=True, cookie_samesite="Strict")
        response = Response()
        binder.embed(response, Token("abc"))
        cookie = _set_cookie_headers(response)[0].lower()
        assert "samesite=strict" in cookie
        assert "secure" in cookie
        assert "httponly" not in cookie
        assert "max-age=1800" in cookie
        assert "path=/" in cookie


class TestBinderMisc:
    def test_hidden_field_escapes_value(self) -> None:
        markup = _binder(Transport.FIELD).hidden_field('"><script>')
        assert "<script>" not in markup
        assert "&quot;&gt;&lt;script&gt;" in markup

    def test_samesite_none_rejected(self) -> None:
        with pytest.raises(InvalidConfiguration):
            _binder(Transport.DOUBLE_SUBMIT_COOKIE, cookie_samesite="none")

    def test_expose_sets_context_key(self) -> None:
        binder = _binder(Transport.HEADER)
        request = make_request(method="GET")
        binder.expose(request, Token("abc"))
        assert request.state.csrf_token == "abc"
