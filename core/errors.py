"""
core/errors.py -- Exception taxonomy for csrfguard.

Only two conditions are exceptions. Everything that can go wrong with a single
request (missing token, mismatch, expiry, replay) is an Outcome value, not an
exception -- see core/models.py. The middleware turns those into 403s.

  InvalidConfiguration: the policy is unusable (byte length below 16, unknown
      SameSite value, ...). Raised while the app is being built so the service
      never starts with a weak policy. Subclasses ValueError so pydantic
      validators can raise it directly.

  StoreUnavailable: the token backend could not be reached. The validator maps
      it to Outcome.STORE_UNAVAILABLE, which is rejected (fail closed).

Layer rule: core/ is the kernel. No imports from api/, web/, or csrf/.
"""

from __future__ import annotations


class CSRFError(Exception):
    """Base class for csrfguard errors."""


class InvalidConfiguration(CSRFError, ValueError):
    """The CSRF policy is misconfigured. Fatal at startup."""


class StoreUnavailable(CSRFError):
    """The token store backend is unreachable or failed mid-operation."""
