"""
API request and response models for the csrfguard reference endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in core/models.py, which
own the internal domain representation. Route handlers map between the two.
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class CSRFTokenResponse(BaseModel):
    """Response for GET /api/v1/csrf/token.

    Lets header-mode clients (SPAs) fetch the token they must echo back in
    header_name on their next mutating request.
    """

    model_config = ConfigDict(frozen=True)

    token: str
    header_name: str
    field_name: str
    expires_in: Optional[int] = None  # seconds; None = no time-based expiry
    single_use: bool


class EchoResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    ok: bool = True
    message: str


class LogoutResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    ended: bool


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, Any] = Field(default_factory=dict)
