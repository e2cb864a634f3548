from __future__ import annotations

from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from sessionguard.logging import get_correlation_id

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "rate_limited",
    "validation_error",
    "conflict",
    "not_found",
    "server_error",
    "upstream_error",
})


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "Bearer"
    expires_in: int


class OAuthAuthorizeResponse(BaseModel):
    provider: str
    authorize_url: str


class UserPrincipalResponse(BaseModel):
    user_id: str
    role: str


class ActorResponse(BaseModel):
    actor_id: str
    role: str
    authenticated: bool
