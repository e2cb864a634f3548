from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code rendered in the error envelope:
    - validation_error (400)
    - unauthorized (401)
    - rate_limited (429)
    - server_error (500)
    - upstream_error (502)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class BadRequestError(ServiceError):
    """Request is malformed or names something unsupported (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Credential missing, invalid, expired, revoked or replayed (401)."""
    status_code = 401
    error_code = "unauthorized"


class RateLimitedError(ServiceError):
    """Request quota exhausted for the current window (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(
        self,
        message: str,
        *,
        retry_after: int,
        detail: Optional[dict] = None,
    ) -> None:
        super().__init__(message, detail=detail)
        self.retry_after = max(1, int(retry_after))
        self.detail.setdefault("retry_after", self.retry_after)


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class UpstreamDependencyError(ServerError):
    """An external dependency (OAuth provider, shared cache) failed (502)."""
    status_code = 502
    error_code = "upstream_error"


class InvalidTokenError(Exception):
    """Raised by the token codec when a credential does not verify."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class InvalidConfigurationError(Exception):
    """Raised at startup when security-critical configuration is unusable."""


__all__ = [
    "ServiceError",
    "BadRequestError",
    "AuthenticationError",
    "RateLimitedError",
    "ServerError",
    "UpstreamDependencyError",
    "InvalidTokenError",
    "InvalidConfigurationError",
]
