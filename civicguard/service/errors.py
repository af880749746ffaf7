from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code:
    - validation_error (400)
    - unauthorized / expired / revoked (401)
    - not_found (404)
    - already_used / session_limit_reached (409)
    - rate_limited (429)
    - server_error (500)
    - backend_unavailable (503)
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


class ValidationError(ServiceError):
    """Malformed key, secret or token (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Credential could not be verified (401)."""
    status_code = 401
    error_code = "unauthorized"


class ExpiredError(AuthenticationError):
    """Session or token is past its expiry (401)."""
    error_code = "expired"


class RevokedError(AuthenticationError):
    """Session was revoked, evicted or rotated away (401)."""
    error_code = "revoked"


class NotFoundError(ServiceError):
    """No matching session or token (404)."""
    status_code = 404
    error_code = "not_found"


class AlreadyUsedError(ServiceError):
    """Single-use token was already redeemed or superseded (409)."""
    status_code = 409
    error_code = "already_used"


class SessionLimitError(ServiceError):
    """Login rejected by the concurrent-session cap (409)."""
    status_code = 409
    error_code = "session_limit_reached"


class RateLimitExceededError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, message: str = "rate limit exceeded", *, retry_after: int, **kwargs) -> None:
        detail = dict(kwargs.pop("detail", None) or {})
        detail.setdefault("retry_after", retry_after)
        super().__init__(message, detail=detail, **kwargs)
        self.retry_after = retry_after


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class BackendUnavailableError(ServiceError):
    """Credential storage unreachable or timed out (503)."""
    status_code = 503
    error_code = "backend_unavailable"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ExpiredError",
    "RevokedError",
    "NotFoundError",
    "AlreadyUsedError",
    "SessionLimitError",
    "RateLimitExceededError",
    "ServerError",
    "BackendUnavailableError",
]
