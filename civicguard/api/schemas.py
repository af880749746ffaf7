from __future__ import annotations

from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from civicguard.logging import get_correlation_id

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "expired",
    "revoked",
    "not_found",
    "already_used",
    "session_limit_reached",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
    "backend_unavailable",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

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
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


class StoreHealth(BaseModel):
    backend: str
    healthy: bool


class RateLimitBackendHealth(BaseModel):
    backend: str
    healthy: bool
    active: bool
    last_error: Optional[str] = None


class HealthResponse(BaseModel):
    status: str = Field(..., pattern="^(ok|degraded|unavailable)$")
    store: StoreHealth
    rate_limit: List[RateLimitBackendHealth]
    sweeper_running: bool = False

    @classmethod
    def from_runtime_health(cls, health: Dict[str, Any], *, sweeper_running: bool) -> "HealthResponse":
        backends = [RateLimitBackendHealth(**entry) for entry in health["rate_limit"]]
        if not health["store"]["healthy"]:
            status = "unavailable"
        elif not all(b.healthy for b in backends):
            status = "degraded"
        else:
            status = "ok"
        return cls(
            status=status,
            store=StoreHealth(**health["store"]),
            rate_limit=backends,
            sweeper_running=sweeper_running,
        )


class UserSessionCount(BaseModel):
    user_id: str
    active: int


class SessionStats(BaseModel):
    total: int
    active: int
    ended: int
    top_users: List[UserSessionCount] = Field(default_factory=list)


class TokenKindStats(BaseModel):
    active: int = 0
    used: int = 0
    expired: int = 0


class StatsResponse(BaseModel):
    sessions: SessionStats
    tokens: Dict[str, TokenKindStats]
    rate_limit: Dict[str, Any]
