from __future__ import annotations

import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_ms(dt: datetime) -> int:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


def from_ms(ms: int | float) -> datetime:
    return datetime.fromtimestamp(ms / 1000.0, tz=timezone.utc)


class TokenKind(str, Enum):
    PASSWORD_RESET = "password_reset"
    EMAIL_VERIFICATION = "email_verification"


class RevokeReason(str, Enum):
    REVOKED = "revoked"
    EXPIRED = "expired"
    EVICTED = "evicted"
    ROTATED = "rotated"


@dataclass
class Session:
    id: str
    user_id: str
    token_hash: str
    expires_at: datetime
    created_at: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    is_active: bool = True
    tenant_id: str = "public"
    revoked_at: Optional[datetime] = None
    revoke_reason: Optional[str] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        token_hash: str,
        *,
        now: datetime,
        ttl_minutes: int,
        ip_address: str | None = None,
        user_agent: str | None = None,
        tenant_id: str = "public",
    ) -> "Session":
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            token_hash=token_hash,
            created_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
            ip_address=ip_address,
            user_agent=user_agent,
            tenant_id=tenant_id,
        )

    def is_live(self, now: datetime) -> bool:
        return self.is_active and self.expires_at > now


@dataclass
class Token:
    id: str
    user_id: str
    token_hash: str
    kind: TokenKind
    expires_at: datetime
    created_at: datetime
    used_at: Optional[datetime] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        token_hash: str,
        kind: TokenKind,
        *,
        now: datetime,
        ttl_minutes: int,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> "Token":
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            token_hash=token_hash,
            kind=TokenKind(kind),
            created_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
            ip_address=ip_address,
            user_agent=user_agent,
        )

    def is_redeemable(self, now: datetime) -> bool:
        return self.used_at is None and self.expires_at > now


@dataclass(frozen=True)
class RateLimitCounter:
    """Immutable counter snapshot; the memory backend swaps whole records."""

    key: str
    hits: int
    window_start_ms: int
    window_ms: int
    max_hits: int
    updated_at_ms: int

    @property
    def window_end_ms(self) -> int:
        return self.window_start_ms + self.window_ms


@dataclass(frozen=True)
class RateLimitInfo:
    total_hits: int
    remaining_points: int
    ms_before_next: int
    is_first_in_window: bool
    max_hits: int
    degraded: bool = False

    @property
    def allowed(self) -> bool:
        return self.degraded or self.max_hits <= 0 or self.total_hits <= self.max_hits

    @property
    def retry_after(self) -> int:
        """Seconds until the window resets, as sent in ``Retry-After``."""
        seconds = math.ceil(max(0, self.ms_before_next) / 1000)
        if not self.allowed:
            return max(1, seconds)
        return seconds

    @classmethod
    def unlimited(cls, max_hits: int = 0) -> "RateLimitInfo":
        return cls(
            total_hits=0,
            remaining_points=0,
            ms_before_next=0,
            is_first_in_window=False,
            max_hits=max_hits,
        )

    @classmethod
    def from_counter(cls, hits: int, window_start_ms: int, window_ms: int, max_hits: int, now_ms: int) -> "RateLimitInfo":
        return cls(
            total_hits=hits,
            remaining_points=max(0, max_hits - hits),
            ms_before_next=max(0, window_start_ms + window_ms - now_ms),
            is_first_in_window=hits == 1,
            max_hits=max_hits,
        )

    @classmethod
    def fail_open(cls, window_ms: int, max_hits: int) -> "RateLimitInfo":
        return cls(
            total_hits=0,
            remaining_points=max(0, max_hits),
            ms_before_next=window_ms,
            is_first_in_window=False,
            max_hits=max_hits,
            degraded=True,
        )


@dataclass
class SessionValidation:
    valid: bool
    session: Optional[Session] = None
    reason: Optional[str] = None


@dataclass
class TokenValidation:
    valid: bool
    user_id: Optional[str] = None
    reason: Optional[str] = None


@dataclass
class IssuedToken:
    """Raw token returned exactly once to the caller for the email link."""

    raw_token: str
    expires_at: datetime
    kind: TokenKind
    token_id: str = field(default="")
