from __future__ import annotations

import os
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from civicguard.service.hashing import HASH_SCHEMES


class StoreBackend(str, Enum):
    """Durable storage for sessions and single-use tokens."""

    SQLITE = "sqlite"
    MEMORY = "memory"


class SessionLimitPolicy(str, Enum):
    """What happens when a login would exceed the concurrent-session limit.

    - EVICT_OLDEST: the oldest active sessions are revoked to make room
    - REJECT: the new login fails with SessionLimitError
    """

    EVICT_OLDEST = "evict_oldest"
    REJECT = "reject"


RATE_LIMIT_BACKEND_NAMES = ("redis", "sqlite", "memory")


@dataclass(frozen=True)
class RateLimitRule:
    """Window size and hit budget for one rate-limit scope."""

    window_ms: int
    max_hits: int

    @property
    def window_seconds(self) -> int:
        return max(1, self.window_ms // 1000)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the session, token and rate-limit core."""

    # Storage
    store_backend: StoreBackend = env_field(StoreBackend.SQLITE, "STORE_BACKEND")
    sqlite_path: str = env_field("./data/civicguard.db", "SQLITE_PATH")
    sqlite_busy_timeout_seconds: float = env_field(
        2.0,
        "SQLITE_BUSY_TIMEOUT_SECONDS",
        description="Upper bound on waiting for the SQLite write lock",
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    redis_socket_timeout_seconds: float = env_field(0.5, "REDIS_SOCKET_TIMEOUT_SECONDS")
    rate_limit_backends: List[str] = env_field(
        ["redis", "sqlite", "memory"],
        "RATE_LIMIT_BACKENDS",
        description="Ordered failover chain for rate-limit counters (comma separated)",
    )
    rate_limit_recheck_interval_seconds: float = env_field(
        30.0,
        "RATE_LIMIT_RECHECK_INTERVAL_SECONDS",
        description="How long a faulted backend stays benched before a failback health check",
    )
    rate_limit_trusted: List[str] = env_field(
        [],
        "RATE_LIMIT_TRUSTED",
        description="Client IPs or identities that bypass rate limiting (comma separated)",
    )
    backend_timeout_seconds: float = env_field(
        2.0,
        "BACKEND_TIMEOUT_SECONDS",
        description="Lock acquisition bound for the in-process backends",
    )

    # Rate-limit rules per scope
    login_rate_limit_window_ms: int = env_field(15 * 60 * 1000, "LOGIN_RATE_LIMIT_WINDOW_MS")
    login_rate_limit_max: int = env_field(5, "LOGIN_RATE_LIMIT_MAX")
    registration_rate_limit_window_ms: int = env_field(
        5 * 60 * 1000, "REGISTRATION_RATE_LIMIT_WINDOW_MS"
    )
    registration_rate_limit_max: int = env_field(10, "REGISTRATION_RATE_LIMIT_MAX")
    password_reset_rate_limit_window_ms: int = env_field(
        60 * 60 * 1000, "PASSWORD_RESET_RATE_LIMIT_WINDOW_MS"
    )
    password_reset_rate_limit_max: int = env_field(3, "PASSWORD_RESET_RATE_LIMIT_MAX")
    api_rate_limit_window_ms: int = env_field(15 * 60 * 1000, "API_RATE_LIMIT_WINDOW_MS")
    api_rate_limit_max: int = env_field(200, "API_RATE_LIMIT_MAX")
    token_issuance_rate_limit_window_ms: int = env_field(
        15 * 60 * 1000, "TOKEN_ISSUANCE_RATE_LIMIT_WINDOW_MS"
    )
    token_issuance_rate_limit_max: int = env_field(3, "TOKEN_ISSUANCE_RATE_LIMIT_MAX")

    # Sessions
    session_ttl_minutes: int = env_field(24 * 60, "SESSION_TTL_MINUTES")
    max_concurrent_sessions: int = env_field(
        3,
        "MAX_CONCURRENT_SESSIONS",
        description="Active, unexpired sessions allowed per user (0 disables the cap)",
    )
    session_limit_policy: SessionLimitPolicy = env_field(
        SessionLimitPolicy.EVICT_OLDEST, "SESSION_LIMIT_POLICY"
    )

    # Tokens
    password_reset_token_ttl_minutes: int = env_field(60, "PASSWORD_RESET_TOKEN_TTL_MINUTES")
    email_verification_token_ttl_minutes: int = env_field(
        24 * 60, "EMAIL_VERIFICATION_TOKEN_TTL_MINUTES"
    )

    # Hygiene
    retention_days: int = env_field(30, "RETENTION_DAYS")
    sweeper_enabled: bool = env_field(True, "SWEEPER_ENABLED")
    sweeper_interval_seconds: int = env_field(60 * 60, "SWEEPER_INTERVAL_SECONDS")
    rate_limit_cleanup_margin_seconds: int = env_field(
        24 * 60 * 60, "RATE_LIMIT_CLEANUP_MARGIN_SECONDS"
    )

    # Hashing
    hash_version: str = env_field("v1", "HASH_VERSION")
    accept_legacy_hashes: bool = env_field(
        False,
        "ACCEPT_LEGACY_HASHES",
        description="Also match bare SHA-256 hex digests written before hash versioning",
    )

    test_mode: bool = env_field(False, "TEST_MODE")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("store_backend")
    @classmethod
    def _validate_store_backend(cls, value: StoreBackend) -> StoreBackend:
        return StoreBackend(value)

    @field_validator("session_limit_policy")
    @classmethod
    def _validate_policy(cls, value: SessionLimitPolicy) -> SessionLimitPolicy:
        return SessionLimitPolicy(value)

    @field_validator("sqlite_path")
    @classmethod
    def _file_backed_sqlite(cls, value: str) -> str:
        path = value.strip()
        if not path or path == ":memory:" or path.startswith("file::memory:"):
            raise ValueError("SQLITE_PATH must name a database file; in-memory SQLite is not shared")
        return path

    @field_validator("rate_limit_trusted", mode="before")
    @classmethod
    def _split_trusted(cls, value: Any) -> List[str]:
        if isinstance(value, str):
            value = value.split(",")
        return [str(part).strip() for part in value or () if str(part).strip()]

    @field_validator("redis_url", mode="before")
    @classmethod
    def _blank_redis_url(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("rate_limit_backends", mode="before")
    @classmethod
    def _split_backends(cls, value: Any) -> List[str]:
        if isinstance(value, str):
            value = value.split(",")
        names = [str(part).strip().lower() for part in value if str(part).strip()]
        unknown = [name for name in names if name not in RATE_LIMIT_BACKEND_NAMES]
        if unknown:
            raise ValueError(f"unknown rate limit backend(s): {', '.join(unknown)}")
        if not names:
            raise ValueError("at least one rate limit backend is required")
        # Keep first occurrence of each name
        return list(dict.fromkeys(names))

    @field_validator(
        "session_ttl_minutes",
        "password_reset_token_ttl_minutes",
        "email_verification_token_ttl_minutes",
        "sweeper_interval_seconds",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("max_concurrent_sessions", "retention_days")
    @classmethod
    def _non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @field_validator("hash_version")
    @classmethod
    def _known_hash_version(cls, value: str) -> str:
        if value not in HASH_SCHEMES:
            raise ValueError(f"unknown hash version {value!r}")
        return value

    @property
    def rate_limit_rules(self) -> Dict[str, RateLimitRule]:
        """Configured rules keyed by scope name."""
        return {
            "login": RateLimitRule(self.login_rate_limit_window_ms, self.login_rate_limit_max),
            "registration": RateLimitRule(
                self.registration_rate_limit_window_ms, self.registration_rate_limit_max
            ),
            "password_reset": RateLimitRule(
                self.password_reset_rate_limit_window_ms, self.password_reset_rate_limit_max
            ),
            "api": RateLimitRule(self.api_rate_limit_window_ms, self.api_rate_limit_max),
            "token_issuance": RateLimitRule(
                self.token_issuance_rate_limit_window_ms,
                self.token_issuance_rate_limit_max,
            ),
        }


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
