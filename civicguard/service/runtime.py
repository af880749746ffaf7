from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlparse, urlunparse

from civicguard.config import Settings, StoreBackend, get_settings
from civicguard.logging import get_logger
from civicguard.service.hashing import SecretHasher
from civicguard.service.rate_limit import RateLimiter, RateLimitStore
from civicguard.service.sessions import CredentialStore, SessionStore
from civicguard.service.sweeper import Sweeper
from civicguard.service.tokens import TokenService
from civicguard.storage.errors import BackendUnavailable
from civicguard.storage.memory import MemoryRateLimitStore, MemoryStore
from civicguard.storage.models import TokenKind, utcnow
from civicguard.storage.redis_cache import RedisRateLimitStore
from civicguard.storage.sqlite import SqliteRateLimitStore, SqliteStore

logger = get_logger(__name__)


class StartupError(RuntimeError):
    """The persistent credential store is unreachable; refuse to serve."""


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


class Runtime:
    """Holds the backends and services for one process, built once."""

    def __init__(
        self,
        settings: Settings,
        *,
        store: CredentialStore,
        rate_limiter: RateLimiter,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings
        self.store = store
        self.rate_limiter = rate_limiter
        self.clock = clock
        self.hasher = SecretHasher(
            settings.hash_version, accept_legacy=settings.accept_legacy_hashes
        )
        self.sessions = SessionStore(
            store,
            self.hasher,
            ttl_minutes=settings.session_ttl_minutes,
            max_concurrent=settings.max_concurrent_sessions,
            policy=settings.session_limit_policy,
            clock=clock,
        )
        self.tokens = TokenService(
            store,
            self.hasher,
            ttl_minutes={
                TokenKind.PASSWORD_RESET: settings.password_reset_token_ttl_minutes,
                TokenKind.EMAIL_VERIFICATION: settings.email_verification_token_ttl_minutes,
            },
            rate_limiter=rate_limiter,
            clock=clock,
        )
        self.sweeper = Sweeper(
            store,
            rate_limiter,
            interval_seconds=settings.sweeper_interval_seconds,
            retention_days=settings.retention_days,
            cleanup_margin_seconds=settings.rate_limit_cleanup_margin_seconds,
            clock=clock,
        )

    def startup_check(self) -> None:
        """Verify the credential store; rate-limit backends may start degraded."""
        try:
            self.store.verify_connection()
        except BackendUnavailable as exc:
            logger.error(
                "startup_check_failed",
                store_type=self.store.name,
                backend=exc.backend,
                error=exc.message,
            )
            raise StartupError(f"credential store unavailable: {exc.message}") from exc
        for backend in self.rate_limiter.backends:
            healthy = backend.health_check()
            log = logger.info if healthy else logger.warning
            log("rate_limit_backend_status", backend=backend.name, healthy=healthy)
        logger.info("startup_check_passed", store_type=self.store.name)

    def health(self) -> Dict[str, Any]:
        try:
            self.store.verify_connection()
            store_ok = True
        except BackendUnavailable:
            store_ok = False
        return {
            "store": {"backend": self.store.name, "healthy": store_ok},
            "rate_limit": self.rate_limiter.status(),
        }

    def stats(self) -> Dict[str, Any]:
        return {
            "sessions": self.sessions.stats(),
            "tokens": self.tokens.stats(),
            "rate_limit": self.rate_limiter.stats(),
        }

    def close(self) -> None:
        self.rate_limiter.close()
        self.store.close()
        logger.info("runtime_closed")


def _build_rate_limit_backends(
    settings: Settings, *, redis_client: Optional[Any] = None
) -> List[RateLimitStore]:
    backends: List[RateLimitStore] = []
    for name in settings.rate_limit_backends:
        if name == "redis":
            if not settings.redis_url:
                logger.warning(
                    "redis_disabled_fallback",
                    error="redis_url_missing",
                    fallback=[b for b in settings.rate_limit_backends if b != "redis"],
                )
                continue
            backends.append(
                RedisRateLimitStore(
                    settings.redis_url,
                    socket_timeout=settings.redis_socket_timeout_seconds,
                    client=redis_client,
                )
            )
        elif name == "sqlite":
            backends.append(
                SqliteRateLimitStore(
                    settings.sqlite_path, busy_timeout=settings.sqlite_busy_timeout_seconds
                )
            )
        elif name == "memory":
            backends.append(MemoryRateLimitStore(lock_timeout=settings.backend_timeout_seconds))
    return backends


def build_runtime(
    settings: Optional[Settings] = None,
    *,
    clock: Callable[[], datetime] = utcnow,
    redis_client: Optional[Any] = None,
) -> Runtime:
    settings = settings or get_settings()
    logger.info(
        "runtime_init_started",
        store_backend=settings.store_backend.value,
        rate_limit_backends=settings.rate_limit_backends,
        test_mode=settings.test_mode,
    )
    try:
        if settings.store_backend == StoreBackend.MEMORY:
            store: CredentialStore = MemoryStore(lock_timeout=settings.backend_timeout_seconds)
        else:
            store = SqliteStore(
                settings.sqlite_path, busy_timeout=settings.sqlite_busy_timeout_seconds
            )
        backends = _build_rate_limit_backends(settings, redis_client=redis_client)
    except OSError as exc:
        logger.error(
            "runtime_store_init_failed",
            store_type=settings.store_backend.value,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        raise StartupError(str(exc)) from exc

    rate_limiter = RateLimiter(
        backends,
        rules=settings.rate_limit_rules,
        recheck_interval_seconds=settings.rate_limit_recheck_interval_seconds,
        trusted=settings.rate_limit_trusted,
        clock=clock,
    )
    runtime = Runtime(settings, store=store, rate_limiter=rate_limiter, clock=clock)
    logger.info(
        "runtime_initialized",
        store_type=store.name,
        rate_limit_backends=[b.name for b in backends],
        redis_url=_mask_url_password(settings.redis_url),
        sweeper_enabled=settings.sweeper_enabled,
    )
    return runtime
