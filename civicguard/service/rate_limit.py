from __future__ import annotations

import re
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Protocol, Sequence

from civicguard.config import RateLimitRule
from civicguard.logging import get_logger, redact_ip
from civicguard.service.errors import RateLimitExceededError, ValidationError
from civicguard.storage.models import RateLimitInfo, to_ms, utcnow

logger = get_logger(__name__)

MAX_KEY_LENGTH = 256
DEFAULT_WINDOW_MS = 60_000
_INVALID_KEY_CHARS = re.compile(r"[\s\x00-\x1f\x7f]")


class RateLimitStore(Protocol):
    name: str

    def increment(self, key: str, window_ms: int, max_hits: int, now_ms: int) -> RateLimitInfo:
        ...

    def reset(self, key: str) -> None:
        ...

    def cleanup(self, older_than_ms: int) -> int:
        ...

    def stats(self, now_ms: int) -> Dict[str, int]:
        ...

    def health_check(self) -> bool:
        ...

    def close(self) -> None:
        ...


@dataclass
class _BackendState:
    store: RateLimitStore
    healthy: bool = True
    retry_at_ms: int = 0
    last_error: Optional[str] = None


def validate_key(key: str) -> str:
    if not isinstance(key, str) or not key:
        raise ValidationError("rate limit key must be a non-empty string")
    if len(key) > MAX_KEY_LENGTH:
        raise ValidationError(
            "rate limit key too long", detail={"max_length": MAX_KEY_LENGTH}
        )
    if _INVALID_KEY_CHARS.search(key):
        raise ValidationError("rate limit key contains whitespace or control characters")
    return key


class RateLimiter:
    """Fixed-window limiter over an ordered chain of counter backends.

    The first healthy backend serves each call. A faulting backend is taken
    out of rotation until its recheck deadline passes, at which point a
    successful ``health_check`` restores it ahead of lower-priority ones.
    When no backend can answer, the call is permitted and flagged
    ``degraded``: an outage of the counter store must not lock users out.
    """

    def __init__(
        self,
        backends: Sequence[RateLimitStore],
        *,
        rules: Optional[Dict[str, RateLimitRule]] = None,
        recheck_interval_seconds: float = 30.0,
        trusted: Iterable[str] = (),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._states = [_BackendState(store=backend) for backend in backends]
        self.rules: Dict[str, RateLimitRule] = dict(rules or {})
        self.trusted = frozenset(trusted)
        self.recheck_interval_ms = int(recheck_interval_seconds * 1000)
        self.clock = clock
        self._lock = threading.Lock()

    @property
    def backends(self) -> List[RateLimitStore]:
        return [state.store for state in self._states]

    def add_rule(self, scope: str, rule: RateLimitRule) -> None:
        self.rules[scope] = rule

    @staticmethod
    def ip_key(ip: str, endpoint: Optional[str] = None) -> str:
        return f"ip:{endpoint}:{ip}" if endpoint else f"ip:{ip}"

    @staticmethod
    def user_key(user_id: str, endpoint: Optional[str] = None) -> str:
        return f"user:{endpoint}:{user_id}" if endpoint else f"user:{user_id}"

    def _now_ms(self) -> int:
        return to_ms(self.clock())

    def _mark_down(self, state: _BackendState, exc: Exception, now_ms: int, key: str) -> None:
        with self._lock:
            state.healthy = False
            state.retry_at_ms = now_ms + self.recheck_interval_ms
            state.last_error = str(exc)
        logger.warning(
            "rate_limit_backend_fault",
            backend=state.store.name,
            key=redact_ip(key),
            error_type=type(exc).__name__,
            error=str(exc),
            retry_in_ms=self.recheck_interval_ms,
        )

    def _recheck(self, state: _BackendState, now_ms: int) -> bool:
        with self._lock:
            if state.healthy:
                return True
            if now_ms < state.retry_at_ms:
                return False
            # claim this recheck window so concurrent callers skip it
            state.retry_at_ms = now_ms + self.recheck_interval_ms
        try:
            ok = bool(state.store.health_check())
        except Exception as exc:
            ok = False
            state.last_error = str(exc)
        if ok:
            with self._lock:
                state.healthy = True
                state.last_error = None
            logger.info("rate_limit_backend_restored", backend=state.store.name)
        return ok

    def _available(self, now_ms: int) -> Iterator[_BackendState]:
        for state in self._states:
            if self._recheck(state, now_ms):
                yield state

    def increment(self, key: str, window_ms: int, max_hits: int) -> RateLimitInfo:
        validate_key(key)
        if max_hits <= 0:
            return RateLimitInfo.unlimited(max_hits)
        if window_ms <= 0:
            logger.warning(
                "rate_limit_invalid_window",
                key=redact_ip(key),
                window_ms=window_ms,
                message="Invalid rate limit window_ms; defaulting to 60 seconds",
            )
            window_ms = DEFAULT_WINDOW_MS
        now_ms = self._now_ms()
        for state in self._available(now_ms):
            try:
                return state.store.increment(key, window_ms, max_hits, now_ms)
            except Exception as exc:
                self._mark_down(state, exc, now_ms, key)
        logger.error(
            "rate_limit_fail_open",
            key=redact_ip(key),
            backends=[state.store.name for state in self._states],
        )
        return RateLimitInfo.fail_open(window_ms, max_hits)

    def rule_for(self, scope: str) -> RateLimitRule:
        try:
            return self.rules[scope]
        except KeyError:
            raise ValidationError(f"unknown rate limit scope {scope!r}") from None

    def is_trusted(self, *subjects: Optional[str]) -> bool:
        return any(subject in self.trusted for subject in subjects if subject)

    def hit(self, scope: str, identity: str, *, client_ip: Optional[str] = None) -> RateLimitInfo:
        """Count one hit for ``identity`` under the rule for ``scope``.

        Trusted identities and client addresses are let through without
        touching any backend; the result carries ``max_hits == 0`` like an
        unlimited rule.
        """
        rule = self.rule_for(scope)
        if self.is_trusted(identity, client_ip):
            logger.debug("rate_limit_bypassed", scope=scope, identity=redact_ip(identity))
            return RateLimitInfo.unlimited()
        return self.increment(f"{scope}:{identity}", rule.window_ms, rule.max_hits)

    def enforce(self, scope: str, identity: str) -> RateLimitInfo:
        info = self.hit(scope, identity)
        if not info.allowed:
            logger.info(
                "rate_limit_exceeded",
                scope=scope,
                identity=redact_ip(identity),
                total_hits=info.total_hits,
                max_hits=info.max_hits,
            )
            raise RateLimitExceededError(retry_after=info.retry_after)
        return info

    def reset(self, key: str) -> None:
        validate_key(key)
        for state in self._states:
            try:
                state.store.reset(key)
            except Exception as exc:
                logger.warning(
                    "rate_limit_reset_failed",
                    backend=state.store.name,
                    key=redact_ip(key),
                    error=str(exc),
                )

    def cleanup(self, margin_seconds: float, *, now: Optional[datetime] = None) -> int:
        now_ms = to_ms(now) if now is not None else self._now_ms()
        cutoff_ms = now_ms - int(margin_seconds * 1000)
        removed = 0
        for state in self._available(now_ms):
            try:
                count = state.store.cleanup(cutoff_ms)
            except Exception as exc:
                logger.warning(
                    "rate_limit_cleanup_failed",
                    backend=state.store.name,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                continue
            if count:
                logger.info("rate_limit_cleanup", backend=state.store.name, removed=count)
            removed += count
        return removed

    def status(self) -> List[Dict[str, Any]]:
        with self._lock:
            active = next((s.store.name for s in self._states if s.healthy), None)
            return [
                {
                    "backend": state.store.name,
                    "healthy": state.healthy,
                    "active": state.store.name == active,
                    "last_error": state.last_error,
                }
                for state in self._states
            ]

    def stats(self) -> Dict[str, Any]:
        """Counter totals per backend; a failing backend reports its error instead."""
        now_ms = self._now_ms()
        backends: List[Dict[str, Any]] = []
        for state in self._states:
            entry: Dict[str, Any] = {"backend": state.store.name, "healthy": state.healthy}
            try:
                entry.update(state.store.stats(now_ms))
            except Exception as exc:
                entry["error"] = str(exc)
            backends.append(entry)
        return {
            "rules": {
                scope: {"window_ms": rule.window_ms, "max_hits": rule.max_hits}
                for scope, rule in sorted(self.rules.items())
            },
            "trusted": len(self.trusted),
            "backends": backends,
        }

    def close(self) -> None:
        for state in self._states:
            try:
                state.store.close()
            except Exception as exc:
                logger.warning("rate_limit_close_failed", backend=state.store.name, error=str(exc))
