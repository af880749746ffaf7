from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from civicguard.logging import get_logger
from civicguard.service.rate_limit import RateLimiter
from civicguard.service.sessions import CredentialStore
from civicguard.storage.models import utcnow

logger = get_logger(__name__)

MAX_BACKOFF_SECONDS = 300
RETRY_BASE_SECONDS = 5


@dataclass
class SweepReport:
    started_at: datetime
    sessions_expired: int = 0
    sessions_purged: int = 0
    tokens_purged: int = 0
    counters_removed: int = 0
    errors: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.errors

    def as_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["started_at"] = self.started_at.isoformat()
        return data


class Sweeper:
    """Background hygiene for sessions, tokens and rate-limit counters.

    Each tick runs three independent steps in worker threads; a failure in
    one is logged and recorded on the report without skipping the others.
    All steps are idempotent conditional writes, so a missed or overlapping
    tick only delays cleanup.
    """

    def __init__(
        self,
        store: CredentialStore,
        rate_limiter: Optional[RateLimiter] = None,
        *,
        interval_seconds: float = 3600,
        retention_days: int = 30,
        cleanup_margin_seconds: float = 86400,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.rate_limiter = rate_limiter
        self.interval_seconds = interval_seconds
        self.retention_days = retention_days
        self.cleanup_margin_seconds = cleanup_margin_seconds
        self.clock = clock
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the background loop."""
        if self._running:
            logger.warning("sweeper_already_running")
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("sweeper_started", interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        """Stop the background loop."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("sweeper_stopped")

    async def _run_loop(self) -> None:
        consecutive_errors = 0
        while self._running:
            try:
                report = await self.run_once()
                consecutive_errors = 0 if report.ok else consecutive_errors + 1
            except Exception as exc:
                consecutive_errors += 1
                logger.error(
                    "sweeper_loop_error",
                    error=str(exc),
                    error_type=type(exc).__name__,
                    consecutive_errors=consecutive_errors,
                )
            if consecutive_errors > 0:
                # failed ticks retry early, backing off toward the cap
                backoff = min(
                    self.interval_seconds,
                    MAX_BACKOFF_SECONDS,
                    RETRY_BASE_SECONDS * (2 ** (consecutive_errors - 1)),
                )
                logger.warning(
                    "sweeper_backoff",
                    backoff_seconds=backoff,
                    consecutive_errors=consecutive_errors,
                )
                await asyncio.sleep(backoff)
                continue

            await asyncio.sleep(self.interval_seconds)

    async def _step(self, report: SweepReport, name: str, fn: Callable[[], int]) -> int:
        try:
            return await asyncio.to_thread(fn)
        except Exception as exc:
            report.errors[name] = str(exc)
            logger.error(
                "sweeper_step_failed",
                step=name,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return 0

    async def run_once(self, now: Optional[datetime] = None) -> SweepReport:
        """Run one sweep synchronously with respect to the caller."""
        now = now or self.clock()
        cutoff = now - timedelta(days=self.retention_days)
        report = SweepReport(started_at=now)

        report.sessions_expired = await self._step(
            report, "expire_sessions", lambda: self.store.expire_sessions(now)
        )

        report.sessions_purged = await self._step(
            report, "purge_sessions", lambda: self.store.purge_sessions(cutoff)
        )
        report.tokens_purged = await self._step(
            report, "purge_tokens", lambda: self.store.purge_tokens(cutoff)
        )

        if self.rate_limiter is not None:
            limiter = self.rate_limiter
            report.counters_removed = await self._step(
                report,
                "rate_limit_cleanup",
                lambda: limiter.cleanup(self.cleanup_margin_seconds, now=now),
            )

        logger.info(
            "sweep_completed",
            sessions_expired=report.sessions_expired,
            sessions_purged=report.sessions_purged,
            tokens_purged=report.tokens_purged,
            counters_removed=report.counters_removed,
            failed_steps=sorted(report.errors),
        )
        return report
