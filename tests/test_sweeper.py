"""Tests for the background Sweeper."""

import asyncio
from unittest.mock import MagicMock

import pytest

from civicguard.service.hashing import generate_secret
from civicguard.service.rate_limit import RateLimiter
from civicguard.service.sessions import SessionStore
from civicguard.service.sweeper import Sweeper
from civicguard.service.tokens import TokenService
from civicguard.storage.memory import MemoryRateLimitStore
from civicguard.storage.models import TokenKind


@pytest.fixture
def counters():
    return MemoryRateLimitStore()


@pytest.fixture
def limiter(counters, clock):
    return RateLimiter([counters], clock=clock)


@pytest.fixture
def sweeper(credential_store, limiter, clock):
    return Sweeper(
        credential_store,
        limiter,
        interval_seconds=3600,
        retention_days=30,
        cleanup_margin_seconds=86400,
        clock=clock,
    )


class TestRunOnce:
    async def test_expires_sessions_in_bulk(self, sweeper, credential_store, hasher, clock):
        sessions = SessionStore(credential_store, hasher, clock=clock)
        short = sessions.create("user-1", generate_secret(), ttl_minutes=1)
        long = sessions.create("user-1", generate_secret(), ttl_minutes=600)
        clock.advance(minutes=2)

        report = await sweeper.run_once()

        assert report.ok
        assert report.sessions_expired == 1
        assert credential_store.get_session(short.id).revoke_reason == "expired"
        assert credential_store.get_session(long.id).is_active is True

    async def test_purges_past_retention(self, sweeper, credential_store, hasher, clock):
        sessions = SessionStore(credential_store, hasher, clock=clock)
        tokens = TokenService(credential_store, hasher, clock=clock)
        old = sessions.create("user-1", generate_secret(), ttl_minutes=1)
        recent = sessions.create("user-1", generate_secret(), ttl_minutes=24 * 60)
        issued = tokens.create_password_reset_token("user-1")
        tokens.consume(issued.raw_token, TokenKind.PASSWORD_RESET)
        clock.advance(minutes=2)
        await sweeper.run_once()

        clock.advance(days=31)
        report = await sweeper.run_once()

        assert report.sessions_expired == 1
        assert report.sessions_purged == 1
        assert report.tokens_purged == 1
        assert credential_store.get_session(old.id) is None
        assert credential_store.get_session(recent.id).revoke_reason == "expired"

    async def test_revoked_sessions_kept_within_retention(self, sweeper, credential_store, hasher, clock):
        sessions = SessionStore(credential_store, hasher, clock=clock)
        created = sessions.create("user-1", generate_secret())
        sessions.invalidate(created.id)
        clock.advance(days=29)

        report = await sweeper.run_once()

        assert report.sessions_purged == 0
        assert credential_store.get_session(created.id) is not None

    async def test_cleans_stale_counters(self, sweeper, limiter, counters, clock):
        limiter.increment("ip:10.0.0.1", 60_000, 5)
        clock.advance(days=2)
        limiter.increment("ip:10.0.0.2", 60_000, 5)

        report = await sweeper.run_once()

        assert report.counters_removed == 1
        assert set(counters.counters) == {"ip:10.0.0.2"}

    async def test_run_once_is_idempotent(self, sweeper, credential_store, hasher, clock):
        sessions = SessionStore(credential_store, hasher, clock=clock)
        sessions.create("user-1", generate_secret(), ttl_minutes=1)
        clock.advance(minutes=2)

        first = await sweeper.run_once()
        second = await sweeper.run_once()

        assert first.sessions_expired == 1
        assert second.sessions_expired == 0

    async def test_explicit_now(self, sweeper, credential_store, hasher, clock):
        sessions = SessionStore(credential_store, hasher, clock=clock)
        sessions.create("user-1", generate_secret(), ttl_minutes=1)

        report = await sweeper.run_once(now=clock.advance(minutes=5))

        assert report.sessions_expired == 1
        assert report.started_at == clock()

    async def test_failing_step_does_not_block_others(self, limiter, clock):
        store = MagicMock()
        store.expire_sessions.side_effect = RuntimeError("boom")
        store.purge_sessions.return_value = 2
        store.purge_tokens.return_value = 3
        sweeper = Sweeper(store, limiter, clock=clock)

        report = await sweeper.run_once()

        assert not report.ok
        assert set(report.errors) == {"expire_sessions"}
        assert report.sessions_purged == 2
        assert report.tokens_purged == 3
        assert report.as_dict()["errors"] == {"expire_sessions": "boom"}


class TestLifecycle:
    async def test_start_and_stop(self, credential_store, clock):
        sweeper = Sweeper(credential_store, None, interval_seconds=3600, clock=clock)

        await sweeper.start()
        assert sweeper.running is True
        await asyncio.sleep(0.05)
        await sweeper.stop()

        assert sweeper.running is False
        assert sweeper._task is None

    async def test_start_twice_keeps_single_task(self, credential_store, clock):
        sweeper = Sweeper(credential_store, None, interval_seconds=3600, clock=clock)

        await sweeper.start()
        task = sweeper._task
        await sweeper.start()

        assert sweeper._task is task
        await sweeper.stop()

    async def test_loop_runs_sweeps(self, clock):
        store = MagicMock()
        store.expire_sessions.return_value = 0
        store.purge_sessions.return_value = 0
        store.purge_tokens.return_value = 0
        sweeper = Sweeper(store, None, interval_seconds=0.01, clock=clock)

        await sweeper.start()
        await asyncio.sleep(0.2)
        await sweeper.stop()

        assert store.expire_sessions.call_count >= 2

    async def test_stop_without_start(self, credential_store, clock):
        sweeper = Sweeper(credential_store, None, clock=clock)

        await sweeper.stop()

        assert sweeper.running is False
