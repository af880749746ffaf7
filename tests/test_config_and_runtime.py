"""Tests for settings, secret hashing and runtime construction."""

from unittest.mock import patch

import pytest
from pydantic import ValidationError as PydanticValidationError

from civicguard.config import (
    RateLimitRule,
    SessionLimitPolicy,
    Settings,
    StoreBackend,
    get_settings,
    reset_settings_cache,
)
from civicguard.logging import _redact_secrets
from civicguard.service.hashing import SecretHasher, generate_secret
from civicguard.service.runtime import StartupError, _mask_url_password, build_runtime
from civicguard.storage.errors import BackendUnavailable


class TestSettings:
    def test_defaults(self):
        settings = Settings()

        assert settings.store_backend == StoreBackend.SQLITE
        assert settings.rate_limit_backends == ["redis", "sqlite", "memory"]
        assert settings.max_concurrent_sessions == 3
        assert settings.session_limit_policy == SessionLimitPolicy.EVICT_OLDEST
        assert settings.session_ttl_minutes == 1440
        assert settings.retention_days == 30
        assert settings.hash_version == "v1"

    def test_default_rules(self):
        rules = Settings().rate_limit_rules

        assert rules["login"] == RateLimitRule(window_ms=900_000, max_hits=5)
        assert rules["registration"] == RateLimitRule(window_ms=300_000, max_hits=10)
        assert rules["password_reset"] == RateLimitRule(window_ms=3_600_000, max_hits=3)
        assert rules["api"] == RateLimitRule(window_ms=900_000, max_hits=200)
        assert rules["token_issuance"] == RateLimitRule(window_ms=900_000, max_hits=3)

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("MAX_CONCURRENT_SESSIONS", "5")
        monkeypatch.setenv("SESSION_LIMIT_POLICY", "reject")
        monkeypatch.setenv("RATE_LIMIT_BACKENDS", "sqlite, memory")
        monkeypatch.setenv("LOGIN_RATE_LIMIT_MAX", "10")
        monkeypatch.setenv("REDIS_URL", "")

        settings = Settings.from_env()

        assert settings.max_concurrent_sessions == 5
        assert settings.session_limit_policy == SessionLimitPolicy.REJECT
        assert settings.rate_limit_backends == ["sqlite", "memory"]
        assert settings.rate_limit_rules["login"].max_hits == 10
        assert settings.redis_url is None

    def test_rejects_unknown_backend(self):
        with pytest.raises(PydanticValidationError):
            Settings(rate_limit_backends="redis,mongo")

    def test_rejects_empty_backend_list(self):
        with pytest.raises(PydanticValidationError):
            Settings(rate_limit_backends=" , ")

    def test_rejects_unknown_hash_version(self):
        with pytest.raises(PydanticValidationError):
            Settings(hash_version="v9")

    def test_rejects_non_positive_ttl(self):
        with pytest.raises(PydanticValidationError):
            Settings(session_ttl_minutes=0)

    def test_rejects_in_memory_sqlite(self):
        for path in (":memory:", " :memory: ", "file::memory:?cache=shared", ""):
            with pytest.raises(PydanticValidationError):
                Settings(sqlite_path=path)

    def test_trusted_list_from_env(self, monkeypatch):
        monkeypatch.setenv("RATE_LIMIT_TRUSTED", "10.0.0.5, svc-monitor,,")

        assert Settings.from_env().rate_limit_trusted == ["10.0.0.5", "svc-monitor"]
        assert Settings().rate_limit_trusted == []

    def test_get_settings_is_cached(self, monkeypatch):
        first = get_settings()
        monkeypatch.setenv("RETENTION_DAYS", "7")

        assert get_settings() is first
        reset_settings_cache()
        assert get_settings().retention_days == 7


class TestSecretHasher:
    def test_hash_is_versioned_and_deterministic(self):
        hasher = SecretHasher("v1")
        secret = generate_secret()

        assert hasher.hash(secret) == hasher.hash(secret)
        assert hasher.hash(secret).startswith("v1:")
        assert len(hasher.hash(secret)) == len("v1:") + 64

    def test_candidates_current_first(self):
        hasher = SecretHasher("v1", accept_legacy=True)
        secret = generate_secret()

        candidates = hasher.candidates(secret)

        assert candidates[0] == hasher.hash(secret)
        assert candidates[-1] == hasher.hash(secret).split(":", 1)[1]

    def test_legacy_excluded_by_default(self):
        assert len(SecretHasher("v1").candidates(generate_secret())) == 1

    def test_version_detection(self):
        hasher = SecretHasher("v1")
        stored = hasher.hash(generate_secret())

        assert SecretHasher.version_of(stored) == "v1"
        assert SecretHasher.version_of("ab" * 32) is None
        assert hasher.needs_rehash(stored) is False
        assert hasher.needs_rehash("ab" * 32) is True

    def test_unknown_version_rejected(self):
        with pytest.raises(ValueError):
            SecretHasher("v0")

    def test_generate_secret_entropy(self):
        assert len(generate_secret()) == 64
        assert generate_secret() != generate_secret()
        with pytest.raises(ValueError):
            generate_secret(16)


class TestRuntime:
    def test_builds_backends_in_configured_order(self, settings, fake_redis):
        settings = settings.model_copy(
            update={"rate_limit_backends": ["redis", "sqlite", "memory"]}
        )

        runtime = build_runtime(settings, redis_client=fake_redis)

        assert [b.name for b in runtime.rate_limiter.backends] == ["redis", "sqlite", "memory"]
        with patch.object(fake_redis, "close", wraps=fake_redis.close) as close:
            runtime.close()
        close.assert_called_once()

    def test_skips_redis_without_url(self, settings):
        settings = settings.model_copy(
            update={"redis_url": None, "rate_limit_backends": ["redis", "memory"]}
        )

        runtime = build_runtime(settings)

        assert [b.name for b in runtime.rate_limiter.backends] == ["memory"]

    def test_sessions_use_configured_policy(self, settings):
        settings = settings.model_copy(
            update={"session_limit_policy": SessionLimitPolicy.REJECT, "max_concurrent_sessions": 1}
        )
        runtime = build_runtime(settings)

        assert runtime.sessions.policy == SessionLimitPolicy.REJECT
        assert runtime.sessions.max_concurrent == 1

    def test_startup_check_refuses_unreachable_store(self, settings, monkeypatch):
        runtime = build_runtime(settings)

        def _down():
            raise BackendUnavailable("memory", "store offline")

        monkeypatch.setattr(runtime.store, "verify_connection", _down)

        with pytest.raises(StartupError):
            runtime.startup_check()

    def test_startup_check_with_sqlite(self, settings):
        settings = settings.model_copy(update={"store_backend": StoreBackend.SQLITE})
        runtime = build_runtime(settings)

        runtime.startup_check()

        assert runtime.health()["store"] == {"backend": "sqlite", "healthy": True}

    def test_mask_url_password(self):
        assert _mask_url_password("redis://:pw@localhost:6379/0") == "redis://:***@localhost:6379/0"
        assert _mask_url_password("redis://localhost:6379/0") == "redis://localhost:6379/0"
        assert _mask_url_password(None) is None


class TestLogRedaction:
    def test_secret_values_are_masked(self):
        event = _redact_secrets(None, "info", {"token": "abcdef123456", "password_hash": "v1:deadbeef"})

        assert event["token"] == "ab***56"
        assert event["password_hash"] == "v1***ef"

    def test_record_identifiers_are_kept(self):
        token_id = "6f1c2d4e-0000-4000-8000-000000000001"
        event = _redact_secrets(
            None,
            "info",
            {"token_id": token_id, "evicted_session_ids": ["a", "b"], "user_id": "user-1"},
        )

        assert event["token_id"] == token_id
        assert event["evicted_session_ids"] == ["a", "b"]
        assert event["user_id"] == "user-1"
