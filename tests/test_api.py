"""Tests for the FastAPI seam: rate-limit dependency, envelopes, lifespan."""

from unittest.mock import patch

import pytest
from fastapi import Depends, HTTPException
from fastapi.testclient import TestClient

from civicguard.api.rate_limit import rate_limit
from civicguard.app import create_app
from civicguard.config import StoreBackend
from civicguard.service.errors import SessionLimitError
from civicguard.service.hashing import generate_secret
from civicguard.service.runtime import StartupError, build_runtime
from civicguard.storage.errors import BackendUnavailable


@pytest.fixture
def runtime(settings, clock):
    return build_runtime(settings, clock=clock)


@pytest.fixture
def app(runtime):
    app = create_app(runtime=runtime)

    @app.post("/auth/login", dependencies=[Depends(rate_limit("login"))])
    async def login():
        return {"status": "ok"}

    @app.post("/auth/reset", dependencies=[Depends(rate_limit("password_reset", key=lambda r: r.headers["X-User"]))])
    async def reset():
        return {"status": "ok"}

    @app.get("/admin/only")
    async def admin_only():
        raise HTTPException(status_code=403, detail="admin role required")

    @app.post("/auth/limited-session")
    async def limited_session():
        raise SessionLimitError("concurrent session limit reached", detail={"limit": 3})

    return app


class TestRateLimitDependency:
    def test_allowed_requests_carry_headers(self, app):
        with TestClient(app) as client:
            resp = client.post("/auth/login")

        assert resp.status_code == 200
        assert resp.headers["X-RateLimit-Limit"] == "5"
        assert resp.headers["X-RateLimit-Remaining"] == "4"
        assert int(resp.headers["X-RateLimit-Reset"]) == 900

    def test_sixth_login_is_rejected_with_retry_after(self, app):
        with TestClient(app) as client:
            statuses = [client.post("/auth/login").status_code for _ in range(5)]
            resp = client.post("/auth/login")

        assert statuses == [200] * 5
        assert resp.status_code == 429
        body = resp.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "rate_limited"
        retry_after = body["error"]["details"]["retry_after"]
        assert resp.headers["Retry-After"] == str(retry_after)
        assert 1 <= retry_after <= 900

    def test_custom_key_function(self, app):
        with TestClient(app) as client:
            for _ in range(3):
                assert client.post("/auth/reset", headers={"X-User": "u1"}).status_code == 200
            assert client.post("/auth/reset", headers={"X-User": "u1"}).status_code == 429
            assert client.post("/auth/reset", headers={"X-User": "u2"}).status_code == 200

    def test_limiter_outage_fails_open(self, app, runtime):
        backend = runtime.rate_limiter.backends[0]
        with patch.object(backend, "increment", side_effect=BackendUnavailable("memory", "lock timeout")):
            with TestClient(app) as client:
                statuses = [client.post("/auth/login").status_code for _ in range(8)]

        assert statuses == [200] * 8

    def test_trusted_client_bypasses_limit(self, settings, clock):
        # TestClient connects as host "testclient"
        settings = settings.model_copy(update={"rate_limit_trusted": ["testclient"]})
        app = create_app(runtime=build_runtime(settings, clock=clock))

        @app.post("/auth/login", dependencies=[Depends(rate_limit("login"))])
        async def login():
            return {"status": "ok"}

        with TestClient(app) as client:
            responses = [client.post("/auth/login") for _ in range(8)]

        assert [r.status_code for r in responses] == [200] * 8
        assert "X-RateLimit-Limit" not in responses[-1].headers


class TestErrorEnvelope:
    def test_service_error_mapped_to_envelope(self, app):
        with TestClient(app) as client:
            resp = client.post("/auth/limited-session")

        assert resp.status_code == 409
        body = resp.json()
        assert body["error"]["code"] == "session_limit_reached"
        assert body["error"]["details"] == {"limit": 3}

    def test_forbidden_maps_to_unauthorized(self, app):
        with TestClient(app) as client:
            resp = client.get("/admin/only")

        assert resp.status_code == 403
        body = resp.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "unauthorized"
        assert body["error"]["message"] == "admin role required"

    def test_request_id_echoed(self, app):
        with TestClient(app) as client:
            resp = client.get("/healthz", headers={"X-Request-ID": "req-123"})

        assert resp.headers["X-Request-ID"] == "req-123"


class TestLifespan:
    def test_healthz_reports_backends(self, app):
        with TestClient(app) as client:
            resp = client.get("/healthz")

        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["status"] == "ok"
        assert data["store"] == {"backend": "memory", "healthy": True}
        assert [b["backend"] for b in data["rate_limit"]] == ["memory"]

    def test_refuses_to_start_when_store_unreachable(self, runtime):
        app = create_app(runtime=runtime)
        with patch.object(
            runtime.store,
            "verify_connection",
            side_effect=BackendUnavailable("sqlite", "unable to open database file"),
        ):
            with pytest.raises(StartupError):
                with TestClient(app):
                    pass

    def test_sweeper_bound_to_lifespan(self, settings, clock):
        settings = settings.model_copy(update={"sweeper_enabled": True})
        runtime = build_runtime(settings, clock=clock)
        app = create_app(runtime=runtime)

        with TestClient(app):
            assert runtime.sweeper.running is True

        assert runtime.sweeper.running is False

    def test_sqlite_runtime_starts(self, settings, clock):
        settings = settings.model_copy(
            update={"store_backend": StoreBackend.SQLITE, "rate_limit_backends": ["sqlite", "memory"]}
        )
        runtime = build_runtime(settings, clock=clock)
        app = create_app(runtime=runtime)

        with TestClient(app) as client:
            data = client.get("/healthz").json()["data"]

        assert data["store"]["backend"] == "sqlite"
        assert [b["backend"] for b in data["rate_limit"]] == ["sqlite", "memory"]


class TestStatsEndpoint:
    def test_reports_sessions_tokens_and_counters(self, app, runtime):
        runtime.sessions.create("user-1", generate_secret())
        runtime.sessions.create("user-1", generate_secret())
        runtime.tokens.create_password_reset_token("user-1")

        with TestClient(app) as client:
            client.post("/auth/login")
            resp = client.get("/stats")

        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "ok"
        data = body["data"]
        assert data["sessions"]["active"] == 2
        assert data["sessions"]["top_users"] == [{"user_id": "user-1", "active": 2}]
        assert data["tokens"]["password_reset"] == {"active": 1, "used": 0, "expired": 0}
        assert data["tokens"]["email_verification"]["active"] == 0
        assert data["rate_limit"]["rules"]["login"]["max_hits"] == 5
        memory_backend = data["rate_limit"]["backends"][0]
        assert memory_backend["backend"] == "memory"
        assert memory_backend["active_windows"] == 1

    def test_store_outage_maps_to_503(self, app, runtime):
        with TestClient(app) as client:
            with patch.object(
                runtime.store,
                "session_stats",
                side_effect=BackendUnavailable("memory", "lock timeout"),
            ):
                resp = client.get("/stats")

        assert resp.status_code == 503
        assert resp.json()["error"]["code"] == "backend_unavailable"
