from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from civicguard.api.error_handling import register_exception_handlers
from civicguard.api.schemas import Envelope, HealthResponse, StatsResponse
from civicguard.config import Settings
from civicguard.logging import get_logger, set_correlation_id
from civicguard.service.runtime import Runtime, StartupError, build_runtime

logger = get_logger(__name__)

__version__ = "0.1.0"


def create_app(settings: Optional[Settings] = None, runtime: Optional[Runtime] = None) -> FastAPI:
    """Build the application; backends are constructed once per app in the lifespan."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        rt = runtime or build_runtime(settings)
        try:
            await asyncio.to_thread(rt.startup_check)
        except StartupError:
            logger.error("startup_refused", store_type=rt.store.name)
            rt.close()
            raise
        app.state.runtime = rt
        if rt.settings.sweeper_enabled:
            await rt.sweeper.start()

        yield

        try:
            await rt.sweeper.stop()
            rt.close()
            logger.info("runtime_cleanup_complete")
        except Exception as exc:
            logger.error("shutdown_failed", error=str(exc))

    app = FastAPI(title="civicguard", version=__version__, lifespan=lifespan)

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        """Bind the X-Request-ID (or a fresh id) to the logging context."""
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    register_exception_handlers(app)

    @app.get("/healthz")
    async def healthz(request: Request) -> JSONResponse:
        rt: Runtime = request.app.state.runtime
        health = await asyncio.to_thread(rt.health)
        body = HealthResponse.from_runtime_health(health, sweeper_running=rt.sweeper.running)
        status_code = 503 if body.status == "unavailable" else 200
        envelope = Envelope(status="ok", data=body.model_dump())
        return JSONResponse(status_code=status_code, content=envelope.model_dump())

    @app.get("/stats")
    async def stats(request: Request) -> Envelope:
        """Session, token and rate-limit counters for operators."""
        rt: Runtime = request.app.state.runtime
        data = await asyncio.to_thread(rt.stats)
        return Envelope(status="ok", data=StatsResponse(**data).model_dump())

    return app
