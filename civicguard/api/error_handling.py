from __future__ import annotations

from typing import Dict, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from civicguard.api.schemas import Envelope, ErrorBody
from civicguard.logging import get_logger
from civicguard.service.errors import RateLimitExceededError, ServiceError
from civicguard.storage.errors import BackendUnavailable, ConstraintViolation

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "unauthorized",
    404: "not_found",
    405: "validation_error",
    409: "conflict",
    422: "validation_error",
    429: "rate_limited",
    500: "server_error",
    503: "backend_unavailable",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    """Render the standard error envelope."""
    error_code = code or _error_code_for_status(status_code)
    error_body = ErrorBody(code=error_code, message=message, details=details)
    envelope = Envelope(status="error", error=error_body)
    return JSONResponse(status_code=status_code, content=envelope.model_dump(), headers=headers)


def register_exception_handlers(app: FastAPI) -> None:
    """Install envelope handlers for service and storage errors."""

    @app.exception_handler(RateLimitExceededError)
    async def handle_rate_limited(request: Request, exc: RateLimitExceededError):
        logger.warning(
            "rate_limited",
            path=request.url.path,
            method=request.method,
            retry_after=exc.retry_after,
        )
        return _error_response(
            exc.status_code,
            exc.message,
            exc.detail,
            code=exc.error_code,
            headers={"Retry-After": str(exc.retry_after)},
        )

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
            detail=exc.detail,
        )
        return _error_response(exc.status_code, exc.message, exc.detail, code=exc.error_code)

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
        )
        return _error_response(409, exc.message, code="conflict")

    @app.exception_handler(BackendUnavailable)
    async def handle_backend_unavailable(request: Request, exc: BackendUnavailable):
        logger.error(
            "backend_unavailable",
            path=request.url.path,
            method=request.method,
            backend=exc.backend,
            error=exc.message,
        )
        return _error_response(503, "backend unavailable", code="backend_unavailable")

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        details = exc.detail if isinstance(exc.detail, (dict, list)) else None
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        return _error_response(exc.status_code, message, details)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return _error_response(500, "internal server error", code="server_error")
