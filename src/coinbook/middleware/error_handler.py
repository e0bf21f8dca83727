"""Global error handlers: consistent JSON error responses."""

from __future__ import annotations

import structlog
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from coinbook.errors import CoinbookError
from coinbook.telemetry import Telemetry

logger = structlog.get_logger()

_HTTP_CODES = {404: "not_found", 405: "method_not_allowed", 401: "not_authenticated", 403: "not_authorized"}


def _telemetry(request: Request) -> Telemetry | None:
    services = getattr(request.app.state, "services", None)
    return services.telemetry if services is not None else None


def setup_error_handlers(app: FastAPI) -> None:
    """Register global exception handlers."""

    @app.exception_handler(CoinbookError)
    async def coinbook_error_handler(request: Request, exc: CoinbookError) -> JSONResponse:
        """Public error kinds map to their status with ``{detail, code, **details}``."""
        if exc.status_code >= 500:
            telemetry = _telemetry(request)
            correlation_id = structlog.contextvars.get_contextvars().get("request_id")
            if telemetry is not None:
                telemetry.capture_exception(exc, tags={"path": request.url.path})
            logger.error("service_error", path=request.url.path, code=exc.code, error=exc.message)
            return JSONResponse(
                status_code=exc.status_code,
                content={"detail": exc.message, "code": exc.code, "correlation_id": correlation_id, **exc.details},
            )
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.message, "code": exc.code, **exc.details},
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(_request: Request, exc: StarletteHTTPException) -> JSONResponse:
        """Routing errors (unknown path, wrong method) in the same shape."""
        code = _HTTP_CODES.get(exc.status_code, "http_error")
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.detail, "code": code},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(_request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=400,
            content={"detail": "Validation error", "code": "invalid_input", "errors": jsonable_encoder(exc.errors())},
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Catch-all for unhandled exceptions; the correlation id is the request id."""
        correlation_id = structlog.contextvars.get_contextvars().get("request_id")
        telemetry = _telemetry(request)
        if telemetry is not None:
            telemetry.capture_exception(exc, tags={"path": request.url.path, "method": request.method})
        logger.error(
            "unhandled_exception",
            path=request.url.path,
            method=request.method,
            error=str(exc),
            exc_info=exc,
        )
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error", "code": "internal", "correlation_id": correlation_id},
        )
