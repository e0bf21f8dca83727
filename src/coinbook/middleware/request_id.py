"""Request ID middleware: generates or propagates X-Request-Id, flags degraded responses."""

import uuid

import structlog
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from coinbook.telemetry import begin_request_marks


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Every request gets an X-Request-Id; stale cache reads add X-Degraded."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get("X-Request-Id", str(uuid.uuid4()))
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)
        marks = begin_request_marks()
        response = await call_next(request)
        response.headers["X-Request-Id"] = request_id
        if marks.get("degraded"):
            response.headers["X-Degraded"] = "1"
        return response
