"""Fixed-window rate limiting per client IP.

Counters live in Redis when it is initialized, so every API replica shares
one budget per client. Without Redis, or while Redis errors, each process
counts on its own.
"""

import logging
import time
from typing import Any

from redis.exceptions import RedisError
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from coinbook.redis_client import get_redis, redis_configured

logger = logging.getLogger(__name__)

# Probes, and webhooks which carry their own signature check
EXEMPT_PATHS = frozenset({"/health", "/ready", "/version"})
EXEMPT_PREFIXES = ("/api/webhooks/",)


class LocalWindows:
    """In-process counters; only the current window is kept."""

    def __init__(self) -> None:
        self.window = -1
        self.counts: dict[str, int] = {}

    def hit(self, client: str, window: int) -> int:
        if window != self.window:
            self.window = window
            self.counts.clear()
        self.counts[client] = self.counts.get(client, 0) + 1
        return self.counts[client]


class RateLimitMiddleware(BaseHTTPMiddleware):
    def __init__(self, app: Any, requests_per_window: int = 100, window_seconds: int = 60) -> None:  # noqa: ANN401
        super().__init__(app)
        self.requests_per_window = requests_per_window
        self.window_seconds = window_seconds
        self.local = LocalWindows()

    async def _hit(self, client: str, window: int) -> int:
        if not redis_configured():
            return self.local.hit(client, window)
        key = f"ratelimit:{client}:{window}"
        try:
            pipe = get_redis().pipeline()
            pipe.incr(key)
            pipe.expire(key, self.window_seconds + 1)
            results: list[Any] = await pipe.execute()
        except RedisError as exc:
            logger.warning("Rate limit counter unavailable, counting locally: %s", exc)
            return self.local.hit(client, window)
        return int(results[0])

    def _headers(self, remaining: int) -> dict[str, str]:
        return {"X-RateLimit-Limit": str(self.requests_per_window), "X-RateLimit-Remaining": str(remaining)}

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        path = request.url.path
        if path in EXEMPT_PATHS or path.startswith(EXEMPT_PREFIXES):
            return await call_next(request)

        now = time.time()
        window = int(now) // self.window_seconds
        client = request.client.host if request.client else "unknown"
        count = await self._hit(client, window)

        if count > self.requests_per_window:
            retry_after = max(1, (window + 1) * self.window_seconds - int(now))
            return JSONResponse(
                status_code=429,
                content={"detail": "Rate limit exceeded. Try again later.", "code": "rate_limited"},
                headers={"Retry-After": str(retry_after), **self._headers(0)},
            )

        response = await call_next(request)
        response.headers.update(self._headers(max(0, self.requests_per_window - count)))
        return response
