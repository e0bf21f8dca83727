"""HTTP middleware stack for the API process."""

from fastapi import FastAPI

from coinbook.config import Settings
from coinbook.middleware.cors import setup_cors
from coinbook.middleware.error_handler import setup_error_handlers
from coinbook.middleware.logging import setup_logging
from coinbook.middleware.rate_limit import RateLimitMiddleware
from coinbook.middleware.request_id import RequestIdMiddleware


def setup_middleware(app: FastAPI, settings: Settings) -> None:
    """Wire logging, error mapping and the middleware chain.

    The last middleware added runs first, so a request passes through
    CORS, then request-id binding, then the rate limiter. Rate-limited
    responses therefore still carry a request id and CORS headers.
    """
    setup_logging(settings)
    setup_error_handlers(app)
    if settings.rate_limit_requests > 0:
        app.add_middleware(
            RateLimitMiddleware,
            requests_per_window=settings.rate_limit_requests,
            window_seconds=settings.rate_limit_window_seconds,
        )
    app.add_middleware(RequestIdMiddleware)
    setup_cors(app, settings)
