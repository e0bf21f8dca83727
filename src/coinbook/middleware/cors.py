"""Cross-origin access for the storefront theme and the admin dashboard."""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from coinbook.config import Settings

# Headers the browser clients read back from responses
EXPOSED_HEADERS = ["X-Request-Id", "X-Degraded", "X-RateLimit-Limit", "X-RateLimit-Remaining", "Retry-After"]


def setup_cors(app: FastAPI, settings: Settings) -> None:
    # Session tokens travel in a cookie, so origins must be listed explicitly.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "X-Request-Id", "X-Session-Id"],
        expose_headers=EXPOSED_HEADERS,
        max_age=600,
    )
