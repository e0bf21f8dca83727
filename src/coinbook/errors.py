"""Public error kinds.

Services raise these; the HTTP error handlers map them to status codes and the
queue workers use them to decide between retrying and failing a job.
"""

from __future__ import annotations

from typing import Any


class CoinbookError(Exception):
    """Base class for every error that crosses a service boundary."""

    status_code: int = 500
    code: str = "internal"
    retryable: bool = False

    def __init__(self, message: str = "", *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        self.details = details or {}


class NotAuthenticated(CoinbookError):
    status_code = 401
    code = "not_authenticated"


class NotAuthorized(CoinbookError):
    status_code = 403
    code = "not_authorized"


class InvalidInput(CoinbookError):
    status_code = 400
    code = "invalid_input"


class NotFound(CoinbookError):
    status_code = 404
    code = "not_found"


class Conflict(CoinbookError):
    status_code = 409
    code = "conflict"


class DependencyUnavailable(CoinbookError):
    """Data store, cache backend or catalog source unreachable."""

    status_code = 503
    code = "dependency_unavailable"
    retryable = True


class DegradedResult(CoinbookError):
    """A stale cached value was served because its refresh failed.

    Never sent to clients as an error; telemetry records it and the response
    carries an ``X-Degraded`` header.
    """

    status_code = 200
    code = "degraded"


class Internal(CoinbookError):
    status_code = 500
    code = "internal"


class PermanentJobError(CoinbookError):
    """A queued job can never succeed (malformed payload, unknown topic)."""

    status_code = 422
    code = "permanent_job_error"


class JobLeaseExpired(CoinbookError):
    """A worker held a job past its lease; the queue takes it back."""

    code = "job_lease_expired"
    retryable = True
