"""Error telemetry sink.

Captured exceptions, audit messages and degraded-cache marks are written as
structured log events and kept in a bounded ring so the readiness endpoint can
report what happened recently.
"""

from __future__ import annotations

import time
import uuid
from collections import deque
from contextvars import ContextVar
from dataclasses import dataclass, field
from typing import Any

import structlog

logger = structlog.get_logger()

# Per-request marks; the middleware installs a fresh dict before the endpoint runs.
_request_marks: ContextVar[dict[str, Any] | None] = ContextVar("coinbook_request_marks", default=None)


def begin_request_marks() -> dict[str, Any]:
    """Install a mark holder for the current request and return it."""
    marks: dict[str, Any] = {}
    _request_marks.set(marks)
    return marks


def _correlation_id() -> str | None:
    return structlog.contextvars.get_contextvars().get("request_id")


@dataclass
class TelemetryEvent:
    event_id: str
    kind: str
    message: str
    level: str
    correlation_id: str | None
    tags: dict[str, Any] = field(default_factory=dict)
    extra: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


class Telemetry:
    """Structured-log telemetry with a ring of recent events."""

    def __init__(self, *, dsn: str = "", environment: str = "development", max_events: int = 200) -> None:
        self.dsn = dsn
        self.environment = environment
        self.recent: deque[TelemetryEvent] = deque(maxlen=max_events)

    def _record(
        self,
        kind: str,
        message: str,
        level: str,
        tags: dict[str, Any] | None,
        extra: dict[str, Any] | None,
    ) -> TelemetryEvent:
        event = TelemetryEvent(
            event_id=uuid.uuid4().hex,
            kind=kind,
            message=message,
            level=level,
            correlation_id=_correlation_id(),
            tags={"environment": self.environment, **(tags or {})},
            extra=dict(extra or {}),
        )
        self.recent.append(event)
        return event

    def capture_exception(
        self,
        exc: BaseException,
        *,
        tags: dict[str, Any] | None = None,
        extra: dict[str, Any] | None = None,
    ) -> str:
        """Record an exception and return its event id."""
        event = self._record("exception", f"{type(exc).__name__}: {exc}", "error", tags, extra)
        logger.error(
            "telemetry_exception",
            event_id=event.event_id,
            correlation_id=event.correlation_id,
            tags=event.tags,
            extra=event.extra,
            exc_info=exc,
        )
        return event.event_id

    def capture_message(
        self,
        message: str,
        *,
        level: str = "warning",
        tags: dict[str, Any] | None = None,
        extra: dict[str, Any] | None = None,
    ) -> str:
        """Record an audit or warning message and return its event id."""
        event = self._record("message", message, level, tags, extra)
        log = logger.warning if level == "warning" else logger.info
        log(
            "telemetry_message",
            message=message,
            event_id=event.event_id,
            correlation_id=event.correlation_id,
            tags=event.tags,
            extra=event.extra,
        )
        return event.event_id

    def mark_degraded(self, source: str, exc: BaseException | None = None) -> None:
        """Flag the current request as served from stale data."""
        marks = _request_marks.get()
        if marks is not None:
            marks["degraded"] = True
        self._record("degraded", source, "warning", {"source": source}, {"error": str(exc) if exc else None})
        logger.warning("degraded_result", source=source, error=str(exc) if exc else None)

    def stats(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for event in self.recent:
            counts[event.kind] = counts.get(event.kind, 0) + 1
        return counts
