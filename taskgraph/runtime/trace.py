"""Trace: append-only structured event log for one run.

Every lifecycle step of a run (node start/end, level boundaries, mutation
decisions, template warnings) is appended here as a TraceEvent and mirrored
to the ``taskgraph.trace`` logger so it shows up in structured logs with the
current trace context.

Subscribers are called synchronously after each append. They are how a
host observes a run live (progress UI, tests that cancel at a boundary).
A subscriber that raises is logged and ignored; it never breaks the run.

Usage::

    trace = Trace()
    trace.info("node.start", {"id": "search", "kind": "search"})
    trace.count()  # -> 1
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

logger = logging.getLogger("taskgraph.trace")


class TraceLevel(StrEnum):
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


_LOG_LEVELS = {
    TraceLevel.INFO: logging.INFO,
    TraceLevel.WARN: logging.WARNING,
    TraceLevel.ERROR: logging.ERROR,
}


class TraceEvent(BaseModel):
    """One entry in the trace."""

    seq: int
    level: TraceLevel
    event: str
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())


TraceSubscriber = Callable[[TraceEvent], None]


class Trace:
    """Append-only, thread-safe event log."""

    def __init__(self, mirror_to_logging: bool = True) -> None:
        self._events: list[TraceEvent] = []
        self._subscribers: list[TraceSubscriber] = []
        self._lock = threading.Lock()
        self._mirror = mirror_to_logging

    def _append(self, level: TraceLevel, event: str, data: dict[str, Any] | None) -> TraceEvent:
        with self._lock:
            entry = TraceEvent(seq=len(self._events), level=level, event=event, data=data or {})
            self._events.append(entry)
            subscribers = list(self._subscribers)

        if self._mirror:
            node_id = entry.data.get("id") or entry.data.get("node_id")
            logger.log(
                _LOG_LEVELS[level],
                "%s %s",
                event,
                entry.data,
                extra={"event": event, "node_id": node_id},
            )

        for callback in subscribers:
            try:
                callback(entry)
            except Exception:
                logger.exception("Trace subscriber failed on event '%s'", event)
        return entry

    def info(self, event: str, data: dict[str, Any] | None = None) -> TraceEvent:
        return self._append(TraceLevel.INFO, event, data)

    def warn(self, event: str, data: dict[str, Any] | None = None) -> TraceEvent:
        return self._append(TraceLevel.WARN, event, data)

    def error(self, event: str, data: dict[str, Any] | None = None) -> TraceEvent:
        return self._append(TraceLevel.ERROR, event, data)

    def count(self) -> int:
        with self._lock:
            return len(self._events)

    @property
    def events(self) -> list[TraceEvent]:
        """Snapshot of all events so far."""
        with self._lock:
            return list(self._events)

    def filter(
        self,
        event: str | None = None,
        level: TraceLevel | str | None = None,
    ) -> list[TraceEvent]:
        """Events matching an exact event name and/or level."""
        return [
            e
            for e in self.events
            if (event is None or e.event == event) and (level is None or e.level == level)
        ]

    def subscribe(self, callback: TraceSubscriber) -> Callable[[], None]:
        """Register a callback for new events. Returns an unsubscribe function."""
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def to_list(self) -> list[dict[str, Any]]:
        return [e.model_dump(mode="json") for e in self.events]
