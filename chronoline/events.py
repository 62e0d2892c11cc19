"""Request lifecycle events.

One emitter is created per timeline request. The controller and relay
publish milestones to it (classification outcome, generation start,
completion, cancellation, errors), each stamped with the request id and
the time elapsed since the request began. The server attaches a listener
that logs a per-request summary; tests read ``history``.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Callable
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class EventType(StrEnum):
    """Milestones of a single timeline request."""

    REQUEST_STARTED = "request_started"
    CLASSIFIED = "classified"
    GENERATION_STARTED = "generation_started"
    REQUEST_COMPLETED = "request_completed"
    REQUEST_CANCELLED = "request_cancelled"
    ERROR = "error"


class TimelineEvent(BaseModel):
    """One lifecycle event of a timeline request."""

    type: EventType = Field(description="Event type")
    request_id: str = Field(description="Id shared by all events of one request")
    elapsed: float = Field(
        default=0.0, ge=0.0, description="Seconds since the request started"
    )
    timestamp: float = Field(
        default_factory=time.time,
        description="Unix timestamp when the event occurred",
    )
    data: dict[str, Any] = Field(
        default_factory=dict,
        description="Event payload, varies by event type",
    )


EventListener = Callable[[TimelineEvent], Any]


def new_request_id() -> str:
    return uuid.uuid4().hex[:8]


class TimelineEventEmitter:
    """Publishes the events of one request to sync or async listeners.

    Passed to the controller and relay as an optional dependency. A
    listener that raises is logged and skipped; it never fails the
    request.
    """

    def __init__(self, request_id: str | None = None) -> None:
        self.request_id = request_id or new_request_id()
        self._started = time.monotonic()
        self._listeners: list[EventListener] = []
        self._history: list[TimelineEvent] = []

    @property
    def history(self) -> list[TimelineEvent]:
        """All events emitted so far, oldest first."""
        return list(self._history)

    def of_type(self, event_type: EventType) -> list[TimelineEvent]:
        return [event for event in self._history if event.type == event_type]

    def add_listener(self, listener: EventListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: EventListener) -> None:
        self._listeners = [ln for ln in self._listeners if ln is not listener]

    async def emit(self, event_type: EventType, **data: Any) -> TimelineEvent:
        """Record an event and deliver it to every listener in order."""
        event = TimelineEvent(
            type=event_type,
            request_id=self.request_id,
            elapsed=time.monotonic() - self._started,
            data=data,
        )
        self._history.append(event)

        for listener in self._listeners:
            try:
                result = listener(event)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                logger.exception("[%s] Event listener failed on %s", self.request_id, event_type)
        return event
