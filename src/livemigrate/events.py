"""
Outbound lifecycle events.

The orchestrator and the replication manager publish typed events to an
EventChannel. A transport layer (websocket push, message bus, dashboard)
subscribes to it; the core never waits for anyone to listen. Each
subscriber owns a bounded asyncio.Queue and events that do not fit are
dropped for that subscriber only.

Usage:
    >>> channel = EventChannel()
    >>> queue = channel.subscribe()
    >>> orchestrator = MigrationOrchestrator(events=channel)
    >>> event = await queue.get()
    >>> print(event.type.value, event.payload)
    >>>
    >>> # Or as an async iterator that stops when the job settles
    >>> async for event in channel.stream(job_id=job.id):
    ...     print(event.type.value)
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections import deque
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import UUID

logger = logging.getLogger(__name__)


class MigrationEventType(Enum):
    """Kinds of outbound events."""

    JOB_CREATED = "job_created"
    JOB_STARTED = "job_started"
    JOB_PROGRESS = "job_progress"
    JOB_PAUSED = "job_paused"
    JOB_RESUMED = "job_resumed"
    JOB_COMPLETED = "job_completed"
    JOB_FAILED = "job_failed"
    JOB_ROLLED_BACK = "job_rolled_back"
    SHADOW_SETUP_STARTED = "shadow_setup_started"
    SHADOW_SETUP_COMPLETED = "shadow_setup_completed"
    SHADOW_SETUP_FAILED = "shadow_setup_failed"
    REPLICATION_ERROR = "replication_error"
    CUTOVER_STARTED = "cutover_started"
    CUTOVER_COMPLETED = "cutover_completed"
    CUTOVER_FAILED = "cutover_failed"
    CONNECTIONS_UPDATED = "connections_updated"

    @property
    def ends_job(self) -> bool:
        """True for events after which a job stops emitting until acted on."""
        return self in (
            MigrationEventType.JOB_COMPLETED,
            MigrationEventType.JOB_FAILED,
            MigrationEventType.JOB_ROLLED_BACK,
        )


@dataclass(frozen=True)
class MigrationEvent:
    """
    One outbound event.

    Attributes:
        type: Event kind.
        job_id: Job the event belongs to, if any.
        payload: Event-specific data (percent, error message, table, ...).
        occurred_at: When the event was created.
    """

    type: MigrationEventType
    job_id: UUID | None = None
    payload: dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "job_id": str(self.job_id) if self.job_id else None,
            "payload": self.payload,
            "occurred_at": self.occurred_at.isoformat(),
        }


class EventChannel:
    """
    Non-blocking fan-out of MigrationEvents to subscriber queues.

    Args:
        queue_size: Bound of each subscriber queue.
        history_size: Number of recent events kept for inspection.
    """

    def __init__(self, queue_size: int = 100, history_size: int = 1000) -> None:
        self._queue_size = queue_size
        self._subscribers: list[asyncio.Queue[MigrationEvent]] = []
        self._history: deque[MigrationEvent] = deque(maxlen=history_size)
        self._dropped = 0

    @property
    def history(self) -> list[MigrationEvent]:
        """Recent events, oldest first."""
        return list(self._history)

    @property
    def dropped(self) -> int:
        """Events dropped because a subscriber queue was full."""
        return self._dropped

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> asyncio.Queue[MigrationEvent]:
        """Register and return a new subscriber queue."""
        queue: asyncio.Queue[MigrationEvent] = asyncio.Queue(maxsize=self._queue_size)
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[MigrationEvent]) -> None:
        """Remove a subscriber queue. Unknown queues are ignored."""
        with contextlib.suppress(ValueError):
            self._subscribers.remove(queue)

    def publish(self, event: MigrationEvent) -> None:
        """
        Deliver an event to every subscriber without waiting.

        Args:
            event: Event to deliver
        """
        self._history.append(event)
        for queue in self._subscribers:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                self._dropped += 1
                logger.debug(
                    "Dropping %s event for slow subscriber",
                    event.type.value,
                    extra={"job_id": str(event.job_id) if event.job_id else None},
                )

    def emit(
        self,
        event_type: MigrationEventType,
        job_id: UUID | None = None,
        **payload: Any,
    ) -> MigrationEvent:
        """Build and publish an event."""
        event = MigrationEvent(type=event_type, job_id=job_id, payload=payload)
        self.publish(event)
        return event

    async def stream(self, job_id: UUID | None = None) -> AsyncIterator[MigrationEvent]:
        """
        Iterate over events as they arrive.

        Args:
            job_id: If given, only that job's events are yielded and the
                iterator ends after the job completes, fails or rolls back.

        Yields:
            MigrationEvent instances in publication order
        """
        queue = self.subscribe()
        try:
            while True:
                event = await queue.get()
                if job_id is not None and event.job_id != job_id:
                    continue
                yield event
                if job_id is not None and event.type.ends_job:
                    return
        finally:
            self.unsubscribe(queue)


__all__ = [
    "MigrationEventType",
    "MigrationEvent",
    "EventChannel",
]
