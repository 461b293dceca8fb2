"""Synchronous lifecycle event channel for presentation layers.

Delivery contract:

- ``emit`` calls every current subscriber synchronously, in subscription
  order, before returning. There is no buffering and no backpressure, so a
  slow subscriber slows the emitter.
- Delivery iterates over a snapshot of the subscriber list taken at emit
  time. Subscribing or unsubscribing from inside a listener takes effect on
  the next ``emit``.
- A subscriber added after an event was emitted never sees that event.
- A listener that raises is logged and skipped; the remaining subscribers
  still receive the event.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field, fields
from datetime import datetime
from typing import Any, ClassVar

from parallel_learn.orchestrator.models import utc_now

logger = logging.getLogger(__name__)


def _timestamp() -> str:
    return utc_now().isoformat()


@dataclass(frozen=True, slots=True, kw_only=True)
class WorkerEvent:
    """Base lifecycle event."""

    type: ClassVar[str] = ""
    timestamp: str = field(default_factory=_timestamp)

    def to_dict(self) -> dict[str, Any]:
        """Serialize with camelCase keys for UI consumers."""

        payload: dict[str, Any] = {"type": self.type}
        for item in fields(self):
            value = getattr(self, item.name)
            if isinstance(value, datetime):
                value = value.isoformat()
            payload[_camel(item.name)] = value
        return payload


@dataclass(frozen=True, slots=True, kw_only=True)
class WorkerQueuedEvent(WorkerEvent):
    type: ClassVar[str] = "worker:queued"
    worker_id: str
    worker_name: str
    folder_count: int


@dataclass(frozen=True, slots=True, kw_only=True)
class WorkerStartedEvent(WorkerEvent):
    type: ClassVar[str] = "worker:started"
    worker_id: str
    attempt: int = 1


@dataclass(frozen=True, slots=True, kw_only=True)
class WorkerOutputEvent(WorkerEvent):
    type: ClassVar[str] = "worker:output"
    worker_id: str
    data: str
    stream: str


@dataclass(frozen=True, slots=True, kw_only=True)
class WorkerCompleteEvent(WorkerEvent):
    type: ClassVar[str] = "worker:complete"
    worker_id: str
    duration_ms: int


@dataclass(frozen=True, slots=True, kw_only=True)
class WorkerErrorEvent(WorkerEvent):
    type: ClassVar[str] = "worker:error"
    worker_id: str
    error: str
    duration_ms: int
    canceled: bool = False


@dataclass(frozen=True, slots=True, kw_only=True)
class WorkerRetryingEvent(WorkerEvent):
    type: ClassVar[str] = "worker:retrying"
    worker_id: str
    retry_attempt: int
    max_retries: int
    delay_ms: int
    previous_error: str


@dataclass(frozen=True, slots=True, kw_only=True)
class WorkerCancelingEvent(WorkerEvent):
    type: ClassVar[str] = "worker:canceling"
    worker_id: str


@dataclass(frozen=True, slots=True, kw_only=True)
class WorkersProgressEvent(WorkerEvent):
    type: ClassVar[str] = "workers:progress"
    completed_count: int
    running_count: int
    total_count: int
    progress_percent: int
    elapsed_ms: int
    memory_mb: float | None = None
    cpu_percent: float | None = None


@dataclass(frozen=True, slots=True, kw_only=True)
class WorkersAllCompleteEvent(WorkerEvent):
    type: ClassVar[str] = "workers:all-complete"
    total_count: int
    success_count: int
    failed_count: int
    total_duration_ms: int
    sequential_duration_ms: int
    speedup_factor: float


@dataclass(frozen=True, slots=True, kw_only=True)
class WorkersCancelingEvent(WorkerEvent):
    type: ClassVar[str] = "workers:canceling"
    running_count: int
    total_count: int


@dataclass(frozen=True, slots=True, kw_only=True)
class MergeStartedEvent(WorkerEvent):
    type: ClassVar[str] = "merge:started"
    worker_count: int


@dataclass(frozen=True, slots=True, kw_only=True)
class MergeProgressEvent(WorkerEvent):
    type: ClassVar[str] = "merge:progress"
    message: str
    elapsed_ms: int


@dataclass(frozen=True, slots=True, kw_only=True)
class MergeCompleteEvent(WorkerEvent):
    type: ClassVar[str] = "merge:complete"
    duration_ms: int
    output_path: str


@dataclass(frozen=True, slots=True, kw_only=True)
class MergeErrorEvent(WorkerEvent):
    type: ClassVar[str] = "merge:error"
    error: str
    backup_path: str | None = None


EventListener = Callable[[WorkerEvent], None]


class EventBus:
    """In-process synchronous publish/subscribe channel."""

    def __init__(self) -> None:
        self._listeners: list[EventListener] = []

    def subscribe(self, listener: EventListener) -> Callable[[], None]:
        """Register a listener and return its idempotent unsubscribe callable."""

        self._listeners.append(listener)
        subscribed = True

        def _unsubscribe() -> None:
            nonlocal subscribed
            if not subscribed:
                return
            subscribed = False
            try:
                self._listeners.remove(listener)
            except ValueError:
                return

        return _unsubscribe

    def emit(self, event: WorkerEvent) -> None:
        for listener in tuple(self._listeners):
            try:
                listener(event)
            except Exception:  # noqa: BLE001
                logger.exception("Event listener failed on %s", event.type)

    @property
    def subscriber_count(self) -> int:
        return len(self._listeners)


class RecordingListener:
    """Listener that keeps every event it receives, in order."""

    def __init__(self) -> None:
        self.events: list[WorkerEvent] = []

    def __call__(self, event: WorkerEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: str) -> list[WorkerEvent]:
        return [event for event in self.events if event.type == event_type]

    def types(self) -> list[str]:
        return [event.type for event in self.events]


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)
