"""Fixed-schedule retry loop around a worker attempt."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence

from parallel_learn.orchestrator.cancellation import CANCELED_ERROR, CancellationToken
from parallel_learn.orchestrator.events import (
    EventBus,
    WorkerCancelingEvent,
    WorkerCompleteEvent,
    WorkerErrorEvent,
    WorkerRetryingEvent,
    WorkerStartedEvent,
)
from parallel_learn.orchestrator.models import (
    FailureClass,
    Grouping,
    RootContext,
    WorkerRecord,
    WorkerStatus,
)
from parallel_learn.orchestrator.worker import WorkerResult, WorkerTask

logger = logging.getLogger(__name__)

BACKOFF_SCHEDULE_MS: tuple[int, ...] = (0, 5_000, 10_000)
DEFAULT_MAX_RETRIES = 3

Sleeper = Callable[[float], Awaitable[None]]


def delay_for(retry_index: int, schedule: Sequence[int] = BACKOFF_SCHEDULE_MS) -> int:
    """Delay in ms before the ``retry_index``-th retry (1-based), clamped to the table."""

    if retry_index < 1:
        raise ValueError(f"retry_index must be >= 1, got {retry_index}")
    if not schedule:
        return 0
    return schedule[min(retry_index - 1, len(schedule) - 1)]


class RetryPolicy:
    """Re-invokes :class:`WorkerTask` until success, exhaustion, or cancellation.

    Total attempts are ``max_retries + 1``. Cancellation is checked before each
    spawn and before and after each backoff sleep, so no retry is ever started
    once the token is set.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        task: WorkerTask,
        bus: EventBus,
        token: CancellationToken,
        max_retries: int = DEFAULT_MAX_RETRIES,
        schedule_ms: Sequence[int] = BACKOFF_SCHEDULE_MS,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        if max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {max_retries}")
        self.task = task
        self.bus = bus
        self.token = token
        self.max_retries = max_retries
        self.schedule_ms = tuple(schedule_ms)
        self._sleep = sleep

    async def run(
        self,
        grouping: Grouping,
        root_context: RootContext,
        record: WorkerRecord,
    ) -> WorkerRecord:
        """Drive ``record`` to a terminal status and return it."""

        last: WorkerResult | None = None
        for attempt in range(1, self.max_retries + 2):
            if self.token.is_cancelled:
                return self._finish_canceled(record)

            if attempt > 1:
                delay_ms = delay_for(attempt - 1, self.schedule_ms)
                previous_error = (last.error if last is not None else None) or "unknown error"
                record.transition(WorkerStatus.RETRYING)
                self.bus.emit(
                    WorkerRetryingEvent(
                        worker_id=record.id,
                        retry_attempt=attempt - 1,
                        max_retries=self.max_retries,
                        delay_ms=delay_ms,
                        previous_error=previous_error,
                    ),
                )
                logger.info(
                    "Retrying worker %s (%d/%d) in %dms: %s",
                    record.id,
                    attempt - 1,
                    self.max_retries,
                    delay_ms,
                    previous_error,
                )
                await self._backoff(delay_ms)
                if self.token.is_cancelled:
                    return self._finish_canceled(record)

            record.start_attempt(attempt)
            self.bus.emit(WorkerStartedEvent(worker_id=record.id, attempt=attempt))
            last = await self.task.run(grouping, root_context, record=record)

            if last.canceled or self.token.is_cancelled:
                return self._finish_canceled(record)
            if last.success:
                record.finish(WorkerStatus.COMPLETE, exit_code=last.exit_code)
                self.bus.emit(
                    WorkerCompleteEvent(worker_id=record.id, duration_ms=record.duration_ms),
                )
                return record

        error = (last.error if last is not None else None) or "Worker failed"
        record.finish(
            WorkerStatus.ERROR,
            error=error,
            exit_code=last.exit_code if last is not None else None,
            failure_class=last.classification.failure_class
            if last is not None and last.classification is not None
            else None,
        )
        logger.warning(
            "Worker %s failed after %d attempt(s): %s",
            record.id,
            record.attempt,
            error,
        )
        self.bus.emit(
            WorkerErrorEvent(worker_id=record.id, error=error, duration_ms=record.duration_ms),
        )
        return record

    async def _backoff(self, delay_ms: int) -> None:
        """Sleep ``delay_ms``, returning early when cancellation arrives."""

        if delay_ms <= 0:
            return
        sleeper = asyncio.ensure_future(self._sleep(delay_ms / 1000))
        cancelled = asyncio.ensure_future(self.token.wait())
        try:
            await asyncio.wait({sleeper, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for pending in (sleeper, cancelled):
                pending.cancel()

    def _finish_canceled(self, record: WorkerRecord) -> WorkerRecord:
        if record.status != WorkerStatus.CANCELING:
            record.transition(WorkerStatus.CANCELING)
            self.bus.emit(WorkerCancelingEvent(worker_id=record.id))
        record.finish(
            WorkerStatus.CANCELED,
            error=CANCELED_ERROR,
            failure_class=FailureClass.CANCELED,
        )
        self.bus.emit(
            WorkerErrorEvent(
                worker_id=record.id,
                error=CANCELED_ERROR,
                duration_ms=record.duration_ms,
                canceled=True,
            ),
        )
        return record
