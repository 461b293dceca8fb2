"""Fan-out / fan-in coordinator for per-grouping workers."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence

from parallel_learn.orchestrator.backend.base import ProcessLauncher
from parallel_learn.orchestrator.cancellation import CancellationController
from parallel_learn.orchestrator.events import (
    EventBus,
    WorkerErrorEvent,
    WorkerQueuedEvent,
    WorkersAllCompleteEvent,
)
from parallel_learn.orchestrator.models import (
    ACTIVE_STATUSES,
    ExecutionSummary,
    Grouping,
    Plan,
    RootContext,
    WorkerRecord,
    WorkerStatus,
    WorkerStateError,
    utc_now,
)
from parallel_learn.orchestrator.monitor import ProgressCounts, ResourceMonitor, ResourceSampler
from parallel_learn.orchestrator.retry import (
    BACKOFF_SCHEDULE_MS,
    DEFAULT_MAX_RETRIES,
    RetryPolicy,
    Sleeper,
)
from parallel_learn.orchestrator.worker import (
    DEFAULT_TERMINATE_GRACE_SECONDS,
    DEFAULT_WORKER_TIMEOUT_SECONDS,
    WorkerTask,
)

logger = logging.getLogger(__name__)


class ParallelOrchestrator:
    """Launches every grouping at once and joins on all of them.

    There is no concurrency cap and no queue: each grouping gets its own
    retry loop as an independent asyncio task. One worker's failure never
    cancels, delays, or alters another's.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        launcher: ProcessLauncher,
        root_context: RootContext,
        bus: EventBus | None = None,
        controller: CancellationController | None = None,
        timeout_seconds: float = DEFAULT_WORKER_TIMEOUT_SECONDS,
        terminate_grace_seconds: float = DEFAULT_TERMINATE_GRACE_SECONDS,
        schedule_ms: Sequence[int] = BACKOFF_SCHEDULE_MS,
        sample_interval_seconds: float = 1.0,
        sampler: ResourceSampler | None = None,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        self.launcher = launcher
        self.root_context = root_context
        self.bus = bus or EventBus()
        self.controller = controller or CancellationController(bus=self.bus)
        self.timeout_seconds = timeout_seconds
        self.terminate_grace_seconds = terminate_grace_seconds
        self.schedule_ms = tuple(schedule_ms)
        self.sample_interval_seconds = sample_interval_seconds
        self._sampler = sampler
        self._sleep = sleep
        self.records: list[WorkerRecord] = []

    def progress(self) -> ProgressCounts:
        completed = sum(1 for record in self.records if record.is_terminal)
        running = sum(1 for record in self.records if record.status in ACTIVE_STATUSES)
        return ProgressCounts(completed=completed, running=running, total=len(self.records))

    async def execute(self, plan: Plan, max_retries: int = DEFAULT_MAX_RETRIES) -> ExecutionSummary:
        """Run every grouping of ``plan`` to a terminal state and aggregate."""

        self.records = [
            WorkerRecord(id=grouping.name, folders=grouping.folders, max_retries=max_retries)
            for grouping in plan.groupings
        ]
        self.controller.attach(self.records)
        for record in self.records:
            self.bus.emit(
                WorkerQueuedEvent(
                    worker_id=record.id,
                    worker_name=record.id,
                    folder_count=len(record.folders),
                ),
            )

        monitor = ResourceMonitor(
            bus=self.bus,
            progress=self.progress,
            sampler=self._sampler,
            interval_seconds=self.sample_interval_seconds,
        )
        stop_monitor = asyncio.Event()
        started_at = utc_now()
        logger.info("Launching %d workers (max_retries=%d)", len(self.records), max_retries)

        monitor_task = asyncio.create_task(monitor.run(stop_monitor))
        tasks = [
            asyncio.create_task(
                self._retry_policy(max_retries).run(grouping, self.root_context, record),
                name=f"worker:{grouping.name}",
            )
            for grouping, record in zip(plan.groupings, self.records, strict=True)
        ]
        try:
            outcomes = await asyncio.gather(*tasks, return_exceptions=True)
        finally:
            stop_monitor.set()
            await monitor_task

        for grouping, record, outcome in zip(plan.groupings, self.records, outcomes, strict=True):
            if isinstance(outcome, BaseException):
                self._fail_unexpectedly(grouping, record, outcome)

        monitor.sample()
        completed_at = utc_now()
        summary = ExecutionSummary.from_records(
            workers=list(self.records),
            started_at=started_at,
            completed_at=completed_at,
            snapshots=list(monitor.snapshots),
            peak_memory_mb=monitor.peak_memory_mb,
            peak_cpu_percent=monitor.peak_cpu_percent,
            canceled=self.controller.is_cancelled,
        )
        self.bus.emit(
            WorkersAllCompleteEvent(
                total_count=summary.worker_count,
                success_count=summary.success_count,
                failed_count=summary.failed_count,
                total_duration_ms=summary.total_duration_ms,
                sequential_duration_ms=summary.sequential_duration_ms,
                speedup_factor=round(summary.speedup_factor, 2),
            ),
        )
        logger.info(
            "All workers finished: success=%d failed=%d canceled=%d speedup=%.2fx",
            summary.success_count,
            summary.failed_count,
            summary.canceled_count,
            summary.speedup_factor,
        )
        return summary

    def execute_sync(self, plan: Plan, max_retries: int = DEFAULT_MAX_RETRIES) -> ExecutionSummary:
        return asyncio.run(self.execute(plan, max_retries))

    def _retry_policy(self, max_retries: int) -> RetryPolicy:
        token = self.controller.token
        task = WorkerTask(
            launcher=self.launcher,
            bus=self.bus,
            token=token,
            timeout_seconds=self.timeout_seconds,
            terminate_grace_seconds=self.terminate_grace_seconds,
            cancel_grace_seconds=self.controller.grace_seconds,
        )
        return RetryPolicy(
            task=task,
            bus=self.bus,
            token=token,
            max_retries=max_retries,
            schedule_ms=self.schedule_ms,
            sleep=self._sleep,
        )

    def _fail_unexpectedly(
        self,
        grouping: Grouping,
        record: WorkerRecord,
        error: BaseException,
    ) -> None:
        logger.error(
            "Worker %s crashed: %s",
            grouping.name,
            error,
            exc_info=(type(error), error, error.__traceback__),
        )
        if record.is_terminal:
            return
        message = f"Unexpected worker error: {error}"
        try:
            if record.status == WorkerStatus.CANCELING:
                record.finish(WorkerStatus.CANCELED, error=message)
            else:
                if record.status not in ACTIVE_STATUSES:
                    record.transition(WorkerStatus.RUNNING)
                record.finish(WorkerStatus.ERROR, error=message)
        except WorkerStateError:
            logger.exception("Could not finalize crashed worker %s", grouping.name)
            return
        self.bus.emit(
            WorkerErrorEvent(
                worker_id=record.id,
                error=message,
                duration_ms=record.duration_ms,
                canceled=record.canceled,
            ),
        )
