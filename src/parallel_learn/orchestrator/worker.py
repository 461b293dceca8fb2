"""Single-attempt execution of one grouping through an external process."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass

from parallel_learn.orchestrator.backend.base import (
    OutputChunk,
    ProcessExit,
    ProcessLauncher,
    ProcessSpawnError,
)
from parallel_learn.orchestrator.backend.runner import drive_process
from parallel_learn.orchestrator.cancellation import CancellationToken
from parallel_learn.orchestrator.events import EventBus, WorkerOutputEvent
from parallel_learn.orchestrator.failure_classifier import (
    WorkerFailureClassification,
    classify_worker_failure,
)
from parallel_learn.orchestrator.models import Grouping, RootContext, WorkerRecord
from parallel_learn.orchestrator.prompts import build_worker_prompt

logger = logging.getLogger(__name__)

DEFAULT_WORKER_TIMEOUT_SECONDS = 120.0
DEFAULT_TERMINATE_GRACE_SECONDS = 5.0
DEFAULT_CANCEL_GRACE_SECONDS = 2.0


@dataclass(slots=True)
class WorkerResult:
    """Outcome of one worker attempt."""

    success: bool
    stdout: str
    stderr: str
    duration_ms: int
    exit_code: int | None = None
    error: str | None = None
    timed_out: bool = False
    canceled: bool = False
    classification: WorkerFailureClassification | None = None


class WorkerTask:
    """Runs one grouping attempt with a hard wall-clock timeout."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        launcher: ProcessLauncher,
        bus: EventBus,
        token: CancellationToken,
        timeout_seconds: float = DEFAULT_WORKER_TIMEOUT_SECONDS,
        terminate_grace_seconds: float = DEFAULT_TERMINATE_GRACE_SECONDS,
        cancel_grace_seconds: float = DEFAULT_CANCEL_GRACE_SECONDS,
    ) -> None:
        self.launcher = launcher
        self.bus = bus
        self.token = token
        self.timeout_seconds = timeout_seconds
        self.terminate_grace_seconds = terminate_grace_seconds
        self.cancel_grace_seconds = cancel_grace_seconds

    async def run(
        self,
        grouping: Grouping,
        root_context: RootContext,
        *,
        record: WorkerRecord | None = None,
    ) -> WorkerResult:
        """Run one attempt. Output chunks are appended to ``record`` when given."""

        started = time.monotonic()
        if self.token.is_cancelled:
            return self._failed(started, canceled=True)

        payload = build_worker_prompt(grouping, root_context)
        try:
            handle = await self.launcher.start(payload, label=grouping.name)
        except ProcessSpawnError as error:
            logger.warning("Worker %s failed to spawn: %s", grouping.name, error)
            return self._failed(started, spawn_error=str(error))

        def _forward(chunk: OutputChunk) -> None:
            if record is not None:
                record.append_output(chunk.data, stream=chunk.stream)
            self.bus.emit(
                WorkerOutputEvent(worker_id=grouping.name, data=chunk.data, stream=chunk.stream),
            )

        run = await drive_process(
            handle,
            timeout_seconds=self.timeout_seconds,
            terminate_grace_seconds=self.terminate_grace_seconds,
            cancel_token=self.token,
            cancel_grace_seconds=self.cancel_grace_seconds,
            on_output=_forward,
        )

        duration_ms = _elapsed_ms(started)
        if run.exit is not None and run.exit.ok and not run.canceled and not run.timed_out:
            logger.info("Worker %s succeeded in %dms", grouping.name, duration_ms)
            return WorkerResult(
                success=True,
                stdout=run.stdout,
                stderr=run.stderr,
                duration_ms=duration_ms,
                exit_code=0,
            )

        return self._failed(
            started,
            process_exit=run.exit,
            stdout=run.stdout,
            stderr=run.stderr,
            timed_out=run.timed_out,
            canceled=run.canceled,
        )

    def _failed(  # noqa: PLR0913
        self,
        started: float,
        *,
        process_exit: ProcessExit | None = None,
        stdout: str = "",
        stderr: str = "",
        timed_out: bool = False,
        canceled: bool = False,
        spawn_error: str | None = None,
    ) -> WorkerResult:
        classification = classify_worker_failure(
            process_exit=process_exit,
            timed_out=timed_out,
            canceled=canceled,
            spawn_error=spawn_error,
            timeout_seconds=self.timeout_seconds,
            stdout=stdout,
            stderr=stderr,
        )
        return WorkerResult(
            success=False,
            stdout=stdout,
            stderr=stderr,
            duration_ms=_elapsed_ms(started),
            exit_code=process_exit.exit_code if process_exit is not None else None,
            error=classification.message,
            timed_out=timed_out,
            canceled=canceled,
            classification=classification,
        )


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
