"""Post-join backup and synthesis of worker outputs into one document."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from datetime import datetime
from pathlib import Path

from parallel_learn.orchestrator.backend.base import ProcessLauncher, ProcessSpawnError
from parallel_learn.orchestrator.backend.runner import drive_process
from parallel_learn.orchestrator.cancellation import CancellationToken
from parallel_learn.orchestrator.events import (
    EventBus,
    MergeCompleteEvent,
    MergeErrorEvent,
    MergeProgressEvent,
    MergeStartedEvent,
)
from parallel_learn.orchestrator.models import (
    ExecutionSummary,
    MergeResult,
    RootContext,
    WorkerRecord,
    utc_now,
)
from parallel_learn.orchestrator.prompts import build_synthesis_prompt

logger = logging.getLogger(__name__)

NO_SUCCESSFUL_OUTPUTS_ERROR = "No successful worker outputs to merge"
SYNTHESIS_CANCELED_ERROR = "Synthesis canceled"
BACKUP_PREFIX = ".partial-outputs-"
DEFAULT_SYNTHESIS_TIMEOUT_SECONDS = 120.0
DEFAULT_PROGRESS_INTERVAL_SECONDS = 5.0


class MergeCoordinator:
    """Backs up every worker record, then synthesizes the successful ones.

    The coordinator never runs the fallback assembly itself: on synthesis
    failure it returns ``success=False`` with the backup path and the caller
    decides what to do.
    A set ``cancel_token`` stops synthesis the same way it stops workers and
    yields ``canceled=True``.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        launcher: ProcessLauncher,
        bus: EventBus | None = None,
        timeout_seconds: float = DEFAULT_SYNTHESIS_TIMEOUT_SECONDS,
        terminate_grace_seconds: float = 5.0,
        progress_interval_seconds: float = DEFAULT_PROGRESS_INTERVAL_SECONDS,
        cancel_token: CancellationToken | None = None,
        cancel_grace_seconds: float = 2.0,
    ) -> None:
        self.launcher = launcher
        self.bus = bus or EventBus()
        self.timeout_seconds = timeout_seconds
        self.terminate_grace_seconds = terminate_grace_seconds
        self.progress_interval_seconds = progress_interval_seconds
        self.cancel_token = cancel_token
        self.cancel_grace_seconds = cancel_grace_seconds

    async def merge(
        self,
        summary: ExecutionSummary,
        root_context: RootContext,
        output_path: Path,
    ) -> MergeResult:
        started = time.monotonic()
        successful = summary.successful_workers
        self.bus.emit(MergeStartedEvent(worker_count=len(successful)))

        backup_path = write_backup(summary, root_context.root_path)

        if summary.success_count == 0:
            return self._fail(started, NO_SUCCESSFUL_OUTPUTS_ERROR, backup_path)
        if self._cancelled:
            return self._fail(started, SYNTHESIS_CANCELED_ERROR, backup_path, canceled=True)

        payload = build_synthesis_prompt(successful, root_context)
        self._progress(started, f"Synthesizing {len(successful)} worker outputs")
        try:
            handle = await self.launcher.start(payload, label="synthesis")
        except ProcessSpawnError as error:
            return self._fail(started, f"Synthesis failed to start: {error}", backup_path)

        ticker = asyncio.create_task(self._tick(started))
        try:
            run = await drive_process(
                handle,
                timeout_seconds=self.timeout_seconds,
                terminate_grace_seconds=self.terminate_grace_seconds,
                cancel_token=self.cancel_token,
                cancel_grace_seconds=self.cancel_grace_seconds,
            )
        finally:
            ticker.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await ticker

        if run.canceled:
            return self._fail(started, SYNTHESIS_CANCELED_ERROR, backup_path, canceled=True)
        if run.timed_out:
            return self._fail(
                started,
                f"Synthesis timed out after {self.timeout_seconds:g}s",
                backup_path,
            )
        if run.exit is None or not run.exit.ok:
            described = run.exit.describe() if run.exit is not None else "unknown exit status"
            detail = run.stderr.strip().splitlines()[-1:] if run.stderr.strip() else []
            message = f"Synthesis failed with {described}"
            if detail:
                message = f"{message}: {detail[0][:200]}"
            return self._fail(started, message, backup_path)

        body = run.stdout.strip()
        if not body:
            return self._fail(started, "Synthesis produced no output", backup_path)

        content = render_merged_document(body, worker_count=len(successful))
        try:
            output_path.parent.mkdir(parents=True, exist_ok=True)
            output_path.write_text(content, "utf-8")
        except OSError as error:
            return self._fail(
                started,
                f"Failed to write merged output to {output_path}: {error}",
                backup_path,
            )

        duration_ms = _elapsed_ms(started)
        self.bus.emit(MergeCompleteEvent(duration_ms=duration_ms, output_path=str(output_path)))
        logger.info("Merged %d outputs into %s in %dms", len(successful), output_path, duration_ms)
        return MergeResult(
            success=True,
            duration_ms=duration_ms,
            merged_content=content,
            output_path=output_path,
            backup_path=backup_path,
        )

    def merge_sync(
        self,
        summary: ExecutionSummary,
        root_context: RootContext,
        output_path: Path,
    ) -> MergeResult:
        return asyncio.run(self.merge(summary, root_context, output_path))

    def _fail(
        self,
        started: float,
        error: str,
        backup_path: Path | None,
        *,
        canceled: bool = False,
    ) -> MergeResult:
        if canceled:
            logger.warning("Merge canceled (backup: %s)", backup_path or "not written")
        else:
            logger.error("Merge failed: %s (backup: %s)", error, backup_path or "not written")
        self.bus.emit(
            MergeErrorEvent(
                error=error,
                backup_path=str(backup_path) if backup_path is not None else None,
            ),
        )
        return MergeResult(
            success=False,
            duration_ms=_elapsed_ms(started),
            backup_path=backup_path,
            error=error,
            canceled=canceled,
        )

    @property
    def _cancelled(self) -> bool:
        return self.cancel_token is not None and self.cancel_token.is_cancelled

    def _progress(self, started: float, message: str) -> None:
        self.bus.emit(MergeProgressEvent(message=message, elapsed_ms=_elapsed_ms(started)))

    async def _tick(self, started: float) -> None:
        while True:
            await asyncio.sleep(self.progress_interval_seconds)
            elapsed = _elapsed_ms(started)
            self._progress(started, f"Synthesis still running ({elapsed // 1000}s elapsed)")


def backup_path_for(root: Path, now: datetime | None = None) -> Path:
    stamp = (now or utc_now()).strftime("%Y%m%dT%H%M%SZ")
    return root / f"{BACKUP_PREFIX}{stamp}.md"


def render_backup(summary: ExecutionSummary, generated_at: datetime | None = None) -> str:
    """Render one Markdown entry per worker, regardless of outcome."""

    stamp = (generated_at or utc_now()).isoformat()
    lines = [
        "# Partial Worker Outputs",
        "",
        f"> Backup written {stamp}",
        f"> Workers: {summary.worker_count} "
        f"(success={summary.success_count}, failed={summary.failed_count}, "
        f"canceled={summary.canceled_count})",
        "",
    ]
    for record in summary.workers:
        lines.extend(_backup_entry(record))
    return "\n".join(lines)


def write_backup(summary: ExecutionSummary, root: Path) -> Path | None:
    """Best-effort backup write. Returns ``None`` when the write failed."""

    path = backup_path_for(root)
    try:
        path.write_text(render_backup(summary), "utf-8")
    except OSError as error:
        logger.warning("Failed to write partial-output backup %s: %s", path, error)
        return None
    logger.info("Wrote partial-output backup for %d workers: %s", summary.worker_count, path)
    return path


def render_merged_document(
    body: str,
    *,
    worker_count: int,
    generated_at: datetime | None = None,
) -> str:
    stamp = (generated_at or utc_now()).isoformat()
    return (
        "# Project Context\n"
        "\n"
        f"> Generated {stamp} by parallel analysis\n"
        f"> Merged from {worker_count} worker output(s)\n"
        "\n"
        f"{body}\n"
    )


def _backup_entry(record: WorkerRecord) -> list[str]:
    lines = [
        f"## {record.id}",
        "",
        f"- **Status**: {record.status.value}",
        f"- **Duration**: {record.duration_ms}ms",
        f"- **Attempts**: {record.attempt} (max retries {record.max_retries})",
        f"- **Folders**: {', '.join(record.folders)}",
    ]
    if record.exit_code is not None:
        lines.append(f"- **Exit code**: {record.exit_code}")
    if record.error:
        lines.append(f"- **Error**: {record.error}")
    lines.extend(["", "### stdout", "", "```", record.stdout.rstrip(), "```", ""])
    if record.stderr.strip():
        lines.extend(["### stderr", "", "```", record.stderr.rstrip(), "```", ""])
    return lines


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
