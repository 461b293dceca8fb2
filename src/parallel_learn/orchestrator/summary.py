"""Completion summary and operator-facing report lines."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from parallel_learn.orchestrator.models import ExecutionSummary, MergeResult, WorkerStatus


@dataclass(slots=True)
class WorkerStatistics:
    """Per-worker statistics for the final report."""

    id: str
    folder_count: int
    duration_ms: int
    status: WorkerStatus
    retry_count: int
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.status == WorkerStatus.COMPLETE


@dataclass(slots=True)
class WorkerWarning:
    """Something the operator should look at after the run."""

    worker_id: str
    kind: str
    retry_count: int = 0
    error: str | None = None


@dataclass(slots=True)
class CompletionSummary:
    """Everything the final report needs, derived from one run."""

    total_elapsed_ms: int
    folders_analyzed: int
    workers_succeeded: int
    workers_failed: int
    workers_canceled: int
    total_workers: int
    success: bool
    canceled: bool
    speedup_factor: float
    peak_memory_mb: float
    peak_cpu_percent: float
    output_file_path: Path | None = None
    output_file_size_bytes: int | None = None
    backup_path: Path | None = None
    used_fallback: bool = False
    merge_error: str | None = None
    warnings: list[WorkerWarning] = field(default_factory=list)
    worker_stats: list[WorkerStatistics] = field(default_factory=list)


def build_completion_summary(
    summary: ExecutionSummary,
    merge_result: MergeResult | None,
    *,
    output_path: Path | None,
    used_fallback: bool = False,
) -> CompletionSummary:
    warnings: list[WorkerWarning] = []
    stats: list[WorkerStatistics] = []
    for record in summary.workers:
        stats.append(
            WorkerStatistics(
                id=record.id,
                folder_count=len(record.folders),
                duration_ms=record.duration_ms,
                status=record.status,
                retry_count=record.retry_count,
                error=record.error,
            ),
        )
        if record.canceled:
            warnings.append(WorkerWarning(worker_id=record.id, kind="canceled"))
        elif not record.success:
            warnings.append(
                WorkerWarning(
                    worker_id=record.id,
                    kind="failure",
                    retry_count=record.retry_count,
                    error=record.error,
                ),
            )
        elif record.retry_count > 0:
            warnings.append(
                WorkerWarning(worker_id=record.id, kind="retry", retry_count=record.retry_count),
            )

    written = output_path is not None and output_path.exists() and (
        used_fallback or (merge_result is not None and merge_result.success)
    )
    canceled_count = summary.canceled_count
    return CompletionSummary(
        total_elapsed_ms=summary.total_duration_ms
        + (merge_result.duration_ms if merge_result is not None else 0),
        folders_analyzed=sum(len(record.folders) for record in summary.successful_workers),
        workers_succeeded=summary.success_count,
        workers_failed=summary.failed_count - canceled_count,
        workers_canceled=canceled_count,
        total_workers=summary.worker_count,
        success=bool(written) and summary.success_count > 0,
        canceled=summary.canceled or (merge_result is not None and merge_result.canceled),
        speedup_factor=summary.speedup_factor,
        peak_memory_mb=summary.peak_memory_mb,
        peak_cpu_percent=summary.peak_cpu_percent,
        output_file_path=output_path if written else None,
        output_file_size_bytes=output_path.stat().st_size if written and output_path else None,
        backup_path=merge_result.backup_path if merge_result is not None else None,
        used_fallback=used_fallback,
        merge_error=merge_result.error if merge_result is not None else None,
        warnings=warnings,
        worker_stats=stats,
    )


def render_summary_lines(completion: CompletionSummary, *, verbose: bool = False) -> list[str]:
    """Render the final report. Canceled workers are never labeled as failures."""

    if completion.canceled:
        headline = "Analysis canceled"
    elif completion.success:
        headline = "Analysis complete"
    else:
        headline = "Analysis failed"
    lines = [
        f"{headline} in {format_elapsed(completion.total_elapsed_ms)}",
        (
            f"Workers: total={completion.total_workers} "
            f"succeeded={completion.workers_succeeded} "
            f"failed={completion.workers_failed} "
            f"canceled={completion.workers_canceled}"
        ),
        (
            f"Speedup: {completion.speedup_factor:.2f}x "
            f"peak_memory={completion.peak_memory_mb:.1f}MB "
            f"peak_cpu={completion.peak_cpu_percent:.1f}%"
        ),
        f"Folders analyzed: {completion.folders_analyzed}",
    ]

    for stat in completion.worker_stats:
        line = (
            f"  [{stat.status.value}] {stat.id}: {format_elapsed(stat.duration_ms)}, "
            f"folders={stat.folder_count}"
        )
        if stat.retry_count:
            line += f", retries={stat.retry_count}"
        if stat.error and stat.status == WorkerStatus.ERROR:
            line += f", error={stat.error}"
        lines.append(line)

    if completion.merge_error:
        lines.append(f"Merge failed: {completion.merge_error}")
        if completion.used_fallback:
            lines.append("Fallback assembly used: raw worker outputs were concatenated.")
    if completion.backup_path is not None:
        lines.append(f"Partial outputs backup: {completion.backup_path}")
    if completion.output_file_path is not None:
        size = completion.output_file_size_bytes or 0
        lines.append(f"Output: {completion.output_file_path} ({size} bytes)")

    if verbose and completion.warnings:
        lines.append("Warnings:")
        for warning in completion.warnings:
            if warning.kind == "canceled":
                lines.append(f"  - {warning.worker_id}: canceled before completion")
            elif warning.kind == "retry":
                lines.append(
                    f"  - {warning.worker_id}: succeeded after {warning.retry_count} retries",
                )
            else:
                lines.append(
                    f"  - {warning.worker_id}: failed after {warning.retry_count} retries "
                    f"({warning.error or 'unknown error'})",
                )
    return lines


def format_elapsed(ms: int) -> str:
    seconds = ms // 1000
    minutes, remaining = divmod(seconds, 60)
    if minutes > 0:
        return f"{minutes}m {remaining}s"
    return f"{seconds}s"
