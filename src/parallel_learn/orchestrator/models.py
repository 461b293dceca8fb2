"""Domain models for parallel worker execution and merge."""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

MIN_PRIORITY = 1
MAX_PRIORITY = 5


class PlanError(ValueError):
    """Plan document is malformed or violates grouping rules."""


class WorkerStateError(RuntimeError):
    """Illegal worker status transition or mutation of a terminal record."""


class WorkerStatus(str, Enum):
    """Worker lifecycle states."""

    QUEUED = "queued"
    RUNNING = "running"
    RETRYING = "retrying"
    COMPLETE = "complete"
    ERROR = "error"
    CANCELING = "canceling"
    CANCELED = "canceled"


TERMINAL_STATUSES = frozenset(
    {WorkerStatus.COMPLETE, WorkerStatus.ERROR, WorkerStatus.CANCELED},
)
ACTIVE_STATUSES = frozenset({WorkerStatus.RUNNING, WorkerStatus.RETRYING})

_ALLOWED_TRANSITIONS: dict[WorkerStatus, frozenset[WorkerStatus]] = {
    WorkerStatus.QUEUED: frozenset({WorkerStatus.RUNNING, WorkerStatus.CANCELING}),
    WorkerStatus.RUNNING: frozenset(
        {
            WorkerStatus.RETRYING,
            WorkerStatus.COMPLETE,
            WorkerStatus.ERROR,
            WorkerStatus.CANCELING,
        },
    ),
    WorkerStatus.RETRYING: frozenset(
        {WorkerStatus.RUNNING, WorkerStatus.ERROR, WorkerStatus.CANCELING},
    ),
    WorkerStatus.CANCELING: frozenset({WorkerStatus.CANCELED}),
}


class FailureClass(str, Enum):
    """Normalized failure classes of a single worker attempt."""

    SPAWN_FAILURE = "spawn_failure"
    NONZERO_EXIT = "nonzero_exit"
    TIMEOUT = "timeout"
    CANCELED = "canceled"


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


@dataclass(frozen=True, slots=True)
class Grouping:
    """Named set of folders analyzed by one worker."""

    name: str
    folders: tuple[str, ...]
    priority: int = 3

    def __post_init__(self) -> None:
        if not self.name or not self.name.strip():
            raise PlanError("Grouping name must be a non-empty string.")
        if not self.folders:
            raise PlanError(f"Grouping {self.name!r} must list at least one folder.")
        if isinstance(self.priority, bool) or not isinstance(self.priority, int):
            raise PlanError(f"Grouping {self.name!r} priority must be an integer.")
        if not MIN_PRIORITY <= self.priority <= MAX_PRIORITY:
            raise PlanError(
                f"Grouping {self.name!r} priority must be in "
                f"{MIN_PRIORITY}..{MAX_PRIORITY}, got {self.priority}.",
            )


@dataclass(frozen=True, slots=True)
class Plan:
    """Externally supplied work partitioning. Immutable once constructed."""

    groupings: tuple[Grouping, ...]
    summary: str | None = None
    analysis_order: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        seen: set[str] = set()
        for grouping in self.groupings:
            if grouping.name in seen:
                raise PlanError(f"Duplicate grouping name in plan: {grouping.name!r}")
            seen.add(grouping.name)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> Plan:
        """Build a plan from its JSON document shape."""

        raw_groupings = payload.get("groupings")
        if not isinstance(raw_groupings, list):
            raise PlanError("Plan must contain a 'groupings' list.")

        groupings: list[Grouping] = []
        for index, item in enumerate(raw_groupings):
            if not isinstance(item, Mapping):
                raise PlanError(f"Grouping #{index} must be an object.")
            folders = item.get("folders")
            if not isinstance(folders, list) or not all(isinstance(f, str) for f in folders):
                raise PlanError(f"Grouping #{index} 'folders' must be a list of strings.")
            groupings.append(
                Grouping(
                    name=str(item.get("name") or ""),
                    folders=tuple(folders),
                    priority=item.get("priority", 3),
                ),
            )

        summary = payload.get("summary")
        order = payload.get("analysisOrder", payload.get("analysis_order")) or []
        if not isinstance(order, list):
            raise PlanError("Plan 'analysisOrder' must be a list of grouping names.")
        return cls(
            groupings=tuple(groupings),
            summary=summary if isinstance(summary, str) and summary.strip() else None,
            analysis_order=tuple(str(name) for name in order),
        )


def load_plan(path: Path) -> Plan:
    """Read and validate a plan JSON file."""

    try:
        payload = json.loads(path.read_text("utf-8"))
    except json.JSONDecodeError as error:
        raise PlanError(f"Plan file is not valid JSON: {path}: {error}") from error
    if not isinstance(payload, dict):
        raise PlanError(f"Plan file must contain a JSON object: {path}")
    return Plan.from_dict(payload)


@dataclass(frozen=True, slots=True)
class RootContext:
    """Analyzed root and plan-level context shared by every worker."""

    root_path: Path
    project_summary: str | None = None
    analysis_order: tuple[str, ...] = ()

    @classmethod
    def for_plan(cls, root_path: Path, plan: Plan) -> RootContext:
        return cls(
            root_path=root_path,
            project_summary=plan.summary,
            analysis_order=plan.analysis_order,
        )


@dataclass(slots=True)
class WorkerRecord:
    """Mutable lifecycle record of one grouping's worker.

    Only the worker's own retry loop and the cancellation controller mutate a
    record, and only through :meth:`transition` and :meth:`finish`. Once the
    status is terminal the record is frozen.
    """

    id: str
    folders: tuple[str, ...]
    max_retries: int
    status: WorkerStatus = WorkerStatus.QUEUED
    attempt: int = 1
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_ms: int = 0
    stdout: str = ""
    stderr: str = ""
    error: str | None = None
    exit_code: int | None = None
    failure_class: FailureClass | None = None
    retry_count: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def success(self) -> bool:
        return self.status == WorkerStatus.COMPLETE

    @property
    def canceled(self) -> bool:
        return self.status == WorkerStatus.CANCELED

    def transition(self, status: WorkerStatus) -> WorkerStatus:
        """Move to a non-terminal or terminal status, returning the previous one."""

        self._ensure_mutable()
        if status not in _ALLOWED_TRANSITIONS.get(self.status, frozenset()):
            raise WorkerStateError(
                f"Worker {self.id!r}: illegal transition {self.status.value} -> {status.value}",
            )
        previous = self.status
        self.status = status
        if status == WorkerStatus.RUNNING and self.started_at is None:
            self.started_at = utc_now()
        return previous

    def start_attempt(self, attempt: int) -> None:
        self._ensure_mutable()
        self.attempt = attempt
        self.retry_count = attempt - 1
        self.stdout = ""
        self.stderr = ""
        self.transition(WorkerStatus.RUNNING)

    def append_output(self, data: str, *, stream: str) -> None:
        self._ensure_mutable()
        if stream == "stderr":
            self.stderr += data
        else:
            self.stdout += data

    def finish(
        self,
        status: WorkerStatus,
        *,
        error: str | None = None,
        exit_code: int | None = None,
        failure_class: FailureClass | None = None,
    ) -> None:
        """Move to a terminal status and stamp completion time."""

        if status not in TERMINAL_STATUSES:
            raise WorkerStateError(f"Worker {self.id!r}: {status.value} is not terminal")
        self.transition(status)
        self.completed_at = utc_now()
        if self.started_at is None:
            self.started_at = self.completed_at
        self.duration_ms = _elapsed_ms(self.started_at, self.completed_at)
        self.error = error
        self.exit_code = exit_code
        self.failure_class = failure_class

    def elapsed_ms(self, now: datetime | None = None) -> int:
        if self.started_at is None:
            return 0
        if self.completed_at is not None:
            return self.duration_ms
        return _elapsed_ms(self.started_at, now or utc_now())

    def _ensure_mutable(self) -> None:
        if self.is_terminal:
            raise WorkerStateError(
                f"Worker {self.id!r} is terminal ({self.status.value}) and cannot change",
            )


@dataclass(frozen=True, slots=True)
class ResourceSnapshot:
    """One host/process-tree resource sample."""

    timestamp: datetime
    cpu_percent: float
    memory_mb: float
    active_workers: int


@dataclass(slots=True)
class ExecutionSummary:
    """Aggregate result of one parallel run, produced at the join barrier."""

    worker_count: int
    success_count: int
    failed_count: int
    total_duration_ms: int
    sequential_duration_ms: int
    speedup_factor: float
    started_at: datetime
    completed_at: datetime
    workers: list[WorkerRecord] = field(default_factory=list)
    snapshots: list[ResourceSnapshot] = field(default_factory=list)
    peak_memory_mb: float = 0.0
    peak_cpu_percent: float = 0.0
    canceled: bool = False

    @property
    def canceled_count(self) -> int:
        return sum(1 for worker in self.workers if worker.canceled)

    @property
    def successful_workers(self) -> list[WorkerRecord]:
        return [worker for worker in self.workers if worker.success]

    @classmethod
    def from_records(  # noqa: PLR0913
        cls,
        *,
        workers: list[WorkerRecord],
        started_at: datetime,
        completed_at: datetime,
        snapshots: list[ResourceSnapshot],
        peak_memory_mb: float,
        peak_cpu_percent: float,
        canceled: bool,
    ) -> ExecutionSummary:
        success_count = sum(1 for worker in workers if worker.success)
        total_ms = _elapsed_ms(started_at, completed_at)
        sequential_ms = sum(worker.duration_ms for worker in workers)
        return cls(
            worker_count=len(workers),
            success_count=success_count,
            failed_count=len(workers) - success_count,
            total_duration_ms=total_ms,
            sequential_duration_ms=sequential_ms,
            speedup_factor=speedup_factor(sequential_ms, total_ms),
            started_at=started_at,
            completed_at=completed_at,
            workers=workers,
            snapshots=snapshots,
            peak_memory_mb=peak_memory_mb,
            peak_cpu_percent=peak_cpu_percent,
            canceled=canceled,
        )


@dataclass(slots=True)
class MergeResult:
    """Outcome of the merge stage. Created once, never retried."""

    success: bool
    duration_ms: int
    merged_content: str | None = None
    output_path: Path | None = None
    backup_path: Path | None = None
    error: str | None = None
    canceled: bool = False


def speedup_factor(sequential_ms: int, total_ms: int) -> float:
    if total_ms <= 0:
        return 1.0
    return sequential_ms / total_ms


def _elapsed_ms(start: datetime, end: datetime) -> int:
    return max(0, int((end - start).total_seconds() * 1000))
