"""Controllers for parallel-learn CLI commands."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from parallel_learn.config import Settings
from parallel_learn.orchestrator.backend import SubprocessLauncher
from parallel_learn.orchestrator.cancellation import CancellationController
from parallel_learn.orchestrator.events import EventBus, WorkerEvent, WorkerOutputEvent
from parallel_learn.orchestrator.fallback import write_fallback_document
from parallel_learn.orchestrator.merge import MergeCoordinator, write_backup
from parallel_learn.orchestrator.models import (
    ExecutionSummary,
    MergeResult,
    Plan,
    RootContext,
    load_plan,
)
from parallel_learn.orchestrator.monitor import ResourceSampler
from parallel_learn.orchestrator.parallel import ParallelOrchestrator
from parallel_learn.orchestrator.retry import delay_for
from parallel_learn.orchestrator.summary import build_completion_summary, render_summary_lines

logger = logging.getLogger(__name__)

DEFAULT_OUTPUT_NAME = "project-context.md"
EXIT_CANCELED = 130
EXIT_FAILED = 1


@dataclass(slots=True)
class LearnRunCommand:
    """CLI input for one parallel analysis run."""

    plan_path: Path
    root: Path
    output_path: Path | None = None
    max_retries: int | None = None
    agent_command: str | None = None
    model: str | None = None
    timeout_seconds: float | None = None
    verbose: bool = False


@dataclass(slots=True)
class LearnRunResult:
    """Report lines and process exit code of one run."""

    lines: list[str]
    exit_code: int = 0
    summary: ExecutionSummary | None = None


@dataclass(slots=True)
class BackoffTableCommand:
    """CLI input for the retry delay table."""

    max_retries: int | None = None


@dataclass(slots=True)
class ValidatePlanCommand:
    """CLI input for plan validation."""

    plan_path: Path
    root: Path | None = None


class OrchestratorCliController:
    """Coordinates plan loading, parallel execution, merge, and reporting."""

    def __init__(
        self,
        *,
        echo: Callable[[str], None] | None = None,
        sampler: ResourceSampler | None = None,
    ) -> None:
        self._echo = echo
        self._sampler = sampler

    def run(self, command: LearnRunCommand) -> LearnRunResult:
        settings = _settings_for(command)
        plan = load_plan(command.plan_path)
        root = command.root.resolve()
        output_path = command.output_path or root / DEFAULT_OUTPUT_NAME
        root_context = RootContext.for_plan(root, plan)
        return asyncio.run(
            self._run(
                command=command,
                settings=settings,
                plan=plan,
                root_context=root_context,
                output_path=output_path,
            ),
        )

    def backoff_table(self, command: BackoffTableCommand) -> list[str]:
        """Render the delay before every retry for the configured budget."""

        settings = Settings.from_env()
        max_retries = (
            command.max_retries if command.max_retries is not None else settings.retry.max_retries
        )
        schedule = settings.retry.backoff_schedule_ms
        lines = [
            f"Backoff schedule (ms): {', '.join(str(delay) for delay in schedule)}",
            f"Total attempts: {max_retries + 1} (first try + {max_retries} retries)",
        ]
        for retry_index in range(1, max_retries + 1):
            lines.append(f"  retry {retry_index}: wait {delay_for(retry_index, schedule)}ms")
        return lines

    def validate_plan(self, command: ValidatePlanCommand) -> list[str]:
        """Load a plan and describe it. ``PlanError`` propagates to the caller."""

        plan = load_plan(command.plan_path)
        folder_count = sum(len(grouping.folders) for grouping in plan.groupings)
        lines = [f"Plan OK: groupings={len(plan.groupings)} folders={folder_count}"]
        for grouping in plan.groupings:
            lines.append(
                f"  {grouping.name} (priority {grouping.priority}): {', '.join(grouping.folders)}",
            )
            if command.root is not None:
                for folder in grouping.folders:
                    if not (command.root / folder).exists():
                        lines.append(f"    warning: folder not found under root: {folder}")
        unknown = [name for name in plan.analysis_order if name not in _names(plan)]
        if unknown:
            lines.append(f"  warning: analysisOrder names unknown groupings: {', '.join(unknown)}")
        return lines

    async def _run(  # noqa: PLR0913
        self,
        *,
        command: LearnRunCommand,
        settings: Settings,
        plan: Plan,
        root_context: RootContext,
        output_path: Path,
    ) -> LearnRunResult:
        bus = EventBus()
        if command.verbose and self._echo is not None:
            echo = self._echo
            bus.subscribe(lambda event: echo(format_event(event)))

        controller = CancellationController(
            bus=bus,
            grace_seconds=settings.worker.cancel_grace_seconds,
        )
        loop = asyncio.get_running_loop()
        installed = controller.install_signal_handlers(loop)
        try:
            orchestrator = ParallelOrchestrator(
                launcher=SubprocessLauncher(
                    command_template=settings.agent.command_template,
                    model=settings.agent.model,
                    root=root_context.root_path,
                ),
                root_context=root_context,
                bus=bus,
                controller=controller,
                timeout_seconds=settings.worker.timeout_seconds,
                terminate_grace_seconds=settings.worker.terminate_grace_seconds,
                schedule_ms=settings.retry.backoff_schedule_ms,
                sample_interval_seconds=settings.monitor.sample_interval_seconds,
                sampler=self._sampler,
            )
            summary = await orchestrator.execute(plan, max_retries=settings.retry.max_retries)

            if summary.canceled:
                backup_path = write_backup(summary, root_context.root_path)
                merge_result = MergeResult(success=False, duration_ms=0, backup_path=backup_path)
                completion = build_completion_summary(summary, merge_result, output_path=None)
                lines = render_summary_lines(completion, verbose=command.verbose)
                return LearnRunResult(lines=lines, exit_code=EXIT_CANCELED, summary=summary)

            coordinator = MergeCoordinator(
                launcher=SubprocessLauncher(
                    command_template=settings.agent.effective_synthesis_template,
                    model=settings.agent.effective_synthesis_model,
                    root=root_context.root_path,
                ),
                bus=bus,
                timeout_seconds=settings.merge.timeout_seconds,
                terminate_grace_seconds=settings.worker.terminate_grace_seconds,
                progress_interval_seconds=settings.merge.progress_interval_seconds,
                cancel_token=controller.token,
                cancel_grace_seconds=settings.worker.cancel_grace_seconds,
            )
            merge_result = await coordinator.merge(summary, root_context, output_path)
        finally:
            controller.remove_signal_handlers(loop, installed)

        if merge_result.canceled:
            completion = build_completion_summary(summary, merge_result, output_path=None)
            lines = render_summary_lines(completion, verbose=command.verbose)
            return LearnRunResult(lines=lines, exit_code=EXIT_CANCELED, summary=summary)

        used_fallback = False
        fallback_error: str | None = None
        if (
            not merge_result.success
            and summary.success_count > 0
            and settings.merge.fallback_enabled
        ):
            try:
                write_fallback_document(summary, root_context, output_path)
            except OSError as error:
                fallback_error = str(error)
                logger.error(
                    "Fallback assembly failed for %s: %s (backup: %s)",
                    output_path,
                    error,
                    merge_result.backup_path or "not written",
                )
            else:
                used_fallback = True

        completion = build_completion_summary(
            summary,
            merge_result,
            output_path=output_path,
            used_fallback=used_fallback,
        )
        lines = render_summary_lines(completion, verbose=command.verbose)
        if fallback_error is not None:
            lines.append(f"Fallback assembly failed: {fallback_error}")
        return LearnRunResult(
            lines=lines,
            exit_code=0 if completion.success else EXIT_FAILED,
            summary=summary,
        )


def format_event(event: WorkerEvent) -> str:
    """One-line rendering of a lifecycle event for verbose mode."""

    if isinstance(event, WorkerOutputEvent):
        return f"[{event.type}] {event.worker_id} {event.stream} +{len(event.data)} chars"
    payload = event.to_dict()
    payload.pop("type", None)
    payload.pop("timestamp", None)
    details = " ".join(f"{key}={value}" for key, value in payload.items())
    return f"[{event.type}] {details}".rstrip()


def _settings_for(command: LearnRunCommand) -> Settings:
    settings = Settings.from_env()
    if command.max_retries is not None:
        settings.retry.max_retries = command.max_retries
    if command.agent_command is not None:
        settings.agent.command_template = command.agent_command
    if command.model is not None:
        settings.agent.model = command.model
    if command.timeout_seconds is not None:
        settings.worker.timeout_seconds = command.timeout_seconds
    settings.validate()
    return settings


def _names(plan: Plan) -> set[str]:
    return {grouping.name for grouping in plan.groupings}
