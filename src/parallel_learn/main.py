"""CLI entrypoint for parallel-learn."""

import logging
from pathlib import Path

import rich_click as click

from parallel_learn import __version__
from parallel_learn.config import SettingsError
from parallel_learn.orchestrator.controllers import (
    BackoffTableCommand,
    LearnRunCommand,
    OrchestratorCliController,
    ValidatePlanCommand,
)
from parallel_learn.orchestrator.models import PlanError

click.rich_click.USE_MARKDOWN = True
ORCHESTRATOR_CONTROLLER = OrchestratorCliController(echo=click.echo)

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


@click.group()
@click.version_option(version=__version__, prog_name="parallel-learn")
def parallel_learn() -> None:
    """Analyze a codebase with one CLI agent per folder grouping, then merge."""


@parallel_learn.command("run")
@click.option(
    "--plan",
    "plan_path",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    required=True,
    help="Plan JSON with `groupings`, optional `summary` and `analysisOrder`.",
)
@click.option(
    "--root",
    type=click.Path(path_type=Path, exists=True, file_okay=False),
    default=Path("."),
    show_default=True,
    help="Repository root to analyze.",
)
@click.option(
    "--output",
    "output_path",
    type=click.Path(path_type=Path, dir_okay=False),
    default=None,
    help="Merged Markdown output. Defaults to `<root>/project-context.md`.",
)
@click.option(
    "--max-retries",
    type=click.IntRange(min=0),
    default=None,
    help="Retries per grouping after the first try.",
)
@click.option(
    "--agent-command",
    default=None,
    help="Agent command template; placeholders `{model}`, `{root}`, `{grouping}`.",
)
@click.option("--model", default=None, help="Model passed to the agent command template.")
@click.option(
    "--timeout",
    "timeout_seconds",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Per-attempt wall-clock timeout in seconds.",
)
@click.option("--verbose", is_flag=True, default=False, help="Echo lifecycle events.")
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="WARNING",
    show_default=True,
)
def run(  # noqa: PLR0913
    plan_path: Path,
    root: Path,
    output_path: Path | None,
    max_retries: int | None,
    agent_command: str | None,
    model: str | None,
    timeout_seconds: float | None,
    verbose: bool,
    log_level: str,
) -> None:
    """Run every grouping in parallel, then synthesize one context document."""

    _configure_logging(log_level)
    try:
        result = ORCHESTRATOR_CONTROLLER.run(
            LearnRunCommand(
                plan_path=plan_path,
                root=root,
                output_path=output_path,
                max_retries=max_retries,
                agent_command=agent_command,
                model=model,
                timeout_seconds=timeout_seconds,
                verbose=verbose,
            ),
        )
    except (PlanError, SettingsError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(result.lines)
    if result.exit_code:
        raise SystemExit(result.exit_code)


@parallel_learn.command("backoff")
@click.option(
    "--max-retries",
    type=click.IntRange(min=0),
    default=None,
    help="Retries to show; defaults to the configured value.",
)
def backoff(max_retries: int | None) -> None:
    """Print the delay before each retry."""

    try:
        lines = ORCHESTRATOR_CONTROLLER.backoff_table(BackoffTableCommand(max_retries=max_retries))
    except SettingsError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@parallel_learn.command("validate-plan")
@click.argument("plan_path", type=click.Path(path_type=Path, exists=True, dir_okay=False))
@click.option(
    "--root",
    type=click.Path(path_type=Path, exists=True, file_okay=False),
    default=None,
    help="Check that every folder exists under this root.",
)
def validate_plan(plan_path: Path, root: Path | None) -> None:
    """Validate a plan file without running anything."""

    try:
        lines = ORCHESTRATOR_CONTROLLER.validate_plan(
            ValidatePlanCommand(plan_path=plan_path, root=root),
        )
    except PlanError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    parallel_learn()
