"""Runtime configuration for parallel workers, retries, and merge."""

from __future__ import annotations

import os
from dataclasses import dataclass, field

DEFAULT_AGENT_COMMAND_TEMPLATE = "claude -p --model {model}"
DEFAULT_AGENT_MODEL = "sonnet"


class SettingsError(ValueError):
    """Invalid configuration value."""


@dataclass(slots=True)
class WorkerSettings:
    """Per-worker process limits."""

    timeout_seconds: float = 120.0
    terminate_grace_seconds: float = 5.0
    cancel_grace_seconds: float = 2.0


@dataclass(slots=True)
class RetrySettings:
    """Retry budget and fixed backoff table."""

    max_retries: int = 3
    backoff_schedule_ms: tuple[int, ...] = (0, 5_000, 10_000)


@dataclass(slots=True)
class MonitorSettings:
    """Resource sampling settings."""

    sample_interval_seconds: float = 1.0


@dataclass(slots=True)
class MergeSettings:
    """Synthesis process settings."""

    timeout_seconds: float = 120.0
    progress_interval_seconds: float = 5.0
    fallback_enabled: bool = True


@dataclass(slots=True)
class AgentSettings:
    """External CLI agent invocation."""

    command_template: str = DEFAULT_AGENT_COMMAND_TEMPLATE
    model: str = DEFAULT_AGENT_MODEL
    synthesis_command_template: str | None = None
    synthesis_model: str | None = None

    @property
    def effective_synthesis_template(self) -> str:
        return self.synthesis_command_template or self.command_template

    @property
    def effective_synthesis_model(self) -> str:
        return self.synthesis_model or self.model


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    worker: WorkerSettings = field(default_factory=WorkerSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    monitor: MonitorSettings = field(default_factory=MonitorSettings)
    merge: MergeSettings = field(default_factory=MergeSettings)
    agent: AgentSettings = field(default_factory=AgentSettings)

    @classmethod
    def from_env(cls) -> Settings:
        """Load settings from ``PARALLEL_LEARN_*`` environment variables."""

        settings = cls(
            worker=WorkerSettings(
                timeout_seconds=_env_float("PARALLEL_LEARN_WORKER_TIMEOUT_SECONDS", 120.0),
                terminate_grace_seconds=_env_float(
                    "PARALLEL_LEARN_TERMINATE_GRACE_SECONDS",
                    5.0,
                ),
                cancel_grace_seconds=_env_float("PARALLEL_LEARN_CANCEL_GRACE_SECONDS", 2.0),
            ),
            retry=RetrySettings(
                max_retries=_env_int("PARALLEL_LEARN_MAX_RETRIES", 3),
                backoff_schedule_ms=_parse_schedule(
                    os.getenv("PARALLEL_LEARN_BACKOFF_SCHEDULE_MS", "0,5000,10000"),
                ),
            ),
            monitor=MonitorSettings(
                sample_interval_seconds=_env_float(
                    "PARALLEL_LEARN_SAMPLE_INTERVAL_SECONDS",
                    1.0,
                ),
            ),
            merge=MergeSettings(
                timeout_seconds=_env_float("PARALLEL_LEARN_SYNTHESIS_TIMEOUT_SECONDS", 120.0),
                progress_interval_seconds=_env_float(
                    "PARALLEL_LEARN_MERGE_PROGRESS_INTERVAL_SECONDS",
                    5.0,
                ),
                fallback_enabled=_env_bool("PARALLEL_LEARN_FALLBACK_ENABLED", default=True),
            ),
            agent=AgentSettings(
                command_template=os.getenv(
                    "PARALLEL_LEARN_AGENT_COMMAND",
                    DEFAULT_AGENT_COMMAND_TEMPLATE,
                ),
                model=os.getenv("PARALLEL_LEARN_AGENT_MODEL", DEFAULT_AGENT_MODEL),
                synthesis_command_template=os.getenv("PARALLEL_LEARN_SYNTHESIS_COMMAND") or None,
                synthesis_model=os.getenv("PARALLEL_LEARN_SYNTHESIS_MODEL") or None,
            ),
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        """Raise ``SettingsError`` if any value is out of range."""

        if self.worker.timeout_seconds <= 0:
            raise SettingsError("PARALLEL_LEARN_WORKER_TIMEOUT_SECONDS must be > 0.")
        if self.worker.terminate_grace_seconds < 0:
            raise SettingsError("PARALLEL_LEARN_TERMINATE_GRACE_SECONDS must be >= 0.")
        if self.worker.cancel_grace_seconds < 0:
            raise SettingsError("PARALLEL_LEARN_CANCEL_GRACE_SECONDS must be >= 0.")
        if self.retry.max_retries < 0:
            raise SettingsError("PARALLEL_LEARN_MAX_RETRIES must be >= 0.")
        if not self.retry.backoff_schedule_ms:
            raise SettingsError("PARALLEL_LEARN_BACKOFF_SCHEDULE_MS must list at least one delay.")
        if any(delay < 0 for delay in self.retry.backoff_schedule_ms):
            raise SettingsError("PARALLEL_LEARN_BACKOFF_SCHEDULE_MS delays must be >= 0.")
        if self.monitor.sample_interval_seconds <= 0:
            raise SettingsError("PARALLEL_LEARN_SAMPLE_INTERVAL_SECONDS must be > 0.")
        if self.merge.timeout_seconds <= 0:
            raise SettingsError("PARALLEL_LEARN_SYNTHESIS_TIMEOUT_SECONDS must be > 0.")
        if self.merge.progress_interval_seconds <= 0:
            raise SettingsError("PARALLEL_LEARN_MERGE_PROGRESS_INTERVAL_SECONDS must be > 0.")
        if not self.agent.command_template.strip():
            raise SettingsError("PARALLEL_LEARN_AGENT_COMMAND must not be empty.")


def _parse_schedule(raw: str) -> tuple[int, ...]:
    delays: list[int] = []
    for part in raw.split(","):
        token = part.strip()
        if not token:
            continue
        try:
            delays.append(int(token))
        except ValueError as error:
            raise SettingsError(
                f"Invalid PARALLEL_LEARN_BACKOFF_SCHEDULE_MS entry: {token!r}",
            ) from error
    return tuple(delays)


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError as error:
        raise SettingsError(f"Invalid integer value for {name}: {value!r}") from error


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError as error:
        raise SettingsError(f"Invalid number for {name}: {value!r}") from error


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise SettingsError(f"Invalid boolean value for {name}: {value!r}")
