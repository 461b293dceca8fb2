"""Deterministic classification of a failed worker attempt."""

from __future__ import annotations

from dataclasses import dataclass

from parallel_learn.orchestrator.backend.base import ProcessExit
from parallel_learn.orchestrator.models import FailureClass

WORKER_FAILURE_CLASSIFIER_VERSION = 1

_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "429",
    "please retry",
    "try again later",
)
_QUOTA_PATTERNS: tuple[str, ...] = (
    "quota",
    "resource_exhausted",
    "usage limit",
    "credits",
)
_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "invalid api key",
    "authentication",
    "not logged in",
)
_NETWORK_PATTERNS: tuple[str, ...] = (
    "temporarily unavailable",
    "connection reset",
    "network error",
    "could not resolve host",
)

_HINT_RULES: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("quota", _QUOTA_PATTERNS),
    ("auth", _AUTH_PATTERNS),
    ("rate_limit", _RATE_LIMIT_PATTERNS),
    ("network", _NETWORK_PATTERNS),
)


@dataclass(slots=True)
class WorkerFailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    reason_code: str
    matched_rule: str
    matched_pattern: str | None
    message: str

    @property
    def retryable(self) -> bool:
        return self.failure_class != FailureClass.CANCELED


def classify_worker_failure(  # noqa: PLR0913
    *,
    process_exit: ProcessExit | None,
    timed_out: bool,
    canceled: bool,
    spawn_error: str | None,
    timeout_seconds: float,
    stdout: str = "",
    stderr: str = "",
) -> WorkerFailureClassification:
    """Classify a non-successful attempt. Precedence: cancel, spawn, timeout, exit."""

    if canceled:
        return WorkerFailureClassification(
            failure_class=FailureClass.CANCELED,
            reason_code="canceled",
            matched_rule="cancellation_requested",
            matched_pattern=None,
            message="Worker canceled",
        )

    if spawn_error is not None:
        return WorkerFailureClassification(
            failure_class=FailureClass.SPAWN_FAILURE,
            reason_code="spawn_failure",
            matched_rule="spawn_error",
            matched_pattern=None,
            message=f"Failed to start worker process: {spawn_error}",
        )

    if timed_out:
        return WorkerFailureClassification(
            failure_class=FailureClass.TIMEOUT,
            reason_code="timeout",
            matched_rule="wall_clock_timeout",
            matched_pattern=None,
            message=f"Worker timed out after {timeout_seconds:g}s",
        )

    rule, pattern = _first_hint(_normalize_text(stdout=stdout, stderr=stderr))
    described = process_exit.describe() if process_exit is not None else "unknown exit status"
    message = f"Worker process failed with {described}"
    detail = _last_line(stderr)
    if detail:
        message = f"{message}: {detail}"
    return WorkerFailureClassification(
        failure_class=FailureClass.NONZERO_EXIT,
        reason_code=f"nonzero_exit_{rule}" if rule else "nonzero_exit",
        matched_rule=rule or "exit_status",
        matched_pattern=pattern,
        message=message,
    )


def _first_hint(haystack: str) -> tuple[str | None, str | None]:
    for rule, patterns in _HINT_RULES:
        for pattern in patterns:
            if pattern in haystack:
                return rule, pattern
    return None, None


def _normalize_text(*, stdout: str, stderr: str) -> str:
    return f"{stderr}\n{stdout}".lower()


def _last_line(text: str, limit: int = 200) -> str:
    for line in reversed(text.splitlines()):
        stripped = line.strip()
        if stripped:
            return stripped[:limit]
    return ""
