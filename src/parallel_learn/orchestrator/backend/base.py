"""Process capability interface used by workers and synthesis."""

from __future__ import annotations

import signal
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Literal, Protocol

StreamKind = Literal["stdout", "stderr"]

GRACEFUL_SIGNAL = signal.SIGTERM
FORCE_SIGNAL = getattr(signal, "SIGKILL", signal.SIGTERM)


class ProcessSpawnError(RuntimeError):
    """Process could not be started, with retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


@dataclass(frozen=True, slots=True)
class OutputChunk:
    """One piece of decoded output from a single stream."""

    data: str
    stream: StreamKind


@dataclass(frozen=True, slots=True)
class ProcessExit:
    """Exit status: either a code or the signal that ended the process."""

    exit_code: int | None
    signal: int | None = None

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    def describe(self) -> str:
        if self.signal is not None:
            try:
                name = signal.Signals(self.signal).name
            except ValueError:
                name = str(self.signal)
            return f"terminated by {name}"
        return f"exit code {self.exit_code}"


class ProcessHandle(Protocol):
    """Running external process."""

    @property
    def pid(self) -> int | None:
        """OS process id, when known."""

    def output(self) -> AsyncIterator[OutputChunk]:
        """Yield output chunks until both streams reach EOF."""

    async def wait(self) -> ProcessExit:
        """Wait for the process to exit."""

    def terminate(self, sig: int = GRACEFUL_SIGNAL) -> None:
        """Send ``sig``. Idempotent; no-op once the process exited."""

    def close(self) -> None:
        """Release background I/O tasks. Idempotent."""

    @property
    def running(self) -> bool:
        """Whether the process is still alive."""


class ProcessLauncher(Protocol):
    """Factory that starts one process per payload."""

    async def start(self, stdin_payload: str, *, label: str = "") -> ProcessHandle:
        """Start the process, write ``stdin_payload`` and close stdin.

        ``label`` names the unit of work (grouping name, ``synthesis``).

        Raises:
            ProcessSpawnError: the process could not be started.
        """
