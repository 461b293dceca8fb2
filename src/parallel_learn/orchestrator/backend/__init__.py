"""Process launcher implementations."""

from parallel_learn.orchestrator.backend.base import (
    OutputChunk,
    ProcessExit,
    ProcessHandle,
    ProcessLauncher,
    ProcessSpawnError,
)
from parallel_learn.orchestrator.backend.cli_backend import (
    SubprocessHandle,
    SubprocessLauncher,
    build_run_args,
)

__all__ = [
    "OutputChunk",
    "ProcessExit",
    "ProcessHandle",
    "ProcessLauncher",
    "ProcessSpawnError",
    "SubprocessHandle",
    "SubprocessLauncher",
    "build_run_args",
]
