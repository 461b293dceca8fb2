"""Drive one started process to completion under timeout and cancellation."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable
from dataclasses import dataclass

from parallel_learn.orchestrator.backend.base import (
    FORCE_SIGNAL,
    GRACEFUL_SIGNAL,
    OutputChunk,
    ProcessExit,
    ProcessHandle,
)
from parallel_learn.orchestrator.cancellation import CancellationToken

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ProcessRun:
    """Collected output and exit metadata of one driven process."""

    stdout: str
    stderr: str
    exit: ProcessExit | None
    timed_out: bool = False
    canceled: bool = False

    @property
    def exit_code(self) -> int | None:
        return self.exit.exit_code if self.exit is not None else None


async def drive_process(  # noqa: PLR0913
    handle: ProcessHandle,
    *,
    timeout_seconds: float,
    terminate_grace_seconds: float,
    cancel_token: CancellationToken | None = None,
    cancel_grace_seconds: float = 2.0,
    on_output: Callable[[OutputChunk], None] | None = None,
) -> ProcessRun:
    """Pump output until exit, timeout, or cancellation.

    On timeout the process gets ``GRACEFUL_SIGNAL`` and ``terminate_grace_seconds``
    to exit before ``FORCE_SIGNAL``. On cancellation the same escalation uses
    ``cancel_grace_seconds``.
    """

    stdout_parts: list[str] = []
    stderr_parts: list[str] = []

    async def _pump() -> None:
        async for chunk in handle.output():
            if chunk.stream == "stderr":
                stderr_parts.append(chunk.data)
            else:
                stdout_parts.append(chunk.data)
            if on_output is not None:
                on_output(chunk)

    pump = asyncio.create_task(_pump())
    waiter = asyncio.ensure_future(handle.wait())
    watched: set[asyncio.Future[object]] = {waiter}
    cancel_waiter: asyncio.Future[object] | None = None
    if cancel_token is not None:
        cancel_waiter = asyncio.ensure_future(cancel_token.wait())
        watched.add(cancel_waiter)

    timed_out = False
    canceled = False
    try:
        done, _ = await asyncio.wait(
            watched,
            timeout=timeout_seconds,
            return_when=asyncio.FIRST_COMPLETED,
        )
        if waiter not in done:
            if cancel_waiter is not None and cancel_waiter in done:
                canceled = True
                await stop_process(handle, grace_seconds=cancel_grace_seconds)
            else:
                timed_out = True
                logger.warning(
                    "Process pid=%s timed out after %.1fs, terminating",
                    handle.pid,
                    timeout_seconds,
                )
                await stop_process(handle, grace_seconds=terminate_grace_seconds)
        process_exit = await waiter
        # Orphaned grandchildren can hold the pipes open after exit.
        await asyncio.wait({pump}, timeout=max(terminate_grace_seconds, 1.0))
    finally:
        if cancel_waiter is not None:
            cancel_waiter.cancel()
        if not pump.done():
            pump.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await pump
        handle.close()

    if cancel_token is not None and cancel_token.is_cancelled:
        canceled = True
    return ProcessRun(
        stdout="".join(stdout_parts),
        stderr="".join(stderr_parts),
        exit=process_exit,
        timed_out=timed_out,
        canceled=canceled,
    )


async def stop_process(handle: ProcessHandle, *, grace_seconds: float) -> ProcessExit:
    """Terminate gracefully, then force kill after ``grace_seconds``."""

    handle.terminate(GRACEFUL_SIGNAL)
    try:
        return await asyncio.wait_for(handle.wait(), timeout=max(0.0, grace_seconds))
    except TimeoutError:
        logger.warning(
            "Process pid=%s still alive %.1fs after terminate, killing",
            handle.pid,
            grace_seconds,
        )
    handle.terminate(FORCE_SIGNAL)
    return await handle.wait()
