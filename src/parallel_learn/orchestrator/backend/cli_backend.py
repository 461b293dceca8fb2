"""Subprocess-based launcher for CLI agents."""

from __future__ import annotations

import asyncio
import codecs
import logging
import os
import shlex
from collections.abc import AsyncIterator, Mapping
from pathlib import Path

from parallel_learn.orchestrator.backend.base import (
    FORCE_SIGNAL,
    GRACEFUL_SIGNAL,
    OutputChunk,
    ProcessExit,
    ProcessSpawnError,
    StreamKind,
)

logger = logging.getLogger(__name__)

_READ_CHUNK_BYTES = 4096


class SubprocessHandle:
    """Process handle backed by ``asyncio.subprocess.Process``."""

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        *,
        label: str = "",
        stdin_payload: str = "",
    ) -> None:
        self._process = process
        self._label = label
        self._queue: asyncio.Queue[OutputChunk | None] = asyncio.Queue()
        self._readers = [
            asyncio.create_task(self._read_stream(process.stdout, "stdout")),
            asyncio.create_task(self._read_stream(process.stderr, "stderr")),
        ]
        self._stdin_writer = asyncio.create_task(_feed_stdin(process, stdin_payload))
        self._exit: ProcessExit | None = None

    @property
    def pid(self) -> int | None:
        return self._process.pid

    @property
    def running(self) -> bool:
        return self._process.returncode is None

    async def output(self) -> AsyncIterator[OutputChunk]:
        open_streams = len(self._readers)
        while open_streams:
            chunk = await self._queue.get()
            if chunk is None:
                open_streams -= 1
                continue
            yield chunk

    async def wait(self) -> ProcessExit:
        if self._exit is None:
            returncode = await self._process.wait()
            if returncode < 0:
                self._exit = ProcessExit(exit_code=None, signal=-returncode)
            else:
                self._exit = ProcessExit(exit_code=returncode)
        return self._exit

    def terminate(self, sig: int = GRACEFUL_SIGNAL) -> None:
        if not self.running:
            return
        try:
            if sig == FORCE_SIGNAL:
                self._process.kill()
            else:
                self._process.send_signal(sig)
        except ProcessLookupError:
            return
        logger.debug("Sent signal %s to %s (pid=%s)", sig, self._label, self.pid)

    def close(self) -> None:
        """Cancel stream readers and the stdin writer that are still pending."""

        for task in (*self._readers, self._stdin_writer):
            if not task.done():
                task.cancel()

    async def _read_stream(
        self,
        stream: asyncio.StreamReader | None,
        kind: StreamKind,
    ) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        try:
            if stream is None:
                return
            while True:
                raw = await stream.read(_READ_CHUNK_BYTES)
                if not raw:
                    break
                text = decoder.decode(raw)
                if text:
                    self._queue.put_nowait(OutputChunk(data=text, stream=kind))
            tail = decoder.decode(b"", final=True)
            if tail:
                self._queue.put_nowait(OutputChunk(data=tail, stream=kind))
        finally:
            self._queue.put_nowait(None)


class SubprocessLauncher:
    """Start CLI agent processes from a command template.

    The template is a shell-like command line rendered with ``shlex`` quoting.
    Supported placeholders: ``{model}``, ``{root}``, ``{grouping}``. The
    instruction payload always travels on stdin, never on the command line.
    """

    def __init__(
        self,
        *,
        command_template: str,
        model: str = "",
        root: Path | None = None,
        env: Mapping[str, str] | None = None,
    ) -> None:
        self.command_template = command_template
        self.model = model
        self.root = root
        self.env = dict(env) if env is not None else None

    async def start(self, stdin_payload: str, *, label: str = "") -> SubprocessHandle:
        argv = build_run_args(
            command_template=self.command_template,
            model=self.model,
            root=self.root,
            grouping=label,
        )
        env = os.environ.copy()
        if self.env:
            env.update(self.env)
        env["PARALLEL_LEARN_GROUPING"] = label

        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(self.root) if self.root is not None else None,
                env=env,
            )
        except FileNotFoundError as error:
            raise ProcessSpawnError(
                f"CLI agent command not found: {argv[0]}",
                transient=False,
            ) from error
        except OSError as error:
            raise ProcessSpawnError(
                f"CLI agent failed to start: {error}",
                transient=True,
            ) from error

        handle = SubprocessHandle(process, label=label, stdin_payload=stdin_payload)
        logger.debug("Started %s (pid=%s): %s", label or "process", process.pid, argv[0])
        return handle


async def _feed_stdin(process: asyncio.subprocess.Process, payload: str) -> None:
    stdin = process.stdin
    if stdin is None:
        return
    try:
        stdin.write(payload.encode("utf-8"))
        await stdin.drain()
    except (BrokenPipeError, ConnectionResetError):
        logger.debug("Process %s closed stdin before payload was written", process.pid)
    finally:
        stdin.close()


def build_run_args(
    *,
    command_template: str,
    model: str,
    root: Path | None,
    grouping: str = "",
) -> list[str]:
    stripped = command_template.strip()
    if not stripped:
        raise ProcessSpawnError("CLI agent command template is empty.", transient=False)

    try:
        rendered = stripped.format(
            model=shlex.quote(model),
            root=shlex.quote(str(root) if root is not None else "."),
            grouping=shlex.quote(grouping),
        )
    except (KeyError, IndexError) as error:
        raise ProcessSpawnError(
            f"Unsupported command template placeholder: {error}",
            transient=False,
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise ProcessSpawnError(
            "CLI agent command template rendered empty command.",
            transient=False,
        )
    return argv
