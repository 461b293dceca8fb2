from __future__ import annotations

import asyncio
import signal
import sys
from pathlib import Path

import allure
import pytest

from parallel_learn.orchestrator.backend.base import ProcessExit, ProcessSpawnError
from parallel_learn.orchestrator.backend.cli_backend import SubprocessLauncher, build_run_args
from parallel_learn.orchestrator.backend.runner import drive_process
from parallel_learn.orchestrator.cancellation import CancellationToken

pytestmark = [
    allure.epic("Process Backend"),
    allure.feature("Agent Command Rendering"),
]


def test_build_run_args_quotes_placeholder_values() -> None:
    argv = build_run_args(
        command_template="agent --model {model} --cwd {root} --tag {grouping}",
        model="sonnet",
        root=Path("/work/my repo"),
        grouping="api and routes",
    )

    assert argv == [
        "agent",
        "--model",
        "sonnet",
        "--cwd",
        "/work/my repo",
        "--tag",
        "api and routes",
    ]


def test_build_run_args_without_root_uses_current_directory() -> None:
    argv = build_run_args(command_template="agent {root}", model="", root=None)

    assert argv == ["agent", "."]


def test_build_run_args_rejects_unknown_placeholder() -> None:
    with pytest.raises(ProcessSpawnError) as error:
        build_run_args(command_template="agent {prompt}", model="m", root=None)

    assert error.value.transient is False


def test_build_run_args_rejects_empty_template() -> None:
    with pytest.raises(ProcessSpawnError):
        build_run_args(command_template="   ", model="m", root=None)


def test_process_exit_describe() -> None:
    assert ProcessExit(exit_code=3).describe() == "exit code 3"
    assert ProcessExit(exit_code=None, signal=int(signal.SIGTERM)).describe() == (
        "terminated by SIGTERM"
    )
    assert ProcessExit(exit_code=0).ok is True


def _run(launcher: SubprocessLauncher, payload: str, *, timeout: float = 30.0, token=None):
    async def scenario():
        handle = await launcher.start(payload, label="alpha")
        return await drive_process(
            handle,
            timeout_seconds=timeout,
            terminate_grace_seconds=2.0,
            cancel_token=token,
            cancel_grace_seconds=0.5,
        )

    return asyncio.run(scenario())


def test_echo_agent_reads_stdin_payload(tmp_path: Path, echo_agent: str) -> None:
    launcher = SubprocessLauncher(command_template=echo_agent, root=tmp_path)

    run = _run(launcher, "Analyze these folders\n- src/api\n")

    assert run.exit_code == 0
    assert run.timed_out is False
    assert "## Analysis of alpha" in run.stdout
    assert "- payload_chars: 32" in run.stdout
    assert "- first_line: Analyze these folders" in run.stdout


def test_nonzero_exit_and_stderr_are_collected(tmp_path: Path, echo_agent: str) -> None:
    launcher = SubprocessLauncher(
        command_template=f"{echo_agent} --exit-code 3 --stderr 'rate limit hit'",
        root=tmp_path,
    )

    run = _run(launcher, "payload")

    assert run.exit == ProcessExit(exit_code=3)
    assert run.stderr.strip() == "rate limit hit"


def test_timeout_terminates_subprocess(tmp_path: Path, echo_agent: str) -> None:
    launcher = SubprocessLauncher(command_template=f"{echo_agent} --sleep 30", root=tmp_path)

    run = _run(launcher, "payload", timeout=1.0)

    assert run.timed_out is True
    assert run.exit is not None
    assert run.exit.signal == signal.SIGTERM


def test_cancellation_terminates_subprocess(tmp_path: Path, echo_agent: str) -> None:
    launcher = SubprocessLauncher(command_template=f"{echo_agent} --sleep 30", root=tmp_path)
    token = CancellationToken()

    async def scenario():
        handle = await launcher.start("payload", label="alpha")
        asyncio.get_running_loop().call_later(0.5, token.cancel)
        return await drive_process(
            handle,
            timeout_seconds=30,
            terminate_grace_seconds=2.0,
            cancel_token=token,
            cancel_grace_seconds=0.5,
        )

    run = asyncio.run(scenario())

    assert run.canceled is True
    assert run.timed_out is False
    assert run.exit is not None
    assert run.exit.ok is False


def test_missing_command_is_a_permanent_spawn_error(tmp_path: Path) -> None:
    launcher = SubprocessLauncher(command_template="definitely-not-an-agent-xyz", root=tmp_path)

    with pytest.raises(ProcessSpawnError) as error:
        asyncio.run(launcher.start("payload", label="alpha"))

    assert error.value.transient is False
    assert "definitely-not-an-agent-xyz" in str(error.value)


@pytest.mark.skipif(sys.platform == "win32", reason="needs a POSIX shell")
def test_readers_are_cancelled_when_grandchild_holds_pipes(tmp_path: Path) -> None:
    launcher = SubprocessLauncher(command_template="sh -c 'sleep 3 & echo done'", root=tmp_path)

    async def scenario():
        handle = await launcher.start("payload", label="alpha")
        run = await drive_process(
            handle,
            timeout_seconds=10,
            terminate_grace_seconds=0.2,
        )
        pending = [*handle._readers, handle._stdin_writer]
        await asyncio.wait(pending, timeout=1.0)
        return run, pending

    run, pending = asyncio.run(scenario())

    assert run.exit_code == 0
    assert "done" in run.stdout
    assert all(task.done() for task in pending)
