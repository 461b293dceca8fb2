"""Shared test fixtures."""

from __future__ import annotations

import os
import shlex
import sys
from pathlib import Path

import pytest

import parallel_learn
from parallel_learn.orchestrator.events import EventBus, RecordingListener
from parallel_learn.orchestrator.monitor import ResourceSample

_SRC_DIR = Path(parallel_learn.__file__).resolve().parents[1]

ECHO_AGENT_COMMAND = (
    f"{shlex.quote(sys.executable)} -m parallel_learn.orchestrator.backend.echo_agent"
)


@pytest.fixture()
def bus() -> EventBus:
    return EventBus()


@pytest.fixture()
def recorder(bus: EventBus) -> RecordingListener:
    listener = RecordingListener()
    bus.subscribe(listener)
    return listener


@pytest.fixture()
def fixed_sampler():
    """Deterministic resource sampler so tests never depend on host load."""

    return lambda: ResourceSample(cpu_percent=12.5, memory_mb=64.0)


@pytest.fixture()
def echo_agent(monkeypatch) -> str:
    """Make the echo agent importable from subprocesses and return its command."""

    current = os.environ.get("PYTHONPATH")
    monkeypatch.setenv(
        "PYTHONPATH",
        str(_SRC_DIR) if not current else os.pathsep.join([str(_SRC_DIR), current]),
    )
    return ECHO_AGENT_COMMAND


@pytest.fixture(autouse=True)
def _isolated_settings_env(monkeypatch) -> None:
    for name in list(os.environ):
        if name.startswith("PARALLEL_LEARN_"):
            monkeypatch.delenv(name, raising=False)
