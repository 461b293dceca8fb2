from __future__ import annotations

import json
from pathlib import Path

import allure
import pytest

from parallel_learn.orchestrator.models import (
    Grouping,
    Plan,
    PlanError,
    WorkerRecord,
    WorkerStateError,
    WorkerStatus,
    load_plan,
    speedup_factor,
)

pytestmark = [
    allure.epic("Parallel Execution"),
    allure.feature("Plan and Worker Records"),
]


def test_plan_from_dict_accepts_camel_case_order() -> None:
    plan = Plan.from_dict(
        {
            "groupings": [
                {"name": "core", "folders": ["src/core"], "priority": 1},
                {"name": "ui", "folders": ["src/ui", "src/theme"]},
            ],
            "summary": "Editor plugin",
            "analysisOrder": ["core", "ui"],
        },
    )

    assert [grouping.name for grouping in plan.groupings] == ["core", "ui"]
    assert plan.groupings[1].folders == ("src/ui", "src/theme")
    assert plan.groupings[1].priority == 3
    assert plan.summary == "Editor plugin"
    assert plan.analysis_order == ("core", "ui")


@pytest.mark.parametrize(
    "payload",
    [
        {},
        {"groupings": "core"},
        {"groupings": [{"name": "", "folders": ["a"]}]},
        {"groupings": [{"name": "core", "folders": []}]},
        {"groupings": [{"name": "core", "folders": "src"}]},
        {"groupings": [{"name": "core", "folders": ["a"], "priority": 9}]},
        {"groupings": [{"name": "core", "folders": ["a"], "priority": True}]},
        {"groupings": [{"name": "a", "folders": ["x"]}, {"name": "a", "folders": ["y"]}]},
        {"groupings": [], "analysisOrder": "core"},
    ],
)
def test_invalid_plans_are_rejected(payload: dict) -> None:
    with pytest.raises(PlanError):
        Plan.from_dict(payload)


def test_load_plan_reads_json(tmp_path: Path) -> None:
    path = tmp_path / "plan.json"
    path.write_text(json.dumps({"groupings": [{"name": "core", "folders": ["src"]}]}), "utf-8")

    assert load_plan(path).groupings == (Grouping(name="core", folders=("src",)),)


def test_load_plan_rejects_broken_json(tmp_path: Path) -> None:
    path = tmp_path / "plan.json"
    path.write_text("{not json", "utf-8")

    with pytest.raises(PlanError, match="not valid JSON"):
        load_plan(path)


def test_record_lifecycle_with_retry() -> None:
    record = WorkerRecord(id="core", folders=("src",), max_retries=2)
    assert record.status == WorkerStatus.QUEUED
    assert record.elapsed_ms() == 0

    record.start_attempt(1)
    record.append_output("partial", stream="stdout")
    started_at = record.started_at
    record.transition(WorkerStatus.RETRYING)
    record.start_attempt(2)

    assert record.started_at == started_at
    assert record.stdout == ""
    assert record.retry_count == 1

    record.append_output("done", stream="stdout")
    record.append_output("warn", stream="stderr")
    record.finish(WorkerStatus.COMPLETE, exit_code=0)

    assert record.success is True
    assert record.is_terminal is True
    assert record.completed_at is not None
    assert record.duration_ms >= 0
    assert (record.stdout, record.stderr) == ("done", "warn")


def test_terminal_record_is_immutable() -> None:
    record = WorkerRecord(id="core", folders=("src",), max_retries=0)
    record.start_attempt(1)
    record.finish(WorkerStatus.ERROR, error="boom")

    with pytest.raises(WorkerStateError):
        record.append_output("late", stream="stdout")
    with pytest.raises(WorkerStateError):
        record.transition(WorkerStatus.RUNNING)
    assert record.error == "boom"


@pytest.mark.parametrize(
    ("path", "target"),
    [
        ((), WorkerStatus.COMPLETE),
        ((), WorkerStatus.RETRYING),
        ((WorkerStatus.RUNNING, WorkerStatus.CANCELING), WorkerStatus.RUNNING),
        ((WorkerStatus.RUNNING, WorkerStatus.RETRYING), WorkerStatus.COMPLETE),
    ],
)
def test_illegal_transitions_raise(path: tuple[WorkerStatus, ...], target: WorkerStatus) -> None:
    record = WorkerRecord(id="core", folders=("src",), max_retries=1)
    for status in path:
        record.transition(status)

    with pytest.raises(WorkerStateError):
        record.transition(target)


def test_finish_requires_terminal_status() -> None:
    record = WorkerRecord(id="core", folders=("src",), max_retries=1)
    record.start_attempt(1)

    with pytest.raises(WorkerStateError):
        record.finish(WorkerStatus.RETRYING)


def test_speedup_factor() -> None:
    assert speedup_factor(3_000, 1_000) == 3.0
    assert speedup_factor(500, 0) == 1.0
