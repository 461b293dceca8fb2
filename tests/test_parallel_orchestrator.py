from __future__ import annotations

import asyncio
from pathlib import Path

import allure
from fakes import FakeLauncher, RecordingSleep, Script

from parallel_learn.orchestrator.models import Grouping, Plan, RootContext, WorkerStatus
from parallel_learn.orchestrator.parallel import ParallelOrchestrator

pytestmark = [
    allure.epic("Parallel Execution"),
    allure.feature("Fan-out / Fan-in"),
]

ROOT = RootContext(root_path=Path("/repo"), project_summary="Billing service monorepo")


def _plan(*names: str) -> Plan:
    return Plan(groupings=tuple(Grouping(name=name, folders=(f"src/{name}",)) for name in names))


def _orchestrator(launcher: FakeLauncher, bus, sampler, **kwargs) -> ParallelOrchestrator:
    return ParallelOrchestrator(
        launcher=launcher,
        root_context=ROOT,
        bus=bus,
        terminate_grace_seconds=0.05,
        sample_interval_seconds=0.01,
        sampler=sampler,
        sleep=RecordingSleep(),
        **kwargs,
    )


def test_all_groupings_run_concurrently_and_succeed(bus, recorder, fixed_sampler) -> None:
    script = Script(stdout="## Findings\n", delay=0.05)
    launcher = FakeLauncher(scripts={name: [script] for name in ("api", "web", "db")})
    orchestrator = _orchestrator(launcher, bus, fixed_sampler)

    summary = asyncio.run(orchestrator.execute(_plan("api", "web", "db")))

    assert launcher.max_live == 3
    assert summary.worker_count == 3
    assert summary.success_count == 3
    assert summary.failed_count == 0
    assert summary.canceled is False
    assert [record.id for record in summary.workers] == ["api", "web", "db"]
    assert all(record.stdout == "## Findings\n" for record in summary.workers)
    assert summary.sequential_duration_ms == sum(r.duration_ms for r in summary.workers)
    assert summary.speedup_factor > 1.0

    queued = recorder.of_type("worker:queued")
    assert [event.worker_id for event in queued] == ["api", "web", "db"]
    assert {event.folder_count for event in queued} == {1}
    assert recorder.types()[:3] == ["worker:queued"] * 3
    assert recorder.types()[-1] == "workers:all-complete"
    done = recorder.of_type("workers:all-complete")[0]
    assert done.total_count == 3
    assert done.success_count == 3
    assert done.speedup_factor == round(summary.speedup_factor, 2)


def test_one_failing_worker_does_not_affect_others(bus, recorder, fixed_sampler) -> None:
    launcher = FakeLauncher(scripts={"web": [Script(exit_code=1, stderr="lint exploded\n")]})
    orchestrator = _orchestrator(launcher, bus, fixed_sampler)

    summary = asyncio.run(orchestrator.execute(_plan("api", "web", "db"), max_retries=1))

    by_id = {record.id: record for record in summary.workers}
    assert by_id["api"].status == WorkerStatus.COMPLETE
    assert by_id["db"].status == WorkerStatus.COMPLETE
    assert by_id["web"].status == WorkerStatus.ERROR
    assert by_id["web"].error == "Worker process failed with exit code 1: lint exploded"
    assert launcher.attempts("api") == 1
    assert launcher.attempts("web") == 2
    assert summary.success_count == 2
    assert summary.failed_count == 1
    assert summary.success_count + summary.failed_count == summary.worker_count


def test_unexpected_task_crash_becomes_errored_record(bus, recorder, fixed_sampler) -> None:
    launcher = FakeLauncher(scripts={"web": [Script(crash=RuntimeError("launcher bug"))]})
    orchestrator = _orchestrator(launcher, bus, fixed_sampler)

    summary = asyncio.run(orchestrator.execute(_plan("api", "web")))

    web = summary.workers[1]
    assert web.status == WorkerStatus.ERROR
    assert web.error == "Unexpected worker error: launcher bug"
    assert summary.workers[0].status == WorkerStatus.COMPLETE
    assert summary.success_count == 1
    assert [event.worker_id for event in recorder.of_type("worker:error")] == ["web"]


def test_every_record_is_terminal_after_join(bus, fixed_sampler) -> None:
    launcher = FakeLauncher(
        scripts={
            "a": [Script(exit_code=3)],
            "b": [Script(exit_code=None)],
            "c": [Script(stdout="fine")],
        },
    )
    orchestrator = _orchestrator(launcher, bus, fixed_sampler, timeout_seconds=0.05)

    summary = asyncio.run(orchestrator.execute(_plan("a", "b", "c"), max_retries=0))

    assert all(record.is_terminal for record in summary.workers)
    assert [record.status for record in summary.workers] == [
        WorkerStatus.ERROR,
        WorkerStatus.ERROR,
        WorkerStatus.COMPLETE,
    ]
    assert summary.workers[1].error == "Worker timed out after 0.05s"


def test_progress_snapshots_are_sampled_while_running(bus, recorder, fixed_sampler) -> None:
    launcher = FakeLauncher(default=Script(stdout="x", delay=0.1))
    orchestrator = _orchestrator(launcher, bus, fixed_sampler)

    summary = asyncio.run(orchestrator.execute(_plan("api", "web")))

    progress = recorder.of_type("workers:progress")
    assert len(progress) >= 2
    assert any(event.running_count == 2 for event in progress)
    assert progress[-1].completed_count == 2
    assert progress[-1].progress_percent == 100
    assert summary.peak_memory_mb == 64.0
    assert summary.peak_cpu_percent == 12.5
    assert len(summary.snapshots) == len(progress)


def test_output_events_carry_worker_id_and_stream(bus, recorder, fixed_sampler) -> None:
    launcher = FakeLauncher(default=Script(stdout="out", stderr="warn"))
    orchestrator = _orchestrator(launcher, bus, fixed_sampler)

    asyncio.run(orchestrator.execute(_plan("api")))

    outputs = [
        (event.worker_id, event.stream, event.data)
        for event in recorder.of_type("worker:output")
    ]
    assert outputs == [("api", "stdout", "out"), ("api", "stderr", "warn")]


def test_execute_sync_runs_its_own_loop(bus, fixed_sampler) -> None:
    orchestrator = _orchestrator(FakeLauncher(), bus, fixed_sampler)

    summary = orchestrator.execute_sync(_plan("api"))

    assert summary.success_count == 1
    assert orchestrator.progress().completed == 1


def test_empty_plan_completes_immediately(bus, recorder, fixed_sampler) -> None:
    orchestrator = _orchestrator(FakeLauncher(), bus, fixed_sampler)

    summary = asyncio.run(orchestrator.execute(Plan(groupings=())))

    assert summary.worker_count == 0
    assert summary.speedup_factor >= 0
    assert recorder.types()[-1] == "workers:all-complete"
