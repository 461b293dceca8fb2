from __future__ import annotations

from pathlib import Path

import allure
from fakes import make_record

from parallel_learn.orchestrator.models import Grouping, RootContext
from parallel_learn.orchestrator.prompts import (
    SYNTHESIS_SECTIONS,
    build_synthesis_prompt,
    build_worker_prompt,
    frame_worker_output,
)

pytestmark = [
    allure.epic("Parallel Execution"),
    allure.feature("Instruction Payloads"),
]

ROOT = RootContext(
    root_path=Path("/repo"),
    project_summary="CLI for invoices",
    analysis_order=("core", "cli"),
)


def test_worker_prompt_names_grouping_and_folders() -> None:
    grouping = Grouping(name="core", folders=("src/a", "src/b"), priority=1)

    prompt = build_worker_prompt(grouping, ROOT)

    assert "Your group: core (priority 1)" in prompt
    assert "- src/a\n- src/b" in prompt
    assert "Project summary: CLI for invoices" in prompt
    assert "Suggested analysis order: core, cli" in prompt
    assert "Do NOT modify" in prompt


def test_frame_worker_output_has_markers_and_metadata() -> None:
    record = make_record("core", stdout="\n## Core\n\nfacts\n", folders=("src/a", "src/b"))

    framed = frame_worker_output(record)

    lines = framed.splitlines()
    assert lines[0] == "===== BEGIN ANALYSIS: core ====="
    assert lines[1] == "Group: core"
    assert lines[2] == "Folders: src/a, src/b"
    assert lines[3].startswith("Duration: ")
    assert lines[-1] == "===== END ANALYSIS: core ====="
    assert "## Core\n\nfacts" in framed


def test_synthesis_prompt_lists_fixed_sections_in_order() -> None:
    records = [make_record("core", stdout="A"), make_record("cli", stdout="B")]

    prompt = build_synthesis_prompt(records, ROOT)

    positions = [prompt.index(f"## {section}") for section in SYNTHESIS_SECTIONS]
    assert positions == sorted(positions)
    assert "The 2 analyses follow" in prompt
    assert prompt.index("BEGIN ANALYSIS: core") < prompt.index("BEGIN ANALYSIS: cli")
