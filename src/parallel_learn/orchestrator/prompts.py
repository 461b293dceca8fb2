"""Instruction payloads for worker and synthesis processes."""

from __future__ import annotations

from parallel_learn.orchestrator.models import Grouping, RootContext, WorkerRecord

SYNTHESIS_SECTIONS: tuple[str, ...] = (
    "Project Overview",
    "Technology Stack",
    "Directory Structure",
    "Architectural Patterns",
    "Development Conventions",
    "Key Components",
    "Notes for AI Agents",
)

_OUTPUT_RULES = """
IMPORTANT output rules:
- Write your analysis as Markdown to standard output only.
- Do NOT modify, create, or delete any files in the repository.
- Stay inside the folders assigned to you; mention other folders only as dependencies.
- Prefer concrete file paths and names over generic statements.
"""

WORKER_PROMPT = """\
You are analyzing one part of a software repository so that AI coding agents
can work in it effectively later. Several analysts work in parallel, each on a
different group of folders; your findings will be merged with theirs.

Repository root: {root_path}
Your group: {grouping_name} (priority {priority})

Folders assigned to you:
{folder_list}
{project_context}
For the assigned folders, describe:
1. Purpose of each folder and how the folders relate to each other.
2. Languages, frameworks, and notable libraries in use.
3. Architectural patterns and important abstractions (name the files).
4. Coding conventions: naming, testing layout, error handling, configuration.
5. Entry points, build or run commands, and anything surprising.
{output_rules}"""

SYNTHESIS_PROMPT = """\
You are merging codebase analyses written in parallel by several analysts,
each covering a different group of folders of the same repository.

Repository root: {root_path}
{project_context}
Produce ONE consolidated Markdown document:
- Remove duplicated statements; keep the most specific version of each fact.
- Resolve contradictions in favor of the analysis that cites concrete files.
- Organize the result under exactly these second-level sections, in order:
{section_list}
- Do not add a top-level title; it is added for you.
- Write the document to standard output only. Do not modify any files.

The {worker_count} analyses follow, each framed by BEGIN/END markers.

{framed_outputs}
"""


def build_worker_prompt(grouping: Grouping, root_context: RootContext) -> str:
    """Build the stdin payload for one grouping's worker."""

    folder_list = "\n".join(f"- {folder}" for folder in grouping.folders)
    return WORKER_PROMPT.format(
        root_path=root_context.root_path,
        grouping_name=grouping.name,
        priority=grouping.priority,
        folder_list=folder_list,
        project_context=_project_context(root_context),
        output_rules=_OUTPUT_RULES,
    )


def frame_worker_output(record: WorkerRecord) -> str:
    """Wrap one successful worker output with its group metadata."""

    folders = ", ".join(record.folders)
    return (
        f"===== BEGIN ANALYSIS: {record.id} =====\n"
        f"Group: {record.id}\n"
        f"Folders: {folders}\n"
        f"Duration: {record.duration_ms / 1000:.1f}s\n"
        "\n"
        f"{record.stdout.strip()}\n"
        f"===== END ANALYSIS: {record.id} ====="
    )


def build_synthesis_prompt(records: list[WorkerRecord], root_context: RootContext) -> str:
    """Build the stdin payload for the synthesis process."""

    return SYNTHESIS_PROMPT.format(
        root_path=root_context.root_path,
        project_context=_project_context(root_context),
        section_list="\n".join(f"  ## {section}" for section in SYNTHESIS_SECTIONS),
        worker_count=len(records),
        framed_outputs="\n\n".join(frame_worker_output(record) for record in records),
    )


def _project_context(root_context: RootContext) -> str:
    lines: list[str] = []
    if root_context.project_summary:
        lines.append(f"\nProject summary: {root_context.project_summary.strip()}")
    if root_context.analysis_order:
        lines.append(f"Suggested analysis order: {', '.join(root_context.analysis_order)}")
    if not lines:
        return ""
    return "\n".join(lines) + "\n"
