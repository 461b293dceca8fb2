"""Plain concatenation of raw worker outputs when synthesis is unavailable."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime
from pathlib import Path

from parallel_learn.orchestrator.models import (
    ExecutionSummary,
    RootContext,
    WorkerRecord,
    utc_now,
)

logger = logging.getLogger(__name__)


def assemble_fallback_document(
    summary: ExecutionSummary,
    root_context: RootContext,
    *,
    generated_at: datetime | None = None,
) -> str:
    """Build a non-deduplicated document from successful worker outputs."""

    stamp = (generated_at or utc_now()).isoformat()
    successful = summary.successful_workers
    lines = [
        "# Project Context",
        "",
        f"> Generated {stamp} by parallel analysis (unmerged fallback)",
        f"> Root: {root_context.root_path}",
        f"> Combined {len(successful)} of {summary.worker_count} worker output(s) "
        "without synthesis; sections may repeat.",
        "",
    ]
    if root_context.project_summary:
        lines.extend(["## Project Summary", "", root_context.project_summary.strip(), ""])

    for record in _ordered(successful, root_context.analysis_order):
        lines.extend(
            [
                f"## {record.id}",
                "",
                f"*Folders: {', '.join(record.folders)}*",
                "",
                record.stdout.strip(),
                "",
            ],
        )

    missing = [record for record in summary.workers if not record.success]
    if missing:
        lines.extend(["## Incomplete Groups", ""])
        for record in missing:
            reason = "canceled" if record.canceled else (record.error or "failed")
            lines.append(f"- **{record.id}** ({', '.join(record.folders)}): {reason}")
        lines.append("")
    return "\n".join(lines)


def write_fallback_document(
    summary: ExecutionSummary,
    root_context: RootContext,
    output_path: Path,
) -> Path:
    """Write the fallback document. Raises ``OSError`` when it cannot be written."""

    content = assemble_fallback_document(summary, root_context)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_text(content, "utf-8")
    logger.info("Wrote fallback document to %s", output_path)
    return output_path


def _ordered(
    records: Iterable[WorkerRecord],
    analysis_order: tuple[str, ...],
) -> list[WorkerRecord]:
    rank = {name: index for index, name in enumerate(analysis_order)}
    return sorted(records, key=lambda record: rank.get(record.id, len(rank)))
