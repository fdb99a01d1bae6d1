"""
Result aggregation and rendering.

``summarize`` turns the runner's stages into a ``RunSummary``; ``render``
turns a summary into text. Rendering is a pure function of the summary:
the only timestamp in any output is ``summary.generated_at``, so rendering
the same summary twice gives byte-identical output.

Formats:
    - ``junit``: JUnit XML, one ``testcase`` per stage with ``failure`` /
      ``skipped`` children, for CI test-report widgets
    - ``json``: the ``RunSummary`` schema (counters + ordered stages)
    - ``table``: Rich table rendered to plain text for terminals and logs
    - ``markdown``: GitHub step-summary section
"""

from __future__ import annotations

import io
import json
from datetime import UTC, datetime
from typing import Iterable, Literal
from xml.etree import ElementTree

from rich.console import Console
from rich.table import Table

from fabric_deploy.report.models import RunSummary, StageRecord
from fabric_deploy.verify.registry import StageOutcome, TestStage

ReportFormat = Literal["junit", "json", "table", "markdown"]
FORMATS: tuple[str, ...] = ("junit", "json", "table", "markdown")

SUITE_NAME = "FabricOTELObservabilityTests"

_OUTCOME_ICONS = {
    StageOutcome.PASS: "✅",
    StageOutcome.FAIL: "❌",
    StageOutcome.SKIP: "⏭️",
    StageOutcome.CANCELLED: "🛑",
    StageOutcome.PENDING: "…",
}
_OUTCOME_STYLES = {
    StageOutcome.PASS: "green",
    StageOutcome.FAIL: "red",
    StageOutcome.SKIP: "yellow",
    StageOutcome.CANCELLED: "magenta",
    StageOutcome.PENDING: "dim",
}


def summarize(
    stages: Iterable[TestStage],
    *,
    run_id: str,
    gate_threshold: int = 0,
    duration_seconds: float = 0.0,
    environment: dict[str, str] | None = None,
    generated_at: str | None = None,
) -> RunSummary:
    """Count terminal outcomes and snapshot every stage in order.

    A stage still ``Pending`` here never ran; it is counted as skipped.
    """
    records = [StageRecord.from_stage(stage) for stage in stages]
    passed = sum(1 for r in records if r.outcome == StageOutcome.PASS)
    failed = sum(1 for r in records if r.outcome == StageOutcome.FAIL)
    cancelled = sum(1 for r in records if r.outcome == StageOutcome.CANCELLED)
    return RunSummary(
        run_id=run_id,
        generated_at=generated_at or datetime.now(UTC).isoformat(),
        gate_threshold=gate_threshold,
        total=len(records),
        passed=passed,
        failed=failed,
        skipped=len(records) - passed - failed,
        cancelled=cancelled,
        duration_seconds=round(duration_seconds, 3),
        environment=dict(environment or {}),
        stages=records,
    )


# =============================================================================
# Renderers
# =============================================================================


def render_json(summary: RunSummary) -> str:
    return json.dumps(summary.model_dump(mode="json"), indent=2, sort_keys=False) + "\n"


def render_junit(summary: RunSummary) -> str:
    suite = ElementTree.Element(
        "testsuite",
        {
            "name": SUITE_NAME,
            "tests": str(summary.total),
            "failures": str(summary.failed),
            "errors": "0",
            "skipped": str(summary.skipped),
            "time": f"{summary.duration_seconds:.3f}",
            "timestamp": summary.generated_at,
        },
    )
    properties = ElementTree.SubElement(suite, "properties")
    for key, value in [("run_id", summary.run_id), ("gate_threshold", str(summary.gate_threshold))] + sorted(
        summary.environment.items()
    ):
        ElementTree.SubElement(properties, "property", {"name": key, "value": value})

    for record in summary.stages:
        case = ElementTree.SubElement(
            suite,
            "testcase",
            {
                "classname": SUITE_NAME,
                "name": record.name,
                "time": f"{record.duration_seconds:.3f}",
            },
        )
        if record.outcome == StageOutcome.FAIL:
            failure = ElementTree.SubElement(
                case, "failure", {"message": record.message or "stage failed", "type": "StageFailed"}
            )
            failure.text = record.message or ""
        elif record.outcome in (StageOutcome.SKIP, StageOutcome.CANCELLED, StageOutcome.PENDING):
            reason = record.message or record.outcome.value.lower()
            ElementTree.SubElement(case, "skipped", {"message": reason})

    root = ElementTree.Element("testsuites", {"name": SUITE_NAME})
    root.append(suite)
    ElementTree.indent(root)
    return '<?xml version="1.0" encoding="utf-8"?>\n' + ElementTree.tostring(root, encoding="unicode") + "\n"


def _stage_table(summary: RunSummary) -> Table:
    table = Table(title=f"Verification run {summary.run_id}")
    table.add_column("#", justify="right", style="dim")
    table.add_column("Stage", style="bold")
    table.add_column("Outcome")
    table.add_column("Duration", justify="right")
    table.add_column("Tags", style="dim")
    table.add_column("Message")
    for index, record in enumerate(summary.stages, 1):
        style = _OUTCOME_STYLES[record.outcome]
        table.add_row(
            str(index),
            record.name + (" (gated)" if record.gated else ""),
            f"[{style}]{record.outcome.value}[/{style}]",
            f"{record.duration_seconds:.2f}s",
            ", ".join(record.tags),
            record.message or "",
        )
    table.caption = (
        f"total {summary.total} | passed {summary.passed} | failed {summary.failed} | "
        f"skipped {summary.skipped} (cancelled {summary.cancelled}) | gate {summary.gate_threshold}"
    )
    return table


def render_table(summary: RunSummary, *, width: int = 120) -> str:
    buffer = io.StringIO()
    console = Console(file=buffer, width=width, no_color=True, force_terminal=False, legacy_windows=False)
    console.print(_stage_table(summary))
    return buffer.getvalue()


def render_markdown(summary: RunSummary) -> str:
    status = "✅ passed" if summary.failed == 0 and not summary.was_cancelled else "❌ failed"
    if summary.was_cancelled:
        status = "🛑 cancelled"
    lines = [
        f"## Fabric OTEL observability tests: {status}",
        "",
        f"Run `{summary.run_id}` generated {summary.generated_at}",
        "",
        "| Total | Passed | Failed | Skipped |",
        "|------:|-------:|-------:|--------:|",
        f"| {summary.total} | {summary.passed} | {summary.failed} | {summary.skipped} |",
        "",
    ]
    if summary.environment:
        for key, value in sorted(summary.environment.items()):
            lines.append(f"- **{key}**: `{value}`")
        lines.append("")
    lines += ["| Stage | Outcome | Duration | Message |", "|---|---|---:|---|"]
    for record in summary.stages:
        message = (record.message or "").replace("|", "\\|").replace("\n", " ")
        lines.append(
            f"| {record.name} | {_OUTCOME_ICONS[record.outcome]} {record.outcome.value} | "
            f"{record.duration_seconds:.2f}s | {message} |"
        )
    return "\n".join(lines) + "\n"


_RENDERERS = {
    "junit": render_junit,
    "json": render_json,
    "table": render_table,
    "markdown": render_markdown,
}


def render(summary: RunSummary, format: str) -> str:
    """Render ``summary`` in one of ``FORMATS``."""
    try:
        renderer = _RENDERERS[format]
    except KeyError:
        raise ValueError(f"Unknown report format {format!r}; expected one of {', '.join(FORMATS)}") from None
    return renderer(summary)


__all__ = [
    "FORMATS",
    "ReportFormat",
    "SUITE_NAME",
    "render",
    "render_json",
    "render_junit",
    "render_markdown",
    "render_table",
    "summarize",
]
