"""Report artifacts on disk.

Every invocation writes into its own ``{output_dir}/{run_id}/`` directory so
runs never collide, even in parallel CI jobs, and the directory can be
uploaded as a build artifact as-is.

Output Structure::

    {output_dir}/{run_id}/
    ├── summary.json        # RunSummary (verify)
    ├── junit.xml           # JUnit XML (verify)
    ├── report.md           # GitHub step summary (verify)
    └── convergence.json    # ConvergenceReport (reconcile)

When ``GITHUB_STEP_SUMMARY`` is set (GitHub Actions), the markdown report is
appended to that file as well.
"""

from __future__ import annotations

import os
from pathlib import Path

from fabric_deploy.core.logging import get_logger
from fabric_deploy.reconcile.report import ConvergenceReport
from fabric_deploy.report.aggregator import render_junit, render_markdown
from fabric_deploy.report.models import RunSummary

logger = get_logger(__name__)


class ReportWriter:
    """Writes report artifacts for one run.

    Parameters
    ----------
    output_dir
        Base directory for output.
    run_id
        Unique run identifier.
    """

    def __init__(self, output_dir: Path | str, run_id: str) -> None:
        self.run_dir = Path(output_dir) / run_id
        self.run_dir.mkdir(parents=True, exist_ok=True)
        self.run_id = run_id

    def write_summary(self, summary: RunSummary) -> Path:
        """Write machine-readable summary JSON."""
        path = self.run_dir / "summary.json"
        path.write_text(summary.model_dump_json(indent=2), encoding="utf-8")
        logger.info("summary.written", path=str(path))
        return path

    def write_junit(self, summary: RunSummary) -> Path:
        path = self.run_dir / "junit.xml"
        path.write_text(render_junit(summary), encoding="utf-8")
        logger.info("junit.written", path=str(path))
        return path

    def write_markdown(self, summary: RunSummary) -> Path:
        path = self.run_dir / "report.md"
        markdown = render_markdown(summary)
        path.write_text(markdown, encoding="utf-8")
        self._append_step_summary(markdown)
        return path

    def write_convergence(self, report: ConvergenceReport) -> Path:
        path = self.run_dir / "convergence.json"
        path.write_text(report.model_dump_json(indent=2), encoding="utf-8")
        logger.info("convergence.written", path=str(path))
        return path

    def write_all(self, summary: RunSummary) -> list[Path]:
        return [self.write_summary(summary), self.write_junit(summary), self.write_markdown(summary)]

    @staticmethod
    def _append_step_summary(markdown: str) -> None:
        target = os.environ.get("GITHUB_STEP_SUMMARY")
        if not target:
            return
        with open(target, "a", encoding="utf-8") as fh:
            fh.write(markdown)
            fh.write("\n")
        logger.info("step_summary.appended", path=target)


__all__ = ["ReportWriter"]
