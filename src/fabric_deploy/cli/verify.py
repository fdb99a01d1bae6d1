"""
CLI: ``fabric-deploy verify`` and ``fabric-deploy stages``.

Usage::

    fabric-deploy verify                               # all stages, gate 6
    fabric-deploy verify --skip-slow --format junit    # CI smoke run
    fabric-deploy verify --tags kql --tags streaming   # selected stages only
    fabric-deploy stages                               # list the registry

Exit codes: 0 when no stage failed, 1 otherwise, 130 when the run is
cancelled. An authentication failure is not a separate exit code: it fails
the ``prerequisites`` stage, the report is still written and the run exits 1.
"""

from __future__ import annotations

import uuid

import typer
from rich.table import Table

from fabric_deploy.cli import utils
from fabric_deploy.core.cancellation import CancellationToken, install_signal_handlers
from fabric_deploy.core.errors import AuthResolutionError, DeployError, RunCancelledError
from fabric_deploy.core.logging import get_logger
from fabric_deploy.report.aggregator import FORMATS, render
from fabric_deploy.report.writer import ReportWriter
from fabric_deploy.topology.loader import OTEL_TABLE_SCHEMAS
from fabric_deploy.verify.registry import StageContext, StageFailed
from fabric_deploy.verify.runner import GatedTestRunner
from fabric_deploy.verify.stages import build_registry

logger = get_logger(__name__)


class Unauthenticated:
    """Stands in for the adapters when no session could be resolved.

    Every stage still runs and fails with the resolution error instead of
    walking the strategy chain again.
    """

    def __init__(self, error: DeployError) -> None:
        self.error = error

    def check_exists(self, kind, name, parent_id):
        raise self.error

    def create(self, kind, name, parent_id, definition):
        raise self.error

    def probe(self, session=None) -> bool:
        raise StageFailed(self.error.message)

    def query_client(self, database_id: str):
        raise self.error


def verify(
    gate_threshold: int | None = typer.Option(
        None, "--gate-threshold", "-g", min=0, help="Passes required before gated stages run."
    ),
    tags: list[str] = typer.Option([], "--tags", help="Run only stages with this tag or name. Repeatable."),
    skip_slow: bool = typer.Option(False, "--skip-slow", help="Skip gated (slow) stages."),
    output_format: str = typer.Option("table", "--format", "-f", help="junit | json | table | markdown"),
    output_dir: str | None = typer.Option(None, "--output", "-o", help="Output directory."),
    workspace: str | None = typer.Option(None, "--workspace", "-w", help="Workspace name."),
    database: str | None = typer.Option(None, "--database", "-d", help="KQL database name."),
) -> None:
    """Run the gated verification stages and write the reports."""
    if output_format not in FORMATS:
        utils.err_console.print(f"[bold red]Unknown format[/bold red] {output_format!r}; use {', '.join(FORMATS)}")
        raise typer.Exit(code=utils.EXIT_FAILED)

    settings = utils.settings_from_options(
        gate_threshold=gate_threshold,
        output_dir=output_dir,
        workspace_name=workspace,
        database_name=database,
    )
    registry = build_registry()
    unknown = set(tags) - set(registry.names()) - registry.all_tags()
    if unknown:
        utils.err_console.print(f"[yellow]Warning[/yellow]: no stage matches {', '.join(sorted(unknown))}")

    cancel = CancellationToken(settings.run_deadline_seconds)
    restore_signals = install_signal_handlers(cancel)
    run_id = utils.new_run_id()
    runtime = utils.build_runtime(settings, cancel)
    try:
        unresolved: Unauthenticated | None = None
        try:
            runtime.resolver.resolve()
        except AuthResolutionError as e:
            utils.print_auth_failure(e)
            unresolved = Unauthenticated(e)
        except RunCancelledError as e:
            utils.print_error(e)
            cancel.cancel(e.message)
            unresolved = Unauthenticated(e)

        context = StageContext(
            settings=settings,
            control_plane=unresolved or runtime.control_plane,
            cancel=cancel,
            probe=unresolved.probe if unresolved else runtime.probe,
            query_client=unresolved.query_client if unresolved else runtime.query_client,
            publisher=None if unresolved else runtime.publisher,
            schemas={t: OTEL_TABLE_SCHEMAS.get(t, []) for t in settings.expected_tables},
            marker=uuid.uuid4().hex,
        )
        runner = GatedTestRunner(
            context,
            gate_threshold=settings.gate_threshold,
            tags=tags or None,
            skip_slow=skip_slow,
            cancel=cancel,
            run_id=run_id,
            environment={
                "workspace": settings.workspace_name,
                "database": settings.database_name,
                "eventhub": settings.eventhub_name or "",
            },
        )
        summary = runner.run(registry)
    finally:
        runtime.close()
        restore_signals()

    ReportWriter(settings.output_dir, run_id).write_all(summary)
    typer.echo(render(summary, output_format), nl=False)
    raise typer.Exit(code=summary.exit_code)


def stages() -> None:
    """List the registered verification stages in execution order."""
    table = Table(title="Verification stages")
    table.add_column("#", justify="right", style="dim")
    table.add_column("Stage", style="bold")
    table.add_column("Gated")
    table.add_column("Tags")
    table.add_column("Description")
    for index, stage in enumerate(build_registry(), 1):
        table.add_row(
            str(index),
            stage.name,
            "yes" if stage.gated else "",
            ", ".join(sorted(stage.tags)),
            stage.description,
        )
    utils.console.print(table)
