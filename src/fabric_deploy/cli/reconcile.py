"""
CLI: ``fabric-deploy reconcile``: converge workspace, database and tables.

Usage::

    fabric-deploy reconcile                              # default OTEL topology
    fabric-deploy reconcile --topology topology.yaml     # declared topology
    fabric-deploy reconcile --sync-mode git --json       # tables delivered by Git

Exit codes: 0 converged, 1 unresolved nodes, 2 authentication failure,
130 cancelled. ``convergence.json`` is written in every case.
"""

from __future__ import annotations

from pathlib import Path

import typer
from rich.tree import Tree

from fabric_deploy.cli import utils
from fabric_deploy.core.cancellation import CancellationToken, install_signal_handlers
from fabric_deploy.core.errors import AuthResolutionError, ConfigError, RunCancelledError
from fabric_deploy.core.logging import get_logger
from fabric_deploy.core.retry import ExponentialBackoff
from fabric_deploy.reconcile.reconciler import Reconciler
from fabric_deploy.reconcile.report import ConvergenceReport, NodeReport
from fabric_deploy.report.writer import ReportWriter
from fabric_deploy.topology import build_topology, load_topology
from fabric_deploy.topology.model import ResourceState

logger = get_logger(__name__)

_STATE_STYLES = {
    ResourceState.CREATED: "green",
    ResourceState.EXISTS: "cyan",
    ResourceState.FAILED: "red",
}


def reconcile(
    topology: Path | None = typer.Option(None, "--topology", "-t", help="Topology YAML file."),
    workspace: str | None = typer.Option(None, "--workspace", "-w", help="Workspace name."),
    database: str | None = typer.Option(None, "--database", "-d", help="KQL database name."),
    capacity_id: str | None = typer.Option(None, "--capacity-id", help="Capacity for a created workspace."),
    manage_workspace: bool | None = typer.Option(
        None, "--manage-workspace/--no-manage-workspace", help="Create the workspace when missing."
    ),
    sync_mode: str | None = typer.Option(None, "--sync-mode", help="direct | git"),
    max_workers: int | None = typer.Option(None, "--max-workers", help="Sibling parallelism bound."),
    output_dir: str | None = typer.Option(None, "--output", "-o", help="Output directory."),
    json_out: bool = typer.Option(False, "--json", help="Print the convergence report as JSON."),
) -> None:
    """Converge the declared resources (check first, create only what is missing)."""
    settings = utils.settings_from_options(
        workspace_name=workspace,
        database_name=database,
        capacity_id=capacity_id,
        manage_workspace=manage_workspace,
        sync_mode=sync_mode,
        max_workers=max_workers,
        output_dir=output_dir,
    )

    try:
        root = load_topology(topology, settings) if topology else build_topology(settings)
    except ConfigError as e:
        utils.print_error(e)
        raise typer.Exit(code=utils.EXIT_FAILED) from e

    cancel = CancellationToken(settings.run_deadline_seconds)
    restore_signals = install_signal_handlers(cancel)
    run_id = utils.new_run_id()
    runtime = utils.build_runtime(settings, cancel)
    try:
        reconciler = Reconciler(
            runtime.control_plane,
            retry_strategy=ExponentialBackoff(
                max_attempts=settings.max_attempts,
                base_delay=settings.backoff_base_seconds,
                max_delay=settings.backoff_max_seconds,
            ),
            max_workers=settings.max_workers,
            cancel=cancel,
            run_id=run_id,
        )
        try:
            session = runtime.resolver.resolve()
        except AuthResolutionError as e:
            utils.print_auth_failure(e)
            report = reconciler.abandon(root, e)
        except RunCancelledError as e:
            utils.print_error(e)
            report = reconciler.abandon(root, e)
        else:
            if not json_out:
                utils.console.print(
                    f"[bold]fabric-deploy reconcile[/] run_id: {run_id} "
                    f"(as {session.identity} via {session.strategy.value})"
                )
            report = reconciler.converge(root)
    finally:
        runtime.close()
        restore_signals()

    ReportWriter(settings.output_dir, run_id).write_convergence(report)

    if json_out:
        typer.echo(report.model_dump_json(indent=2))
    else:
        _print_report(report)

    raise typer.Exit(code=report.exit_code)


def _add_branch(tree: Tree, node: NodeReport) -> None:
    style = _STATE_STYLES.get(node.state, "yellow")
    label = f"{node.kind} [bold]{node.name}[/bold] [{style}]{node.state.value}[/{style}]"
    if node.message:
        label += f" [dim]({node.message})[/dim]"
    branch = tree.add(label)
    for child in node.children:
        _add_branch(branch, child)


def _print_report(report: ConvergenceReport) -> None:
    if report.tree is not None:
        tree = Tree("[bold]Topology[/bold]")
        _add_branch(tree, report.tree)
        utils.console.print(tree)
    utils.console.print(report.summary_line())
    for error in report.errors:
        utils.err_console.print(
            f"  [red]✗[/red] {error.path}: [yellow]{error.error_class.value}[/yellow] {error.message}"
        )
    if report.aborted is not None:
        utils.err_console.print(f"[bold red]Run aborted[/bold red]: {report.abort_reason}")
    elif report.converged:
        utils.console.print("[bold green]✓ converged[/bold green]")
