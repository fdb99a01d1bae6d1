"""
CLI: ``fabric-deploy topology``: show the declared resources without
touching the control plane.
"""

from __future__ import annotations

import json
from pathlib import Path

import typer
from rich.tree import Tree

from fabric_deploy.cli import utils
from fabric_deploy.core.errors import ConfigError
from fabric_deploy.topology import build_topology, load_topology
from fabric_deploy.topology.model import ResourceKind, ResourceNode


def topology(
    path: Path | None = typer.Option(None, "--topology", "-t", help="Topology YAML file."),
    json_out: bool = typer.Option(False, "--json", help="Output as JSON."),
) -> None:
    """Print the resource tree that ``reconcile`` would converge."""
    settings = utils.settings_from_options()
    try:
        root = load_topology(path, settings) if path else build_topology(settings)
    except ConfigError as e:
        utils.print_error(e)
        raise typer.Exit(code=utils.EXIT_FAILED) from e

    if json_out:
        typer.echo(json.dumps(root.to_dict(), indent=2))
        return

    tree = Tree(_label(root))
    _add_children(tree, root)
    utils.console.print(tree)


def _label(node: ResourceNode) -> str:
    label = f"{node.kind.value} [bold]{node.name}[/bold]"
    if not node.create:
        label += " [yellow](existence only)[/yellow]"
    if node.kind == ResourceKind.TABLE:
        label += f" [dim]{len(node.columns)} columns[/dim]"
    return label


def _add_children(tree: Tree, node: ResourceNode) -> None:
    for child in node.children:
        branch = tree.add(_label(child))
        _add_children(branch, child)
