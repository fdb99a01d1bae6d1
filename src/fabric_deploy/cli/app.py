"""
Root Typer application for the fabric-deploy CLI.
"""

from __future__ import annotations

import typer
from typer import Typer

from fabric_deploy.core.logging import configure_logging

app = Typer(
    name="fabric-deploy",
    help="fabric-deploy: provision and verify a Fabric OpenTelemetry observability stack.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


# ── Version callback ─────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        from fabric_deploy import __version__

        typer.echo(f"fabric-deploy {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(  # noqa: UP007
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
    log_level: str | None = typer.Option(None, "--log-level", help="DEBUG, INFO, WARNING, ERROR."),
    log_format: str | None = typer.Option(None, "--log-format", help="json | console"),
) -> None:
    """fabric-deploy CLI: reconcile resources, run verification stages, inspect auth."""
    from fabric_deploy.cli import utils

    settings = utils.settings_from_options()
    configure_logging(
        level=log_level or settings.log_level,
        format=log_format or settings.log_format,  # type: ignore[arg-type]
        force=True,
    )


# ── Sub-command registration ─────────────────────────────────────────────

from fabric_deploy.cli.auth import app as auth_app  # noqa: E402
from fabric_deploy.cli.reconcile import reconcile  # noqa: E402
from fabric_deploy.cli.topology import topology  # noqa: E402
from fabric_deploy.cli.verify import stages, verify  # noqa: E402

app.command("reconcile")(reconcile)
app.command("verify")(verify)
app.command("stages")(stages)
app.command("topology")(topology)
app.add_typer(auth_app, name="auth", help="Authentication diagnostics.")
