"""
CLI: ``fabric-deploy auth``: inspect authentication.

Usage::

    fabric-deploy auth whoami          # resolve and show the winning identity
    fabric-deploy auth whoami --json
"""

from __future__ import annotations

import json

import typer

from fabric_deploy.cli import utils
from fabric_deploy.core.cancellation import CancellationToken, install_signal_handlers
from fabric_deploy.core.errors import AuthResolutionError, RunCancelledError

app = typer.Typer(no_args_is_help=True)


@app.command()
def whoami(
    json_out: bool = typer.Option(False, "--json", help="Output as JSON."),
) -> None:
    """Resolve a session and show identity, strategy and expiry."""
    settings = utils.settings_from_options()
    cancel = CancellationToken(settings.interactive_timeout_seconds)
    restore_signals = install_signal_handlers(cancel)
    runtime = utils.build_runtime(settings, cancel)
    try:
        session = runtime.resolver.resolve()
    except AuthResolutionError as e:
        utils.print_auth_failure(e)
        raise typer.Exit(code=utils.EXIT_AUTH) from e
    except RunCancelledError as e:
        utils.print_error(e)
        raise typer.Exit(code=utils.EXIT_CANCELLED) from e
    finally:
        runtime.close()
        restore_signals()

    info = session.to_dict()
    info["attempts"] = [
        {"strategy": f.strategy, "class": f.failure_class.value, "reason": f.reason}
        for f in runtime.resolver.failures
    ]
    if json_out:
        typer.echo(json.dumps(info, indent=2))
        return

    utils.console.print(f"[bold]Identity:[/bold] {session.identity}")
    utils.console.print(f"[bold]Strategy:[/bold] {session.strategy.value}")
    utils.console.print(f"[bold]Expires:[/bold]  {info['expires_at'] or 'unknown'}")
    for attempt in info["attempts"]:
        utils.console.print(f"  [dim]skipped {attempt['strategy']}: {attempt['class']} ({attempt['reason']})[/dim]")
