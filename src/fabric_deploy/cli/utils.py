"""
CLI utility helpers: consoles, runtime wiring and error output.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Callable

import typer
from rich.console import Console

from fabric_deploy.auth.resolver import AuthenticationResolver
from fabric_deploy.auth.session import SessionStore
from fabric_deploy.auth.strategies import build_strategies
from fabric_deploy.control_plane.protocol import ControlPlane, EventPublisher, QueryClient
from fabric_deploy.core.cancellation import CancellationToken
from fabric_deploy.core.errors import AuthResolutionError, DeployError
from fabric_deploy.core.settings import FabricDeploySettings

console = Console()
err_console = Console(stderr=True)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_AUTH = 2
EXIT_CANCELLED = 130


def new_run_id() -> str:
    """Sortable run id: ``20250101T120000-1a2b3c``."""
    return f"{datetime.now(UTC):%Y%m%dT%H%M%S}-{uuid.uuid4().hex[:6]}"


# ── Runtime wiring ───────────────────────────────────────────────────────


@dataclass
class Runtime:
    """Collaborators for one CLI invocation."""

    settings: FabricDeploySettings
    cancel: CancellationToken
    resolver: AuthenticationResolver
    control_plane: ControlPlane
    query_client: Callable[[str], QueryClient]
    publisher: EventPublisher | None = None
    closers: list[Callable[[], None]] = field(default_factory=list)

    def probe(self) -> bool:
        session = self.resolver.current() or self.resolver.resolve()
        return self.control_plane.probe(session)

    def close(self) -> None:
        for close in self.closers:
            close()


def _notify_device_code(message: str) -> None:
    err_console.print(f"[bold yellow]Interactive sign-in required:[/] {message}")


def build_runtime(settings: FabricDeploySettings, cancel: CancellationToken) -> Runtime:
    """Wire the Fabric adapters, the resolver and the session store."""
    import httpx

    from fabric_deploy.control_plane.fabric import FabricControlPlane
    from fabric_deploy.dataplane.eventhub import EventHubPublisher

    client = httpx.Client(timeout=settings.request_timeout_seconds)
    store = SessionStore()
    resolver = AuthenticationResolver(
        build_strategies(settings, store, cancel=cancel, notify=_notify_device_code),
        scope=settings.api_scope,
        store=store,
        cancel=cancel,
    )
    control_plane = FabricControlPlane(settings, resolver, client=client, cancel=cancel)
    resolver.set_probe(control_plane.probe)

    publisher = None
    if settings.has_eventhub:
        publisher = EventHubPublisher(
            settings.eventhub_namespace or "",
            settings.eventhub_name or "",
            token=lambda: resolver.token_for(settings.eventhub_scope),
            timeout=settings.request_timeout_seconds,
            client=client,
        )

    return Runtime(
        settings=settings,
        cancel=cancel,
        resolver=resolver,
        control_plane=control_plane,
        query_client=control_plane.data_plane,
        publisher=publisher,
        closers=[client.close],
    )


# ── Output helpers ───────────────────────────────────────────────────────


def print_auth_failure(error: AuthResolutionError) -> None:
    err_console.print("[bold red]Authentication failed[/bold red]: no strategy produced a valid session")
    for failure in error.failures:
        err_console.print(
            f"  [dim]•[/dim] {failure.strategy}: [yellow]{failure.failure_class.value}[/yellow] {failure.reason}"
        )


def print_error(error: DeployError) -> None:
    err_console.print(f"[bold red]Error[/bold red] ({error.category.value}): {error.message}")


def settings_from_options(**options: Any) -> FabricDeploySettings:
    """Settings with CLI options (non-None) layered over env/.env."""
    from fabric_deploy.core.settings import get_settings

    try:
        return get_settings(**options)
    except ValueError as e:
        err_console.print(f"[bold red]Invalid configuration[/bold red]: {e}")
        raise typer.Exit(code=EXIT_FAILED) from e


__all__ = [
    "EXIT_AUTH",
    "EXIT_CANCELLED",
    "EXIT_FAILED",
    "EXIT_OK",
    "Runtime",
    "build_runtime",
    "console",
    "err_console",
    "new_run_id",
    "print_auth_failure",
    "print_error",
    "settings_from_options",
]
