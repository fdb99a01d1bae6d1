"""Interfaces the reconciler and the test stages depend on.

Concrete adapters live next to this module (``fabric``) and in
``fabric_deploy.dataplane``; tests substitute in-memory fakes. Every method
either returns a typed result or raises one of the classified errors from
``fabric_deploy.core.errors``: ``AuthError``, ``AlreadyExistsError``,
``TransientError`` or ``FatalError``. Callers never inspect strings.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from fabric_deploy.auth.session import Session
from fabric_deploy.topology.model import ResourceKind


@dataclass(frozen=True)
class Lookup:
    """Result of an existence check."""

    found: bool
    id: str | None = None

    @classmethod
    def missing(cls) -> Lookup:
        return cls(False, None)


@runtime_checkable
class ControlPlane(Protocol):
    """Resource management API (workspaces, databases, tables)."""

    def check_exists(self, kind: ResourceKind, name: str, parent_id: str | None) -> Lookup:
        """Read-only lookup of ``name`` below ``parent_id``."""
        ...

    def create(
        self,
        kind: ResourceKind,
        name: str,
        parent_id: str | None,
        definition: dict[str, Any],
    ) -> str:
        """Create the resource and return its id."""
        ...

    def probe(self, session: Session) -> bool:
        """Cheap authenticated call; False when the session is refused."""
        ...


@runtime_checkable
class QueryClient(Protocol):
    """Read access to a database's data plane."""

    def query(self, expression: str) -> list[dict[str, Any]]:
        ...

    def command(self, expression: str) -> list[dict[str, Any]]:
        """Management command (``.show ...``)."""
        ...


@runtime_checkable
class EventPublisher(Protocol):
    """Ingestion endpoint the streaming stages publish probe records to."""

    def send(self, events: list[dict[str, Any]]) -> None:
        ...


__all__ = ["ControlPlane", "EventPublisher", "Lookup", "QueryClient"]
