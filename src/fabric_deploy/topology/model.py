"""
Resource descriptors: the declarative tree the reconciler converges.

A topology is a tree of ``ResourceNode`` objects, workspace at the root,
databases below it and tables below those. Nodes are plain dataclasses; the
reconciler is the only writer of ``state``, ``resource_id``, ``error_class``
and ``message``, and every state change goes through ``transition()`` so the
lifecycle rules hold no matter which worker thread moves a node.

Lifecycle:
    ::

        Unknown ──► Checking ──► Exists
           │           │
           │           └──► Creating ──► Created
           │                   │    └──► Exists    (lost a create race)
           ▼                   ▼
         Failed ◄──────────── Failed               (terminal for the run)

    ``Creating`` additionally requires the parent to be ``Exists`` or
    ``Created``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterator

from fabric_deploy.core.errors import DeployError, ErrorClass, TopologyError


class ResourceKind(str, Enum):
    WORKSPACE = "Workspace"
    DATABASE = "Database"
    TABLE = "Table"


# Which kind may sit directly below which
CHILD_KIND: dict[ResourceKind | None, ResourceKind] = {
    None: ResourceKind.WORKSPACE,
    ResourceKind.WORKSPACE: ResourceKind.DATABASE,
    ResourceKind.DATABASE: ResourceKind.TABLE,
}


class ResourceState(str, Enum):
    UNKNOWN = "Unknown"
    CHECKING = "Checking"
    EXISTS = "Exists"
    CREATING = "Creating"
    CREATED = "Created"
    FAILED = "Failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ResourceState.EXISTS, ResourceState.CREATED, ResourceState.FAILED)

    @property
    def is_available(self) -> bool:
        """Children may be converged below a node in this state."""
        return self in (ResourceState.EXISTS, ResourceState.CREATED)


_TRANSITIONS: dict[ResourceState, frozenset[ResourceState]] = {
    ResourceState.UNKNOWN: frozenset({ResourceState.CHECKING, ResourceState.FAILED}),
    ResourceState.CHECKING: frozenset(
        {ResourceState.EXISTS, ResourceState.CREATING, ResourceState.FAILED}
    ),
    ResourceState.CREATING: frozenset(
        {ResourceState.CREATED, ResourceState.EXISTS, ResourceState.FAILED}
    ),
    ResourceState.EXISTS: frozenset(),
    ResourceState.CREATED: frozenset(),
    ResourceState.FAILED: frozenset(),
}


class InvalidTransitionError(DeployError):
    """A node was moved along an edge the lifecycle does not allow."""


@dataclass(frozen=True)
class Column:
    name: str
    type: str

    def to_kql(self) -> str:
        return f"{self.name}:{self.type}"


@dataclass(eq=False)
class ResourceNode:
    """One declared resource and its convergence status."""

    kind: ResourceKind
    name: str
    parent: ResourceNode | None = field(default=None, repr=False)
    children: list[ResourceNode] = field(default_factory=list, repr=False)
    definition: dict[str, Any] = field(default_factory=dict, repr=False)
    create: bool = True
    description: str | None = None

    # Filled in by the reconciler
    state: ResourceState = ResourceState.UNKNOWN
    resource_id: str | None = None
    error_class: ErrorClass | None = None
    message: str | None = None

    @property
    def columns(self) -> list[Column]:
        return list(self.definition.get("columns", []))

    @property
    def path(self) -> str:
        parts = [f"{n.kind.value}:{n.name}" for n in self.lineage()]
        return "/".join(parts)

    def lineage(self) -> list[ResourceNode]:
        """Root-first chain of ancestors ending with this node."""
        chain: list[ResourceNode] = []
        node: ResourceNode | None = self
        while node is not None:
            chain.append(node)
            node = node.parent
        return list(reversed(chain))

    def add_child(self, child: ResourceNode) -> ResourceNode:
        expected = CHILD_KIND.get(self.kind)
        if child.kind != expected:
            raise TopologyError(
                f"{child.kind.value} '{child.name}' cannot be placed under {self.kind.value} '{self.name}'"
            )
        if any(c.name == child.name for c in self.children):
            raise TopologyError(f"Duplicate {child.kind.value} '{child.name}' under '{self.name}'")
        child.parent = self
        self.children.append(child)
        return child

    def walk(self) -> Iterator[ResourceNode]:
        """Pre-order traversal."""
        yield self
        for child in self.children:
            yield from child.walk()

    def descendants(self) -> Iterator[ResourceNode]:
        for child in self.children:
            yield from child.walk()

    def transition(self, new_state: ResourceState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise InvalidTransitionError(
                f"{self.path}: {self.state.value} -> {new_state.value} is not allowed"
            )
        if new_state == ResourceState.CREATING and not (
            self.parent is None or self.parent.state.is_available
        ):
            raise InvalidTransitionError(
                f"{self.path}: cannot create while parent is {self.parent.state.value}"
            )
        self.state = new_state

    def fail(self, error_class: ErrorClass, message: str) -> None:
        self.transition(ResourceState.FAILED)
        self.error_class = error_class
        self.message = message

    def reset(self) -> None:
        """Return the whole subtree to ``Unknown`` for a fresh run."""
        for node in self.walk():
            node.state = ResourceState.UNKNOWN
            node.resource_id = None
            node.error_class = None
            node.message = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "kind": self.kind.value,
            "name": self.name,
            "state": self.state.value,
        }
        if self.resource_id:
            result["resource_id"] = self.resource_id
        if self.error_class:
            result["error_class"] = self.error_class.value
        if self.message:
            result["message"] = self.message
        if not self.create:
            result["create"] = False
        if self.kind == ResourceKind.TABLE:
            result["columns"] = [{"name": c.name, "type": c.type} for c in self.columns]
        if self.children:
            result["children"] = [child.to_dict() for child in self.children]
        return result


__all__ = [
    "CHILD_KIND",
    "Column",
    "InvalidTransitionError",
    "ResourceKind",
    "ResourceNode",
    "ResourceState",
]
