"""Convergence report models.

Pydantic v2 models so a report can be persisted with
``model_dump_json(indent=2)`` (``convergence.json``) and restored with
``model_validate_json``. A report is built once, from the annotated tree,
after convergence has stopped; it never changes afterwards.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, Field

from fabric_deploy.core.errors import ErrorClass
from fabric_deploy.topology.model import ResourceNode, ResourceState


class NodeReport(BaseModel):
    """Annotated snapshot of one node (recursive)."""

    kind: str
    name: str
    state: ResourceState
    resource_id: str | None = None
    error_class: ErrorClass | None = None
    message: str | None = None
    children: list[NodeReport] = Field(default_factory=list)

    @classmethod
    def from_node(cls, node: ResourceNode) -> NodeReport:
        return cls(
            kind=node.kind.value,
            name=node.name,
            state=node.state,
            resource_id=node.resource_id,
            error_class=node.error_class,
            message=node.message,
            children=[cls.from_node(child) for child in node.children],
        )


class NodeError(BaseModel):
    """``(node, error_class, message)`` for a node that did not converge."""

    path: str
    kind: str
    name: str
    error_class: ErrorClass
    message: str


class ConvergenceReport(BaseModel):
    run_id: str
    started_at: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())
    completed_at: str | None = None
    duration_seconds: float = 0.0
    tree: NodeReport | None = None
    errors: list[NodeError] = Field(default_factory=list)
    total: int = 0
    created: int = 0
    existing: int = 0
    failed: int = 0
    aborted: ErrorClass | None = None
    abort_reason: str | None = None

    @property
    def converged(self) -> bool:
        return self.aborted is None and not self.errors

    @property
    def exit_code(self) -> int:
        """0 converged, 1 unresolved nodes, 2 auth failure, 130 cancelled."""
        if self.aborted == ErrorClass.AUTH:
            return 2
        if self.aborted == ErrorClass.CANCELLED:
            return 130
        return 0 if self.converged else 1

    def record_tree(self, root: ResourceNode) -> None:
        self.tree = NodeReport.from_node(root)
        self.errors = []
        self.total = self.created = self.existing = self.failed = 0
        for node in root.walk():
            self.total += 1
            if node.state == ResourceState.CREATED:
                self.created += 1
            elif node.state == ResourceState.EXISTS:
                self.existing += 1
            else:
                self.failed += 1
                self.errors.append(
                    NodeError(
                        path=node.path,
                        kind=node.kind.value,
                        name=node.name,
                        error_class=node.error_class or ErrorClass.FATAL,
                        message=node.message or f"ended in state {node.state.value}",
                    )
                )

    def mark_complete(self) -> None:
        self.completed_at = datetime.now(UTC).isoformat()
        start = datetime.fromisoformat(self.started_at)
        end = datetime.fromisoformat(self.completed_at)
        self.duration_seconds = (end - start).total_seconds()

    def summary_line(self) -> str:
        return (
            f"{self.total} nodes: {self.created} created, {self.existing} existing, "
            f"{self.failed} failed"
        )

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


__all__ = ["ConvergenceReport", "NodeError", "NodeReport"]
