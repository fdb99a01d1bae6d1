"""
Test stage registry.

A stage is a named verification step with tags and a ``gated`` flag. The
registry keeps them in declaration order; that order is the execution order
and the order of every report.

Stage functions receive a ``StageContext`` and signal their outcome the
plain Python way:

- return normally (optionally a short message) → ``Pass``
- ``raise StageFailed("...")`` or a failed ``assert`` → ``Fail``
- ``raise StageSkipped("...")`` → ``Skip`` (e.g. no Event Hub configured)
- any ``DeployError`` from an adapter → ``Fail`` with its message
- ``RunCancelledError`` → ``Cancelled``

Example:
    >>> registry = StageRegistry()
    >>> @registry.stage("workspace", tags=("control-plane",))
    ... def check_workspace(ctx: StageContext) -> str:
    ...     ...
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Callable, Iterable, Iterator

from fabric_deploy.control_plane.protocol import ControlPlane, EventPublisher, QueryClient
from fabric_deploy.core.cancellation import CancellationToken
from fabric_deploy.core.errors import InvalidConfigError
from fabric_deploy.core.settings import FabricDeploySettings
from fabric_deploy.topology.model import Column


class StageOutcome(str, Enum):
    PENDING = "Pending"
    PASS = "Pass"
    FAIL = "Fail"
    SKIP = "Skip"
    CANCELLED = "Cancelled"


class StageSkipped(Exception):
    """Raised by a stage that cannot apply in this environment."""


class StageFailed(Exception):
    """Raised by a stage whose verification did not hold."""


@dataclass
class StageContext:
    """Everything a stage may touch. ``state`` carries ids between stages."""

    settings: FabricDeploySettings
    control_plane: ControlPlane
    cancel: CancellationToken
    probe: Callable[[], bool]
    query_client: Callable[[str], QueryClient]
    publisher: EventPublisher | None = None
    schemas: dict[str, list[Column]] = field(default_factory=dict)
    marker: str = ""
    state: dict[str, Any] = field(default_factory=dict)


StageFunc = Callable[[StageContext], "str | None"]


@dataclass
class TestStage:
    """One verification step and, after the run, its recorded result."""

    __test__ = False  # not a pytest class

    name: str
    func: StageFunc = field(repr=False)
    tags: frozenset[str] = frozenset()
    gated: bool = False
    description: str = ""

    outcome: StageOutcome = StageOutcome.PENDING
    duration_seconds: float = 0.0
    message: str | None = None
    started_at: str | None = None

    def record(
        self,
        outcome: StageOutcome,
        *,
        duration_seconds: float = 0.0,
        message: str | None = None,
        started_at: str | None = None,
    ) -> None:
        """Set the terminal outcome. Allowed exactly once."""
        if self.outcome != StageOutcome.PENDING:
            raise RuntimeError(f"Stage '{self.name}' already recorded as {self.outcome.value}")
        if outcome == StageOutcome.PENDING:
            raise ValueError("Cannot record a Pending outcome")
        self.outcome = outcome
        self.duration_seconds = max(0.0, duration_seconds)
        self.message = message
        self.started_at = started_at or datetime.now(UTC).isoformat()

    def matches(self, selectors: Iterable[str]) -> bool:
        """True when the stage's name or any of its tags is selected."""
        selected = set(selectors)
        return self.name in selected or bool(self.tags & selected)


class StageRegistry:
    """Ordered, name-unique collection of stages."""

    def __init__(self) -> None:
        self._stages: list[TestStage] = []

    def add(self, stage: TestStage) -> TestStage:
        if any(s.name == stage.name for s in self._stages):
            raise InvalidConfigError("stage", stage.name, f"Stage '{stage.name}' is already registered")
        self._stages.append(stage)
        return stage

    def stage(
        self,
        name: str,
        *,
        tags: Iterable[str] = (),
        gated: bool = False,
        description: str | None = None,
    ) -> Callable[[StageFunc], StageFunc]:
        """Decorator form of ``add``."""

        def decorator(func: StageFunc) -> StageFunc:
            doc = (func.__doc__ or "").strip().splitlines()
            self.add(
                TestStage(
                    name=name,
                    func=func,
                    tags=frozenset(tags),
                    gated=gated,
                    description=description or (doc[0] if doc else ""),
                )
            )
            return func

        return decorator

    def get(self, name: str) -> TestStage:
        for stage in self._stages:
            if stage.name == name:
                return stage
        raise KeyError(name)

    def names(self) -> list[str]:
        return [s.name for s in self._stages]

    def all_tags(self) -> set[str]:
        return {tag for s in self._stages for tag in s.tags}

    def fresh(self) -> list[TestStage]:
        """Pending copies of every stage, for one run."""
        stages = []
        for stage in self._stages:
            clone = copy.copy(stage)
            clone.outcome = StageOutcome.PENDING
            clone.duration_seconds = 0.0
            clone.message = None
            clone.started_at = None
            stages.append(clone)
        return stages

    def __iter__(self) -> Iterator[TestStage]:
        return iter(self._stages)

    def __len__(self) -> int:
        return len(self._stages)


__all__ = [
    "StageContext",
    "StageFailed",
    "StageFunc",
    "StageOutcome",
    "StageRegistry",
    "StageSkipped",
    "TestStage",
]
