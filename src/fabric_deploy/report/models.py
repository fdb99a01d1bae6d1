"""Run summary models for verification runs.

Pydantic v2 models, serialised with ``model_dump_json(indent=2)`` into
``summary.json``. The counters always partition the stages:
``passed + failed + skipped == total``; ``cancelled`` counts the subset of
``skipped`` stages that never ran because the run was cancelled.
"""

from __future__ import annotations

from pydantic import BaseModel, Field

from fabric_deploy.verify.registry import StageOutcome, TestStage


class StageRecord(BaseModel):
    """Read-only snapshot of a stage after the run."""

    name: str
    tags: list[str] = Field(default_factory=list)
    gated: bool = False
    outcome: StageOutcome
    duration_seconds: float = 0.0
    message: str | None = None
    started_at: str | None = None

    @classmethod
    def from_stage(cls, stage: TestStage) -> StageRecord:
        return cls(
            name=stage.name,
            tags=sorted(stage.tags),
            gated=stage.gated,
            outcome=stage.outcome,
            duration_seconds=round(stage.duration_seconds, 3),
            message=stage.message,
            started_at=stage.started_at,
        )


class RunSummary(BaseModel):
    run_id: str
    generated_at: str
    gate_threshold: int = 0
    total: int = 0
    passed: int = 0
    failed: int = 0
    skipped: int = 0
    cancelled: int = 0
    duration_seconds: float = 0.0
    environment: dict[str, str] = Field(default_factory=dict)
    stages: list[StageRecord] = Field(default_factory=list)

    @property
    def was_cancelled(self) -> bool:
        return self.cancelled > 0

    @property
    def exit_code(self) -> int:
        """130 if cancelled, otherwise 0 iff nothing failed."""
        if self.was_cancelled:
            return 130
        return 0 if self.failed == 0 else 1


__all__ = ["RunSummary", "StageRecord"]
