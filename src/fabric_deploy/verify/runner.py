"""
Gated test runner.

Runs the registered stages strictly in order, one at a time, and records
exactly one outcome per stage. Before a *gated* stage the runner compares
the number of stages that have passed so far with the gate threshold; below
it, the stage is recorded as ``Skip`` and never executed. Slow end-to-end
checks therefore cost nothing when the foundations they depend on are
already broken.

Decision order per stage:
    ::

        run cancelled?             ─► Cancelled ("run cancelled")
        not selected by --tags?    ─► Skip
        gated and --skip-slow?     ─► Skip ("slow stages disabled")
        gated and passed < gate?   ─► Skip ("prerequisite gate not met")
        otherwise                  ─► execute ─► Pass | Fail | Skip | Cancelled

A failing stage never stops later stages.
"""

from __future__ import annotations

import time
import uuid
from datetime import UTC, datetime
from typing import Iterable

from fabric_deploy.core.cancellation import CancellationToken
from fabric_deploy.core.errors import DeployError, RunCancelledError
from fabric_deploy.core.logging import LogContext, get_logger
from fabric_deploy.report.aggregator import summarize
from fabric_deploy.report.models import RunSummary
from fabric_deploy.verify.registry import (
    StageContext,
    StageFailed,
    StageOutcome,
    StageRegistry,
    StageSkipped,
    TestStage,
)

logger = get_logger(__name__)

GATE_NOT_MET = "prerequisite gate not met"
NOT_SELECTED = "not selected by tags"
SLOW_DISABLED = "slow stages disabled"
RUN_CANCELLED = "run cancelled"


class GatedTestRunner:
    """Executes a ``StageRegistry`` and produces a ``RunSummary``.

    Parameters
    ----------
    context
        Shared context handed to every stage.
    gate_threshold
        Passes required before any gated stage may run.
    tags
        Optional selectors (stage names or tags); unselected stages are
        recorded as skipped.
    skip_slow
        Record every gated stage as skipped without evaluating the gate.
    """

    def __init__(
        self,
        context: StageContext,
        *,
        gate_threshold: int,
        tags: Iterable[str] | None = None,
        skip_slow: bool = False,
        cancel: CancellationToken | None = None,
        run_id: str | None = None,
        environment: dict[str, str] | None = None,
    ):
        if gate_threshold < 0:
            raise ValueError("gate_threshold must be >= 0")
        self.context = context
        self.gate_threshold = gate_threshold
        self.tags = set(tags) if tags else None
        self.skip_slow = skip_slow
        self.cancel = cancel or context.cancel
        self.run_id = run_id or uuid.uuid4().hex[:12]
        self.environment = environment or {}

    def run(self, registry: StageRegistry) -> RunSummary:
        stages = registry.fresh()
        passed = 0
        started = time.monotonic()

        with LogContext(run_id=self.run_id):
            logger.info("verify.started", stages=len(stages), gate_threshold=self.gate_threshold)
            for stage in stages:
                self._run_stage(stage, passed)
                if stage.outcome == StageOutcome.PASS:
                    passed += 1

            summary = summarize(
                stages,
                run_id=self.run_id,
                gate_threshold=self.gate_threshold,
                duration_seconds=time.monotonic() - started,
                environment=self.environment,
            )
            logger.info(
                "verify.complete",
                total=summary.total,
                passed=summary.passed,
                failed=summary.failed,
                skipped=summary.skipped,
                cancelled=summary.cancelled,
            )
        return summary

    def _skip_reason(self, stage: TestStage, passed: int) -> str | None:
        if self.tags is not None and not stage.matches(self.tags):
            return NOT_SELECTED
        if stage.gated and self.skip_slow:
            return SLOW_DISABLED
        if stage.gated and passed < self.gate_threshold:
            return f"{GATE_NOT_MET} ({passed} passed, {self.gate_threshold} required)"
        return None

    def _run_stage(self, stage: TestStage, passed: int) -> None:
        now = datetime.now(UTC).isoformat()

        if self.cancel.cancelled:
            stage.record(StageOutcome.CANCELLED, message=RUN_CANCELLED, started_at=now)
            return

        reason = self._skip_reason(stage, passed)
        if reason is not None:
            stage.record(StageOutcome.SKIP, message=reason, started_at=now)
            logger.info("stage.skipped", stage=stage.name, reason=reason)
            return

        with LogContext(stage=stage.name):
            logger.info("stage.started", gated=stage.gated)
            t0 = time.monotonic()
            try:
                message = stage.func(self.context)
                outcome = StageOutcome.PASS
            except StageSkipped as e:
                outcome, message = StageOutcome.SKIP, str(e) or "skipped"
            except (StageFailed, AssertionError) as e:
                outcome, message = StageOutcome.FAIL, str(e) or "assertion failed"
            except RunCancelledError as e:
                outcome, message = StageOutcome.CANCELLED, e.message
            except DeployError as e:
                outcome, message = StageOutcome.FAIL, f"{type(e).__name__}: {e.message}"
            except Exception as e:
                logger.exception("stage.crashed")
                outcome, message = StageOutcome.FAIL, f"unexpected {type(e).__name__}: {e}"
            duration = time.monotonic() - t0

            stage.record(outcome, duration_seconds=duration, message=message, started_at=now)
            log = logger.info if outcome in (StageOutcome.PASS, StageOutcome.SKIP) else logger.warning
            log("stage.finished", outcome=outcome.value, duration=round(duration, 3), message=message)


__all__ = ["GATE_NOT_MET", "GatedTestRunner", "NOT_SELECTED", "RUN_CANCELLED", "SLOW_DISABLED"]
