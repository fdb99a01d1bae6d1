"""Gated verification stages and their runner.

The runner and the built-in stage set live in :mod:`fabric_deploy.verify.runner`
and :mod:`fabric_deploy.verify.stages`; they import the report package, which
in turn imports the registry, so only the registry is re-exported here.
"""

from fabric_deploy.verify.registry import (
    StageContext,
    StageFailed,
    StageOutcome,
    StageRegistry,
    StageSkipped,
    TestStage,
)

__all__ = [
    "StageContext",
    "StageFailed",
    "StageOutcome",
    "StageRegistry",
    "StageSkipped",
    "TestStage",
]
