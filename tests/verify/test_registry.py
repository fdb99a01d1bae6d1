"""Tests for fabric_deploy.verify.registry."""

from __future__ import annotations

import pytest

from fabric_deploy.core.errors import InvalidConfigError
from fabric_deploy.verify.registry import StageOutcome, StageRegistry, TestStage


def noop(ctx):
    """Does nothing at all.

    Second paragraph is ignored.
    """


class TestStageRegistry:
    def test_decorator_registers_in_order_with_docstring_description(self):
        registry = StageRegistry()
        registry.stage("first", tags=("a",))(noop)
        registry.stage("second", gated=True, description="explicit")(noop)

        assert registry.names() == ["first", "second"]
        assert registry.get("first").description == "Does nothing at all."
        assert registry.get("second").description == "explicit"
        assert registry.get("second").gated
        assert registry.all_tags() == {"a"}
        assert len(registry) == 2

    def test_duplicate_name_rejected(self):
        registry = StageRegistry()
        registry.stage("x")(noop)
        with pytest.raises(InvalidConfigError):
            registry.stage("x")(noop)

    def test_get_unknown(self):
        with pytest.raises(KeyError):
            StageRegistry().get("missing")

    def test_fresh_copies_are_pending(self):
        registry = StageRegistry()
        registry.stage("x")(noop)
        first = registry.fresh()[0]
        first.record(StageOutcome.PASS)
        assert registry.fresh()[0].outcome == StageOutcome.PENDING
        assert registry.get("x").outcome == StageOutcome.PENDING


class TestStageRecord:
    def test_record_once(self):
        stage = TestStage("x", noop)
        stage.record(StageOutcome.FAIL, duration_seconds=-1, message="m")
        assert stage.duration_seconds == 0.0
        assert stage.started_at is not None
        with pytest.raises(RuntimeError):
            stage.record(StageOutcome.PASS)

    def test_pending_not_recordable(self):
        with pytest.raises(ValueError):
            TestStage("x", noop).record(StageOutcome.PENDING)

    def test_matches_name_or_tag(self):
        stage = TestStage("schemas", noop, tags=frozenset({"kql"}))
        assert stage.matches(["schemas"])
        assert stage.matches(["kql", "other"])
        assert not stage.matches(["streaming"])
