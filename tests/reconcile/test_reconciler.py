"""Tests for fabric_deploy.reconcile.reconciler.Reconciler."""

from __future__ import annotations

import pytest

from fabric_deploy.core.cancellation import CancellationToken
from fabric_deploy.core.errors import AuthenticationError, ErrorClass, PermissionDeniedError
from fabric_deploy.core.retry import ExponentialBackoff
from fabric_deploy.reconcile.reconciler import PARENT_UNAVAILABLE, Reconciler
from fabric_deploy.reconcile.report import ConvergenceReport
from fabric_deploy.topology.model import ResourceKind, ResourceNode, ResourceState
from tests._support.fake_control_plane import FakeControlPlane
from tests._support.tokens import InstantToken
from tests._support.trees import find, make_tree

WS, DB, TABLE = ResourceKind.WORKSPACE, ResourceKind.DATABASE, ResourceKind.TABLE


@pytest.fixture
def cp() -> FakeControlPlane:
    return FakeControlPlane()


def make_reconciler(cp, cancel=None) -> Reconciler:
    return Reconciler(
        cp,
        retry_strategy=ExponentialBackoff(max_attempts=3, base_delay=0, jitter=False),
        cancel=cancel or InstantToken(),
        run_id="test-run",
    )


def states(root: ResourceNode) -> dict[str, ResourceState]:
    return {node.name: node.state for node in root.walk()}


class TestConvergence:
    def test_creates_everything_missing(self, cp):
        root = make_tree()
        report = make_reconciler(cp).converge(root)

        assert set(states(root).values()) == {ResourceState.CREATED}
        assert (report.total, report.created, report.existing, report.failed) == (4, 4, 0, 0)
        assert report.converged and report.exit_code == 0
        assert report.run_id == "test-run"
        assert cp.count("create") == 4

    def test_second_run_is_idempotent(self, cp):
        root = make_tree()
        reconciler = make_reconciler(cp)
        reconciler.converge(root)
        creates = cp.count("create")

        report = reconciler.converge(root)

        assert cp.count("create") == creates
        assert set(states(root).values()) == {ResourceState.EXISTS}
        assert report.existing == 4
        assert report.summary_line() == "4 nodes: 0 created, 4 existing, 0 failed"

    def test_existing_resources_are_adopted(self, cp):
        ws_id = cp.seed(WS, "ws")
        db_id = cp.seed(DB, "db", ws_id)
        root = make_tree()

        make_reconciler(cp).converge(root)

        assert find(root, "ws").resource_id == ws_id
        assert find(root, "db").resource_id == db_id
        assert states(root) == {
            "ws": ResourceState.EXISTS,
            "db": ResourceState.EXISTS,
            "t1": ResourceState.CREATED,
            "t2": ResourceState.CREATED,
        }
        assert cp.count("create", WS) == 0

    def test_children_addressed_by_parent_id(self, cp):
        root = make_tree()
        make_reconciler(cp).converge(root)

        ws_id = cp.id_of(WS, "ws")
        db_id = cp.id_of(DB, "db")
        for call in cp.calls:
            expected = {WS: None, DB: ws_id, TABLE: db_id}[call.kind]
            assert call.parent_id == expected

    def test_child_never_checked_before_parent_available(self, cp):
        seen: list[tuple[str, ResourceKind]] = []
        cp.on_call = lambda call: seen.append((call.op, call.kind))
        make_reconciler(cp).converge(make_tree())

        first_db = seen.index(("check_exists", DB))
        assert ("create", WS) in seen[:first_db]
        first_table = min(i for i, (_, kind) in enumerate(seen) if kind == TABLE)
        assert first_table > seen.index(("create", DB))

    def test_description_merged_into_definition(self, cp):
        root = ResourceNode(WS, "ws", description="OTEL workspace")
        make_reconciler(cp).converge(root)
        created = [c for c in cp.calls if c.op == "create"][0]
        assert created.definition == {"description": "OTEL workspace"}

    def test_reset_between_runs(self, cp):
        root = make_tree()
        cp.fail_with("check_exists", TABLE, "t1", PermissionDeniedError("forbidden"))
        reconciler = make_reconciler(cp)
        assert reconciler.converge(root).failed == 1

        report = reconciler.converge(root)

        assert report.converged
        assert find(root, "t1").state == ResourceState.CREATED
        assert find(root, "t1").message is None


class TestRaces:
    def test_concurrent_create_absorbed_as_exists(self, cp):
        cp.race_on_create(TABLE, "t1")
        root = make_tree()

        report = make_reconciler(cp).converge(root)

        t1 = find(root, "t1")
        assert t1.state == ResourceState.EXISTS
        assert t1.resource_id == cp.id_of(TABLE, "t1")
        assert cp.count("check_exists", TABLE, "t1") == 2
        assert report.converged

    def test_lookup_after_race_failure(self, cp):
        cp.race_on_create(TABLE, "t1")
        checks = []

        def deny_second_lookup(call):
            if call.op == "check_exists" and call.name == "t1":
                checks.append(call)
                if len(checks) == 2:
                    raise PermissionDeniedError("forbidden")

        cp.on_call = deny_second_lookup
        root = make_tree()

        make_reconciler(cp).converge(root)

        t1 = find(root, "t1")
        assert t1.state == ResourceState.FAILED
        assert t1.message == "exists but lookup failed: forbidden"


class TestFailures:
    def test_transient_retried_then_succeeds(self, cp):
        cp.fail_transient("create", TABLE, "t1", times=2)
        root = make_tree()

        report = make_reconciler(cp).converge(root)

        assert find(root, "t1").state == ResourceState.CREATED
        assert cp.count("create", TABLE, "t1") == 3
        assert report.converged

    def test_transient_exhaustion_fails_node_only(self, cp):
        cp.fail_transient("create", TABLE, "t1", times=3)
        root = make_tree()

        report = make_reconciler(cp).converge(root)

        t1 = find(root, "t1")
        assert t1.state == ResourceState.FAILED
        assert t1.error_class == ErrorClass.TRANSIENT
        assert t1.message == "create failed: 503 from fake"
        assert find(root, "t2").state == ResourceState.CREATED
        assert [e.name for e in report.errors] == ["t1"]
        assert report.exit_code == 1

    def test_fatal_parent_prunes_subtree_without_calls(self, cp):
        cp.fail_with("check_exists", DB, "db", PermissionDeniedError("forbidden"))
        root = make_tree()

        report = make_reconciler(cp).converge(root)

        db = find(root, "db")
        assert (db.state, db.error_class, db.message) == (
            ResourceState.FAILED,
            ErrorClass.FATAL,
            "existence check failed: forbidden",
        )
        for name in ("t1", "t2"):
            table = find(root, name)
            assert table.state == ResourceState.FAILED
            assert table.message == f"{PARENT_UNAVAILABLE}: {db.path}"
        assert cp.count("check_exists", TABLE) == 0
        assert cp.count("create", DB) == 0
        assert report.failed == 3

    def test_fatal_not_retried(self, cp):
        cp.fail_with("create", WS, "ws", PermissionDeniedError("forbidden"), times=3)
        make_reconciler(cp).converge(make_tree())
        assert cp.count("create", WS) == 1

    def test_creation_disabled_reports_missing(self, cp):
        ws_id = cp.seed(WS, "ws")
        cp.seed(DB, "db", ws_id)
        root = make_tree(create_tables=False)

        report = make_reconciler(cp).converge(root)

        for name in ("t1", "t2"):
            table = find(root, name)
            assert table.error_class == ErrorClass.FATAL
            assert table.message == "not found and creation disabled"
        assert cp.count("create") == 0
        assert report.exit_code == 1

    def test_sibling_failure_isolated(self, cp):
        cp.fail_with("create", TABLE, "t2", PermissionDeniedError("quota"))
        root = make_tree(tables=("t1", "t2", "t3"))

        make_reconciler(cp).converge(root)

        assert states(root)["t1"] == ResourceState.CREATED
        assert states(root)["t2"] == ResourceState.FAILED
        assert states(root)["t3"] == ResourceState.CREATED

    def test_unexpected_adapter_error_fails_node_only(self, cp):
        cp.fail_with("create", TABLE, "t2", KeyError("id"))
        root = make_tree()

        report = make_reconciler(cp).converge(root)

        t2 = find(root, "t2")
        assert t2.state == ResourceState.FAILED
        assert t2.error_class == ErrorClass.FATAL
        assert t2.message == "create failed: KeyError: 'id'"
        assert find(root, "t1").state == ResourceState.CREATED
        assert report.failed == 1
        assert report.exit_code == 1

    def test_unexpected_error_during_check_prunes_subtree(self, cp):
        cp.fail_with("check_exists", DB, "db", ValueError("not json"))
        root = make_tree()

        report = make_reconciler(cp).converge(root)

        assert find(root, "db").message == "existence check failed: ValueError: not json"
        assert find(root, "t1").message.startswith(PARENT_UNAVAILABLE)
        assert report.aborted is None
        assert report.failed == 3


class TestAbort:
    def test_auth_failure_aborts_run(self, cp):
        cp.fail_with("check_exists", DB, "db", AuthenticationError("session expired"))
        root = make_tree()

        report = make_reconciler(cp).converge(root)

        assert report.aborted == ErrorClass.AUTH
        assert report.abort_reason == "session expired"
        assert report.exit_code == 2
        assert find(root, "ws").state == ResourceState.CREATED
        for name in ("db", "t1", "t2"):
            node = find(root, name)
            assert node.state == ResourceState.FAILED
            assert node.error_class == ErrorClass.AUTH
        assert cp.count("check_exists", TABLE) == 0

    def test_auth_failure_in_parallel_children(self, cp):
        cp.fail_with("check_exists", TABLE, "t1", AuthenticationError("expired"))
        root = make_tree(tables=("t1", "t2", "t3"))

        report = make_reconciler(cp).converge(root)

        assert report.exit_code == 2
        assert all(node.state.is_terminal for node in root.walk())

    def test_cancellation_stops_new_work(self, cp):
        token = CancellationToken()

        def cancel_after_workspace(call):
            if call.op == "create" and call.kind == WS:
                token.cancel("SIGINT")

        cp.on_call = cancel_after_workspace
        root = make_tree()

        report = make_reconciler(cp, cancel=token).converge(root)

        assert report.aborted == ErrorClass.CANCELLED
        assert report.exit_code == 130
        assert cp.count("check_exists", DB) == 0
        assert find(root, "db").error_class == ErrorClass.CANCELLED
        assert find(root, "t1").message == "run aborted: SIGINT"

    def test_cancellation_during_backoff(self, cp):
        cp.fail_transient("create", WS, "ws", times=3)
        report = make_reconciler(cp, cancel=InstantToken(cancel_after=1)).converge(make_tree())
        assert report.exit_code == 130
        assert cp.count("create", WS) == 1

    def test_abandon_reports_every_node_without_calls(self, cp):
        root = make_tree()

        report = make_reconciler(cp).abandon(root, AuthenticationError("no strategy produced a session"))

        assert report.aborted == ErrorClass.AUTH
        assert report.abort_reason == "no strategy produced a session"
        assert (report.total, report.failed) == (4, 4)
        assert report.exit_code == 2
        assert set(states(root).values()) == {ResourceState.FAILED}
        assert cp.calls == []


class TestReportPersistence:
    def test_round_trips_through_json(self, cp):
        cp.fail_with("create", TABLE, "t1", PermissionDeniedError("forbidden"))
        report = make_reconciler(cp).converge(make_tree())

        restored = ConvergenceReport.model_validate_json(report.model_dump_json())

        assert restored.errors == report.errors
        assert restored.tree.children[0].children[0].state == ResourceState.FAILED
        assert restored.exit_code == 1
