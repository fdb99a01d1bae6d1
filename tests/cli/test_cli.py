"""Tests for the fabric-deploy CLI (typer CliRunner, in-memory runtime)."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from typer.testing import CliRunner

from fabric_deploy import __version__
from fabric_deploy.auth.resolver import AuthenticationResolver
from fabric_deploy.auth.session import AuthStrategyKind
from fabric_deploy.auth.strategies import AuthStrategy
from fabric_deploy.cli import utils
from fabric_deploy.cli.app import app
from fabric_deploy.core.errors import PermissionDeniedError, StrategyError, StrategyFailureClass
from fabric_deploy.topology.loader import OTEL_TABLE_SCHEMAS
from fabric_deploy.topology.model import ResourceKind
from tests._support.fake_control_plane import FakeControlPlane, FakeQueryClient
from tests._support.tokens import make_resolver

runner = CliRunner()

RUN_ID = "20260101T000000-abcdef"
QUIET = ["--log-level", "ERROR"]


class NotConfigured(AuthStrategy):
    kind = AuthStrategyKind.EXPLICIT_CREDENTIAL

    def acquire(self, scope):
        raise StrategyError(StrategyFailureClass.NOT_CONFIGURED, "no client secret")


class Env:
    """Fakes handed to the CLI through ``build_runtime``."""

    def __init__(self) -> None:
        self.cp = FakeControlPlane()
        self.client = FakeQueryClient(
            responses={
                "getschema": [
                    {"ColumnName": c.name, "ColumnType": c.type}
                    for cols in OTEL_TABLE_SCHEMAS.values()
                    for c in cols
                ],
                "| count": [{"Count": 0}],
            }
        )
        self.resolver: AuthenticationResolver = make_resolver()
        self.closed = 0

    def build_runtime(self, settings, cancel):
        def close():
            self.closed += 1

        return utils.Runtime(
            settings=settings,
            cancel=cancel,
            resolver=self.resolver,
            control_plane=self.cp,
            query_client=lambda database_id: self.client,
            closers=[close],
        )

    def seed_default(self, workspace="fabric-otel-workspace", database="otelobservabilitydb") -> None:
        ws_id = self.cp.seed(ResourceKind.WORKSPACE, workspace)
        db_id = self.cp.seed(ResourceKind.DATABASE, database, ws_id)
        for table in OTEL_TABLE_SCHEMAS:
            self.cp.seed(ResourceKind.TABLE, table, db_id)


@pytest.fixture(autouse=True)
def wide_console(monkeypatch):
    monkeypatch.setattr(utils.console, "width", 200)
    monkeypatch.setattr(utils.err_console, "width", 200)


@pytest.fixture
def env(monkeypatch) -> Env:
    env = Env()
    monkeypatch.setattr(utils, "build_runtime", env.build_runtime)
    monkeypatch.setattr(utils, "new_run_id", lambda: RUN_ID)
    return env


class TestRoot:
    def test_version(self):
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert result.stdout.strip() == f"fabric-deploy {__version__}"

    def test_no_args_shows_help(self):
        result = runner.invoke(app, [])
        assert "reconcile" in result.output
        assert "verify" in result.output

    def test_invalid_environment_exits_1(self, monkeypatch):
        monkeypatch.setenv("FABRIC_DEPLOY_CLIENT_SECRET", "s3cret")
        result = runner.invoke(app, ["stages"])
        assert result.exit_code == 1
        assert "Invalid configuration" in result.output


class TestReconcile:
    def test_fresh_environment_converges(self, env):
        result = runner.invoke(app, QUIET + ["reconcile", "--json"])

        assert result.exit_code == 0, result.output
        report = json.loads(result.stdout)
        assert report["run_id"] == RUN_ID
        assert (report["total"], report["created"], report["failed"]) == (5, 5, 0)
        assert env.closed == 1
        saved = Path("test-results") / RUN_ID / "convergence.json"
        assert json.loads(saved.read_text())["created"] == 5

    def test_second_run_creates_nothing(self, env):
        runner.invoke(app, QUIET + ["reconcile", "--json"])
        creates = env.cp.count("create")

        result = runner.invoke(app, QUIET + ["reconcile", "--json"])

        assert result.exit_code == 0
        assert env.cp.count("create") == creates
        assert json.loads(result.stdout)["existing"] == 5

    def test_unresolved_node_exits_1(self, env):
        env.cp.fail_with("create", ResourceKind.TABLE, "OTELTraces", PermissionDeniedError("forbidden"))

        result = runner.invoke(app, QUIET + ["reconcile", "--json"])

        assert result.exit_code == 1
        errors = json.loads(result.stdout)["errors"]
        assert [(e["name"], e["error_class"]) for e in errors] == [("OTELTraces", "Fatal")]

    def test_git_mode_does_not_create_tables(self, env):
        result = runner.invoke(app, QUIET + ["reconcile", "--sync-mode", "git", "--json"])

        assert result.exit_code == 1
        assert env.cp.count("create", ResourceKind.TABLE) == 0
        messages = {e["message"] for e in json.loads(result.stdout)["errors"]}
        assert messages == {"not found and creation disabled"}

    def test_auth_failure_exits_2(self, env):
        env.resolver = AuthenticationResolver([NotConfigured()], scope="scope")

        result = runner.invoke(app, ["reconcile"])

        assert result.exit_code == 2
        assert "Authentication failed" in result.output
        assert "no client secret" in result.output
        assert env.cp.calls == []
        assert env.closed == 1
        saved = json.loads((Path("test-results") / RUN_ID / "convergence.json").read_text())
        assert saved["aborted"] == "AuthError"
        assert "no client secret" in saved["abort_reason"]
        assert (saved["total"], saved["failed"]) == (5, 5)

    def test_human_output(self, env):
        result = runner.invoke(app, QUIET + ["reconcile", "-w", "custom-ws"])

        assert result.exit_code == 0
        assert f"run_id: {RUN_ID}" in result.stdout
        assert "custom-ws" in result.stdout
        assert "5 nodes: 5 created, 0 existing, 0 failed" in result.stdout

    def test_bad_topology_file_exits_1(self, env, tmp_path):
        path = tmp_path / "topology.yaml"
        path.write_text("workspace: [not, a, mapping]\n")

        result = runner.invoke(app, ["reconcile", "--topology", str(path)])

        assert result.exit_code == 1
        assert "top-level 'workspace' mapping" in result.output


class TestVerify:
    def test_healthy_run_json(self, env):
        env.seed_default()

        result = runner.invoke(app, QUIET + ["verify", "--format", "json"])

        assert result.exit_code == 0, result.output
        summary = json.loads(result.stdout)
        assert summary["run_id"] == RUN_ID
        assert summary["total"] == 9
        assert summary["failed"] == 0
        assert summary["environment"]["workspace"] == "fabric-otel-workspace"
        outcomes = {s["name"]: s["outcome"] for s in summary["stages"]}
        assert outcomes["eventhub-send"] == "Skip"
        run_dir = Path("test-results") / RUN_ID
        assert sorted(p.name for p in run_dir.iterdir()) == ["junit.xml", "report.md", "summary.json"]

    def test_failures_exit_1(self, env):
        result = runner.invoke(app, QUIET + ["verify", "--format", "json"])

        assert result.exit_code == 1
        outcomes = {s["name"]: s["outcome"] for s in json.loads(result.stdout)["stages"]}
        assert outcomes["workspace"] == "Fail"
        assert outcomes["prerequisites"] == "Pass"

    def test_junit_to_stdout(self, env):
        env.seed_default()
        result = runner.invoke(app, QUIET + ["verify", "-f", "junit", "--skip-slow"])
        assert result.stdout.startswith('<?xml version="1.0" encoding="utf-8"?>')
        assert "<testsuites" in result.stdout

    def test_tags_select_stages(self, env):
        env.seed_default()
        result = runner.invoke(app, QUIET + ["verify", "-f", "json", "--tags", "control-plane"])

        outcomes = {s["name"]: s["outcome"] for s in json.loads(result.stdout)["stages"]}
        assert outcomes["workspace"] == "Pass"
        assert outcomes["schemas"] == "Skip"

    def test_unknown_tag_warns(self, env):
        env.seed_default()
        result = runner.invoke(app, QUIET + ["verify", "--tags", "nope"])
        assert "no stage matches nope" in result.output

    def test_unknown_format_exits_1(self, env):
        result = runner.invoke(app, ["verify", "--format", "yaml"])
        assert result.exit_code == 1
        assert "Unknown format" in result.output

    def test_auth_failure_fails_prerequisites_and_writes_report(self, env):
        env.resolver = AuthenticationResolver([NotConfigured()], scope="scope")

        result = runner.invoke(app, QUIET + ["verify"])

        assert result.exit_code == 1
        assert "Authentication failed" in result.output
        assert env.cp.calls == []
        assert env.closed == 1
        run_dir = Path("test-results") / RUN_ID
        assert sorted(p.name for p in run_dir.iterdir()) == ["junit.xml", "report.md", "summary.json"]
        summary = json.loads((run_dir / "summary.json").read_text())
        stages = {s["name"]: s for s in summary["stages"]}
        assert stages["prerequisites"]["outcome"] == "Fail"
        assert "no client secret" in stages["prerequisites"]["message"]
        assert stages["workspace"]["outcome"] == "Fail"
        assert stages["eventhub-send"]["outcome"] == "Skip"
        assert summary["failed"] >= 1
        assert summary["passed"] + summary["failed"] + summary["skipped"] == summary["total"]

    def test_gate_threshold_option(self, env):
        env.seed_default()
        result = runner.invoke(app, QUIET + ["verify", "-f", "json", "-g", "0"])
        assert json.loads(result.stdout)["gate_threshold"] == 0


class TestStages:
    def test_lists_stages_in_order(self):
        result = runner.invoke(app, ["stages"])

        assert result.exit_code == 0
        out = result.stdout
        positions = [out.index(name) for name in ("prerequisites", "workspace", "eventhub-send", "query-performance")]
        assert positions == sorted(positions)


class TestTopology:
    def test_json(self):
        result = runner.invoke(app, ["topology", "--json"])

        assert result.exit_code == 0
        root = json.loads(result.stdout)
        assert root["name"] == "fabric-otel-workspace"
        database = root["children"][0]
        assert database["name"] == "otelobservabilitydb"
        assert [t["name"] for t in database["children"]] == ["OTELLogs", "OTELMetrics", "OTELTraces"]

    def test_tree_marks_existence_only_nodes(self, monkeypatch):
        monkeypatch.setenv("FABRIC_DEPLOY_SYNC_MODE", "git")
        result = runner.invoke(app, ["topology"])
        assert result.exit_code == 0
        assert "(existence only)" in result.stdout


class TestAuth:
    def test_whoami_json(self, env):
        result = runner.invoke(app, QUIET + ["auth", "whoami", "--json"])

        assert result.exit_code == 0
        info = json.loads(result.stdout)
        assert info["identity"] == "tester"
        assert info["strategy"] == "ExplicitCredential"
        assert info["attempts"] == []
        assert "access_token" not in info

    def test_whoami_lists_skipped_strategies(self, env):
        env.resolver = AuthenticationResolver([NotConfigured(), make_resolver().strategies[0]], scope="scope")
        result = runner.invoke(app, QUIET + ["auth", "whoami"])

        assert result.exit_code == 0
        assert "Identity: tester" in result.stdout
        assert "NotConfigured (no client secret)" in result.stdout

    def test_whoami_auth_failure(self, env):
        env.resolver = AuthenticationResolver([NotConfigured()], scope="scope")
        result = runner.invoke(app, ["auth", "whoami"])
        assert result.exit_code == 2
