"""
Built-in verification stages for the OpenTelemetry observability deployment.

Order matters: the first six stages are the foundations (authentication,
workspace, database, tables, schemas, ingestion readiness). The two
streaming stages are gated behind them, so with the default gate of 6 they
only run when every foundation passed.

    #  stage                gated  tags
    1  prerequisites               auth, control-plane
    2  workspace                   control-plane
    3  database                    control-plane
    4  tables                      control-plane, kql
    5  schemas                     kql
    6  ingestion-readiness         kql
    7  eventhub-send        yes    streaming
    8  data-streaming       yes    streaming, slow
    9  query-performance           kql, performance

Stages share discovered ids through ``ctx.state`` (``workspace_id``,
``database_id``, ``probe_sent``).
"""

from __future__ import annotations

import time
from datetime import UTC, datetime
from typing import Any

from fabric_deploy.core.logging import get_logger
from fabric_deploy.dataplane.kusto import kql_identifier, kql_string
from fabric_deploy.topology.model import ResourceKind
from fabric_deploy.verify.polling import poll_until
from fabric_deploy.verify.registry import StageContext, StageFailed, StageRegistry, StageSkipped

logger = get_logger(__name__)

PROBE_LOG_BODY = "Test log message from automated test suite"
PROBE_METRIC_NAME = "test.automation.metric"
PROBE_SPAN_NAME = "test-automation-span"

# How each table is searched for the run's probe record
PROBE_FILTERS: dict[str, str] = {
    "OTELLogs": "TraceID == {marker}",
    "OTELMetrics": "MetricName == {metric} and tostring(MetricAttributes['test.marker']) == {marker}",
    "OTELTraces": "TraceID == {marker}",
}


def _workspace_id(ctx: StageContext) -> str:
    workspace_id = ctx.state.get("workspace_id")
    if not workspace_id:
        raise StageFailed("workspace was not found by an earlier stage")
    return workspace_id


def _database_id(ctx: StageContext) -> str:
    database_id = ctx.state.get("database_id")
    if not database_id:
        raise StageFailed("database was not found by an earlier stage")
    return database_id


def _tables(ctx: StageContext) -> list[str]:
    return list(ctx.settings.expected_tables)


def probe_records(marker: str, now: datetime | None = None) -> list[dict[str, Any]]:
    """One log, one metric and one span tagged with ``marker``."""
    ts = (now or datetime.now(UTC)).isoformat()
    resource = {"service.name": "fabric-deploy-verify", "test.marker": marker}
    return [
        {
            "Timestamp": ts,
            "ObservedTimestamp": ts,
            "TraceID": marker,
            "SpanID": marker[:16],
            "SeverityText": "INFO",
            "SeverityNumber": 9,
            "Body": f"{PROBE_LOG_BODY} ({marker})",
            "ResourceAttributes": resource,
            "LogsAttributes": {"test.marker": marker},
        },
        {
            "Timestamp": ts,
            "MetricName": PROBE_METRIC_NAME,
            "MetricType": "gauge",
            "MetricUnit": "1",
            "MetricDescription": "Probe metric emitted by fabric-deploy verify",
            "MetricValue": 1.0,
            "Host": "fabric-deploy",
            "ResourceAttributes": resource,
            "MetricAttributes": {"test.marker": marker},
        },
        {
            "TraceID": marker,
            "SpanID": marker[:16],
            "ParentID": "",
            "SpanName": PROBE_SPAN_NAME,
            "SpanStatus": "OK",
            "SpanKind": "INTERNAL",
            "StartTime": ts,
            "EndTime": ts,
            "ResourceAttributes": resource,
            "TraceAttributes": {"test.marker": marker},
            "Events": [],
            "Links": [],
        },
    ]


def build_registry() -> StageRegistry:
    """The built-in stage set, in execution order."""
    registry = StageRegistry()

    @registry.stage("prerequisites", tags=("auth", "control-plane"))
    def prerequisites(ctx: StageContext) -> str:
        """Resolved session is accepted by the control plane."""
        if not ctx.probe():
            raise StageFailed("control plane rejected the resolved session")
        return "session accepted"

    @registry.stage("workspace", tags=("control-plane",))
    def workspace(ctx: StageContext) -> str:
        """Workspace exists and is accessible."""
        name = ctx.settings.workspace_name
        lookup = ctx.control_plane.check_exists(ResourceKind.WORKSPACE, name, None)
        if not lookup.found:
            raise StageFailed(f"workspace '{name}' not found")
        ctx.state["workspace_id"] = lookup.id
        return f"workspace '{name}' ({lookup.id})"

    @registry.stage("database", tags=("control-plane",))
    def database(ctx: StageContext) -> str:
        """KQL database exists in the workspace."""
        name = ctx.settings.database_name
        lookup = ctx.control_plane.check_exists(ResourceKind.DATABASE, name, _workspace_id(ctx))
        if not lookup.found:
            raise StageFailed(f"database '{name}' not found")
        ctx.state["database_id"] = lookup.id
        return f"database '{name}' ({lookup.id})"

    @registry.stage("tables", tags=("control-plane", "kql"))
    def tables(ctx: StageContext) -> str:
        """Every declared table exists."""
        database_id = _database_id(ctx)
        missing = [
            table
            for table in _tables(ctx)
            if not ctx.control_plane.check_exists(ResourceKind.TABLE, table, database_id).found
        ]
        if missing:
            raise StageFailed(f"missing tables: {', '.join(missing)}")
        return f"{len(_tables(ctx))} tables present"

    @registry.stage("schemas", tags=("kql",))
    def schemas(ctx: StageContext) -> str:
        """Each table has all declared columns."""
        client = ctx.query_client(_database_id(ctx))
        problems = []
        for table in _tables(ctx):
            expected = ctx.schemas.get(table, [])
            rows = client.query(f"{kql_identifier(table)} | getschema | project ColumnName, ColumnType")
            actual = {str(r.get("ColumnName")) for r in rows}
            missing = [c.name for c in expected if c.name not in actual]
            if missing:
                problems.append(f"{table} lacks {', '.join(missing)}")
        if problems:
            raise StageFailed("; ".join(problems))
        return "all declared columns present"

    @registry.stage("ingestion-readiness", tags=("kql",))
    def ingestion_readiness(ctx: StageContext) -> str:
        """Every table answers a count query."""
        client = ctx.query_client(_database_id(ctx))
        counts = {}
        for table in _tables(ctx):
            rows = client.query(f"{kql_identifier(table)} | count")
            if not rows:
                raise StageFailed(f"count query on {table} returned no rows")
            counts[table] = next(iter(rows[0].values()))
        return ", ".join(f"{t}={n}" for t, n in counts.items())

    @registry.stage("eventhub-send", tags=("streaming",), gated=True)
    def eventhub_send(ctx: StageContext) -> str:
        """Publish one probe log, metric and span to Event Hubs."""
        if ctx.publisher is None:
            raise StageSkipped("no Event Hub configured")
        ctx.publisher.send(probe_records(ctx.marker))
        ctx.state["probe_sent"] = True
        return f"probe records sent (marker {ctx.marker})"

    @registry.stage("data-streaming", tags=("streaming", "slow"), gated=True)
    def data_streaming(ctx: StageContext) -> str:
        """Probe records become queryable in every table."""
        if not ctx.state.get("probe_sent"):
            raise StageSkipped("no probe records were sent")
        client = ctx.query_client(_database_id(ctx))
        pending = [t for t in _tables(ctx) if t in PROBE_FILTERS]
        marker = kql_string(ctx.marker)
        metric = kql_string(PROBE_METRIC_NAME)

        def all_arrived() -> bool:
            for table in list(pending):
                where = PROBE_FILTERS[table].format(marker=marker, metric=metric)
                rows = client.query(f"{kql_identifier(table)} | where {where} | count")
                if rows and int(next(iter(rows[0].values())) or 0) > 0:
                    logger.info("streaming.arrived", table=table)
                    pending.remove(table)
            return not pending

        started = time.monotonic()
        poll_until(
            all_arrived,
            interval=ctx.settings.poll_interval_seconds,
            timeout=ctx.settings.poll_timeout_seconds,
            cancel=ctx.cancel,
            description="probe records in " + ", ".join(pending),
        )
        return f"probe records arrived after {time.monotonic() - started:.1f}s"

    @registry.stage("query-performance", tags=("kql", "performance"))
    def query_performance(ctx: StageContext) -> str:
        """A management query answers within the threshold."""
        client = ctx.query_client(_database_id(ctx))
        threshold = ctx.settings.query_threshold_seconds
        started = time.monotonic()
        client.command(".show tables")
        elapsed = time.monotonic() - started
        if elapsed >= threshold:
            raise StageFailed(f".show tables took {elapsed:.2f}s (threshold {threshold:g}s)")
        return f".show tables answered in {elapsed:.2f}s"

    return registry


__all__ = [
    "PROBE_FILTERS",
    "PROBE_LOG_BODY",
    "PROBE_METRIC_NAME",
    "PROBE_SPAN_NAME",
    "build_registry",
    "probe_records",
]
