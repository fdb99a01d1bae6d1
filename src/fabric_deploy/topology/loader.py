"""Build the descriptor tree from settings or a YAML file.

Topology YAML::

    workspace:
      name: fabric-otel-workspace
      create: true
      capacity_id: 00000000-0000-0000-0000-000000000000
      databases:
        - name: otelobservabilitydb
          tables:
            - name: OTELLogs
              columns:
                - {name: Timestamp, type: datetime}
                - {name: Body, type: string}
            - name: OTELMetrics        # no columns -> built-in OTEL schema

Flags from settings still apply on top of a file: ``manage_workspace=False``
makes the workspace existence-only and ``sync_mode=git`` does the same for
every table.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Any

import yaml

from fabric_deploy.core.errors import TopologyError
from fabric_deploy.core.settings import FabricDeploySettings, SyncMode
from fabric_deploy.topology.model import Column, ResourceKind, ResourceNode


def _cols(*pairs: tuple[str, str]) -> list[Column]:
    return [Column(name, kql_type) for name, kql_type in pairs]


OTEL_TABLE_SCHEMAS: dict[str, list[Column]] = {
    "OTELLogs": _cols(
        ("Timestamp", "datetime"),
        ("ObservedTimestamp", "datetime"),
        ("TraceID", "string"),
        ("SpanID", "string"),
        ("SeverityText", "string"),
        ("SeverityNumber", "int"),
        ("Body", "string"),
        ("ResourceAttributes", "dynamic"),
        ("LogsAttributes", "dynamic"),
    ),
    "OTELMetrics": _cols(
        ("Timestamp", "datetime"),
        ("MetricName", "string"),
        ("MetricType", "string"),
        ("MetricUnit", "string"),
        ("MetricDescription", "string"),
        ("MetricValue", "real"),
        ("Host", "string"),
        ("ResourceAttributes", "dynamic"),
        ("MetricAttributes", "dynamic"),
    ),
    "OTELTraces": _cols(
        ("TraceID", "string"),
        ("SpanID", "string"),
        ("ParentID", "string"),
        ("SpanName", "string"),
        ("SpanStatus", "string"),
        ("SpanKind", "string"),
        ("StartTime", "datetime"),
        ("EndTime", "datetime"),
        ("ResourceAttributes", "dynamic"),
        ("TraceAttributes", "dynamic"),
        ("Events", "dynamic"),
        ("Links", "dynamic"),
    ),
}


# Kusto entity names: letters, digits, underscore, space, dot and dash
_KUSTO_NAME = re.compile(r"[\w .\-]{1,1024}")

KUSTO_SCALAR_TYPES = frozenset(
    {
        "bool", "boolean", "datetime", "date", "decimal", "double", "dynamic",
        "guid", "int", "long", "real", "string", "time", "timespan",
    }
)


def _check_kusto_name(name: str, what: str) -> None:
    if not _KUSTO_NAME.fullmatch(name):
        raise TopologyError(
            f"{what} '{name}' is not a valid Kusto name (letters, digits, _, space, . and - only)"
        )


def _table_node(name: str, columns: list[Column] | None, create: bool) -> ResourceNode:
    _check_kusto_name(name, "Table")
    if columns is None:
        if name not in OTEL_TABLE_SCHEMAS:
            raise TopologyError(f"Table '{name}' has no columns and no built-in schema")
        columns = list(OTEL_TABLE_SCHEMAS[name])
    if not columns:
        raise TopologyError(f"Table '{name}' must declare at least one column")
    seen: set[str] = set()
    for column in columns:
        _check_kusto_name(column.name, f"Table '{name}' column")
        if column.type not in KUSTO_SCALAR_TYPES:
            raise TopologyError(f"Table '{name}' column '{column.name}' has unknown type '{column.type}'")
        if column.name in seen:
            raise TopologyError(f"Table '{name}' declares column '{column.name}' twice")
        seen.add(column.name)
    return ResourceNode(ResourceKind.TABLE, name, definition={"columns": columns}, create=create)


def build_topology(settings: FabricDeploySettings) -> ResourceNode:
    """Default topology: one workspace, one database, the expected tables."""
    workspace = ResourceNode(
        ResourceKind.WORKSPACE,
        settings.workspace_name,
        definition={"capacity_id": settings.capacity_id} if settings.capacity_id else {},
        create=settings.manage_workspace,
        description="OpenTelemetry observability workspace",
    )
    database = workspace.add_child(
        ResourceNode(
            ResourceKind.DATABASE,
            settings.database_name,
            description="KQL database for OpenTelemetry logs, metrics and traces",
        )
    )
    tables_create = settings.sync_mode == SyncMode.DIRECT
    for table in settings.expected_tables:
        database.add_child(_table_node(table, None, tables_create))
    return workspace


def load_topology(path: str | Path, settings: FabricDeploySettings) -> ResourceNode:
    """Load a topology YAML file and apply the settings flags."""
    path = Path(path)
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except FileNotFoundError as e:
        raise TopologyError(f"Topology file not found: {path}", cause=e) from e
    except yaml.YAMLError as e:
        raise TopologyError(f"Topology file is not valid YAML: {path}: {e}", cause=e) from e
    except (OSError, UnicodeDecodeError) as e:
        raise TopologyError(f"Cannot read topology file {path}: {e}", cause=e) from e
    return parse_topology(raw, settings)


def parse_topology(raw: Any, settings: FabricDeploySettings) -> ResourceNode:
    if not isinstance(raw, dict) or not isinstance(raw.get("workspace"), dict):
        raise TopologyError("Topology must have a top-level 'workspace' mapping")

    ws = raw["workspace"]
    workspace = ResourceNode(
        ResourceKind.WORKSPACE,
        _required_name(ws, "workspace"),
        definition={"capacity_id": ws.get("capacity_id") or settings.capacity_id}
        if (ws.get("capacity_id") or settings.capacity_id)
        else {},
        create=bool(ws.get("create", True)) and settings.manage_workspace,
        description=ws.get("description"),
    )

    tables_create = settings.sync_mode == SyncMode.DIRECT
    for db in ws.get("databases") or []:
        database = workspace.add_child(
            ResourceNode(
                ResourceKind.DATABASE,
                _required_name(db, "database"),
                create=bool(db.get("create", True)),
                description=db.get("description"),
            )
        )
        for table in db.get("tables") or []:
            if isinstance(table, str):
                table = {"name": table}
            name = _required_name(table, "table")
            columns = None
            if table.get("columns") is not None:
                columns = [_column(c, name) for c in table["columns"]]
            database.add_child(
                _table_node(
                    name,
                    columns,
                    bool(table.get("create", True)) and tables_create,
                )
            )
    return workspace


def _required_name(entry: Any, what: str) -> str:
    if not isinstance(entry, dict) or not entry.get("name"):
        raise TopologyError(f"Every {what} needs a 'name'")
    return str(entry["name"])


def _column(entry: Any, table: str) -> Column:
    if not isinstance(entry, dict) or not entry.get("name") or not entry.get("type"):
        raise TopologyError(f"Table '{table}': every column needs 'name' and 'type'")
    return Column(str(entry["name"]), str(entry["type"]))


__all__ = ["OTEL_TABLE_SCHEMAS", "build_topology", "load_topology", "parse_topology"]
