"""Kusto (KQL) query and management client over the v1 REST endpoints.

Example:
    >>> client = KustoQueryClient(query_uri, "otelobservabilitydb", token=lambda: resolver.token_for(scope))
    >>> client.query("OTELLogs | count")
    [{'Count': 42}]
"""

from __future__ import annotations

from typing import Any, Callable

import httpx

from fabric_deploy.control_plane.http import raise_for_response, send
from fabric_deploy.core.logging import get_logger

logger = get_logger(__name__)

TokenProvider = Callable[[], str]


def rows_from_v1(body: dict[str, Any]) -> list[dict[str, Any]]:
    """Primary result table of a v1 response as a list of row dicts."""
    tables = body.get("Tables") or []
    if not tables:
        return []
    primary = tables[0]
    names = [c.get("ColumnName") for c in primary.get("Columns", [])]
    return [dict(zip(names, row)) for row in primary.get("Rows", [])]


def kql_string(value: str) -> str:
    """Quote a literal for interpolation into a KQL expression."""
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'


def kql_identifier(name: str) -> str:
    """Bracket-quote a table or column name for interpolation into KQL."""
    return "['" + name.replace("\\", "\\\\").replace("'", "\\'") + "']"


class KustoQueryClient:
    """Runs queries and management commands against one database."""

    def __init__(
        self,
        query_uri: str,
        database: str,
        token: TokenProvider,
        *,
        timeout: float = 30.0,
        client: httpx.Client | None = None,
    ):
        self.query_uri = query_uri.rstrip("/")
        self.database = database
        self._token = token
        self.timeout = timeout
        self._client = client or httpx.Client(timeout=timeout)

    def query(self, expression: str) -> list[dict[str, Any]]:
        return self._execute("/v1/rest/query", expression)

    def command(self, expression: str) -> list[dict[str, Any]]:
        return self._execute("/v1/rest/mgmt", expression)

    def _execute(self, path: str, expression: str) -> list[dict[str, Any]]:
        url = f"{self.query_uri}{path}"
        response = send(
            self._client,
            "POST",
            url,
            json={"db": self.database, "csl": expression},
            headers={
                "Authorization": f"Bearer {self._token()}",
                "Accept": "application/json",
            },
            timeout=self.timeout,
        )
        raise_for_response(response, resource_kind="Database", resource_name=self.database)
        rows = rows_from_v1(response.json())
        logger.debug("kusto.executed", path=path, rows=len(rows))
        return rows

    def close(self) -> None:
        self._client.close()


__all__ = ["KustoQueryClient", "kql_identifier", "kql_string", "rows_from_v1"]
