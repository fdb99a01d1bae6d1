"""
Microsoft Fabric control-plane adapter.

Implements the ``ControlPlane`` protocol on top of the Fabric REST API v1
for workspaces and KQL databases, and Kusto management commands for
tables:

    ==========  ======================================================
    Workspace   GET/POST  /v1/workspaces
    Database    GET/POST  /v1/workspaces/{id}/kqlDatabases
                (parent Eventhouse found or created on demand)
    Table       .show tables | where TableName == "..."
                .create table ['Name'] (Col:type, ...)
    ==========  ======================================================

Every request is made through ``AuthenticationResolver.call_with_reauth``,
so a 401 invalidates the session and the call is retried once with a fresh
one. Long-running creates (HTTP 202 + ``Location``) are polled until the
operation settles, with waits that observe the run's cancellation token.

Related Modules:
    - :mod:`fabric_deploy.control_plane.http`: status/code classification
    - :mod:`fabric_deploy.dataplane.kusto`: query client used for tables

Tags:
    fabric, rest-api, control-plane, kusto, adapter
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any

import httpx

from fabric_deploy.auth.resolver import AuthenticationResolver
from fabric_deploy.auth.session import Session
from fabric_deploy.control_plane.http import parse_retry_after, raise_for_response, send
from fabric_deploy.control_plane.protocol import Lookup
from fabric_deploy.core.cancellation import CancellationToken
from fabric_deploy.core.errors import (
    AlreadyExistsError,
    DeployError,
    FatalError,
    InvalidDefinitionError,
    RunCancelledError,
    TimeoutError,
)
from fabric_deploy.core.logging import get_logger
from fabric_deploy.core.settings import FabricDeploySettings
from fabric_deploy.dataplane.kusto import KustoQueryClient, kql_identifier, kql_string
from fabric_deploy.topology.model import Column, ResourceKind

logger = get_logger(__name__)

_DEFAULT_LRO_INTERVAL = 2.0


@dataclass
class DatabaseInfo:
    id: str
    name: str
    workspace_id: str
    query_uri: str | None = None


class FabricControlPlane:
    """``ControlPlane`` implementation for Microsoft Fabric."""

    def __init__(
        self,
        settings: FabricDeploySettings,
        resolver: AuthenticationResolver,
        *,
        client: httpx.Client | None = None,
        cancel: CancellationToken | None = None,
    ):
        self.settings = settings
        self.base_url = settings.api_base_url.rstrip("/") + "/v1"
        self.timeout = settings.request_timeout_seconds
        self._auth = resolver
        self._client = client or httpx.Client(timeout=self.timeout)
        self.cancel = cancel or CancellationToken()
        self._databases: dict[str, DatabaseInfo] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # ControlPlane protocol
    # ------------------------------------------------------------------

    def check_exists(self, kind: ResourceKind, name: str, parent_id: str | None) -> Lookup:
        if kind == ResourceKind.WORKSPACE:
            return self._find_item("/workspaces", name)
        if kind == ResourceKind.DATABASE:
            return self._find_database(self._require_parent(kind, name, parent_id), name)
        if kind == ResourceKind.TABLE:
            return self._find_table(self._require_parent(kind, name, parent_id), name)
        raise InvalidDefinitionError(f"Unsupported resource kind: {kind}")

    def create(
        self,
        kind: ResourceKind,
        name: str,
        parent_id: str | None,
        definition: dict[str, Any],
    ) -> str:
        if kind == ResourceKind.WORKSPACE:
            return self._create_workspace(name, definition)
        if kind == ResourceKind.DATABASE:
            return self._create_database(self._require_parent(kind, name, parent_id), name, definition)
        if kind == ResourceKind.TABLE:
            return self._create_table(self._require_parent(kind, name, parent_id), name, definition)
        raise InvalidDefinitionError(f"Unsupported resource kind: {kind}")

    def probe(self, session: Session) -> bool:
        """List workspaces with ``session``; no re-authentication here."""
        response = send(
            self._client,
            "GET",
            f"{self.base_url}/workspaces",
            headers=session.authorization_header(),
            timeout=self.timeout,
        )
        if response.status_code in (401, 403):
            logger.info("control_plane.probe_rejected", status=response.status_code)
            return False
        raise_for_response(response)
        return True

    # ------------------------------------------------------------------
    # Data plane access
    # ------------------------------------------------------------------

    def database_info(self, database_id: str) -> DatabaseInfo:
        with self._lock:
            info = self._databases.get(database_id)
        if info is None:
            raise FatalError(f"Database {database_id} has not been looked up in this run")
        if info.query_uri is None and not self.settings.kusto_query_uri:
            body = self._api(
                "GET", f"/workspaces/{info.workspace_id}/kqlDatabases/{database_id}"
            ).json()
            info.query_uri = (body.get("properties") or {}).get("queryServiceUri")
        return info

    def query_client(self, database_id: str) -> KustoQueryClient:
        info = self.database_info(database_id)
        query_uri = self.settings.kusto_query_uri or info.query_uri
        if not query_uri:
            raise FatalError(f"Database '{info.name}' has no query service URI")
        return KustoQueryClient(
            query_uri,
            info.name,
            token=lambda: self._auth.token_for(self.settings.kusto_scope),
            timeout=self.timeout,
            client=self._client,
        )

    def kusto(self, database_id: str, expression: str, *, management: bool = False) -> list[dict[str, Any]]:
        """Run a query or command with one re-authentication on 401."""
        client = self.query_client(database_id)
        run = client.command if management else client.query
        return self._auth.call_with_reauth(lambda _session: run(expression))

    def data_plane(self, database_id: str) -> DataPlane:
        """``QueryClient`` for a database, routed through ``kusto()``."""
        return DataPlane(self, database_id)

    # ------------------------------------------------------------------
    # HTTP plumbing
    # ------------------------------------------------------------------

    def _api(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        url = path if path.startswith("http") else f"{self.base_url}{path}"

        def call(session: Session) -> httpx.Response:
            response = send(
                self._client,
                method,
                url,
                headers=session.authorization_header(),
                timeout=self.timeout,
                **kwargs,
            )
            return raise_for_response(response)

        return self._auth.call_with_reauth(call)

    def _list(self, path: str) -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        url: str | None = path
        while url:
            body = self._api("GET", url).json()
            items.extend(body.get("value", []))
            url = body.get("continuationUri")
        return items

    def _post_item(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        response = self._api("POST", path, json=payload)
        if response.status_code == 202:
            return self._wait_operation(response)
        return response.json() if response.content else {}

    @staticmethod
    def _created_id(body: dict[str, Any], what: str) -> str:
        resource_id = body.get("id")
        if not resource_id:
            raise InvalidDefinitionError(f"Create response for {what} carried no id")
        return str(resource_id)

    def _wait_operation(self, accepted: httpx.Response) -> dict[str, Any]:
        location = accepted.headers.get("Location")
        if not location:
            return {}
        interval = parse_retry_after(accepted.headers.get("Retry-After")) or _DEFAULT_LRO_INTERVAL
        waited = 0.0
        while waited < self.settings.poll_timeout_seconds:
            if self.cancel.wait(interval):
                raise RunCancelledError(self.cancel.reason or "cancelled during long-running operation")
            waited += interval
            state = self._api("GET", location).json()
            status = state.get("status")
            logger.debug("control_plane.operation", status=status, waited=waited)
            if status == "Succeeded":
                return self._api("GET", f"{location.rstrip('/')}/result").json()
            if status == "Failed":
                error = state.get("error") or {}
                code = error.get("errorCode", "")
                message = error.get("message", "operation failed")
                if "AlreadyExists" in code or "AlreadyInUse" in code:
                    raise AlreadyExistsError(message).with_context(error_code=code)
                raise InvalidDefinitionError(message).with_context(error_code=code)
        raise TimeoutError(f"Operation at {location} did not finish in {waited:.0f}s")

    @staticmethod
    def _require_parent(kind: ResourceKind, name: str, parent_id: str | None) -> str:
        if not parent_id:
            raise InvalidDefinitionError(f"{kind.value} '{name}' needs a parent id")
        return parent_id

    # ------------------------------------------------------------------
    # Workspaces
    # ------------------------------------------------------------------

    def _find_item(self, path: str, name: str) -> Lookup:
        for item in self._list(path):
            if item.get("displayName") == name:
                return Lookup(True, item["id"])
        return Lookup.missing()

    def _create_workspace(self, name: str, definition: dict[str, Any]) -> str:
        payload: dict[str, Any] = {"displayName": name}
        if definition.get("description"):
            payload["description"] = definition["description"]
        if definition.get("capacity_id"):
            payload["capacityId"] = definition["capacity_id"]
        body = self._post_item("/workspaces", payload)
        return self._created_id(body, f"workspace '{name}'")

    # ------------------------------------------------------------------
    # Databases
    # ------------------------------------------------------------------

    def _remember_database(self, workspace_id: str, item: dict[str, Any]) -> DatabaseInfo:
        info = DatabaseInfo(
            id=item["id"],
            name=item.get("displayName", ""),
            workspace_id=workspace_id,
            query_uri=(item.get("properties") or {}).get("queryServiceUri"),
        )
        with self._lock:
            self._databases[info.id] = info
        return info

    def _find_database(self, workspace_id: str, name: str) -> Lookup:
        for item in self._list(f"/workspaces/{workspace_id}/kqlDatabases"):
            if item.get("displayName") == name:
                self._remember_database(workspace_id, item)
                return Lookup(True, item["id"])
        return Lookup.missing()

    def _ensure_eventhouse(self, workspace_id: str, name: str) -> str:
        lookup = self._find_item(f"/workspaces/{workspace_id}/eventhouses", name)
        if lookup.found and lookup.id:
            return lookup.id
        try:
            body = self._post_item(f"/workspaces/{workspace_id}/eventhouses", {"displayName": name})
        except AlreadyExistsError:
            lookup = self._find_item(f"/workspaces/{workspace_id}/eventhouses", name)
            if not lookup.id:
                raise
            return lookup.id
        eventhouse_id = self._created_id(body, f"eventhouse '{name}'")
        logger.info("control_plane.eventhouse_created", name=name)
        return eventhouse_id

    def _create_database(self, workspace_id: str, name: str, definition: dict[str, Any]) -> str:
        eventhouse_id = definition.get("eventhouse_id") or self._ensure_eventhouse(
            workspace_id, definition.get("eventhouse") or name
        )
        # A new eventhouse brings a database of the same name with it
        lookup = self._find_database(workspace_id, name)
        if lookup.found:
            raise AlreadyExistsError(f"Database '{name}' already exists", resource_id=lookup.id)

        payload: dict[str, Any] = {
            "displayName": name,
            "creationPayload": {
                "databaseType": "ReadWrite",
                "parentEventhouseItemId": eventhouse_id,
            },
        }
        if definition.get("description"):
            payload["description"] = definition["description"]
        body = self._post_item(f"/workspaces/{workspace_id}/kqlDatabases", payload)
        database_id = self._created_id(body, f"database '{name}'")
        self._remember_database(workspace_id, {"displayName": name, **body})
        return database_id

    # ------------------------------------------------------------------
    # Tables
    # ------------------------------------------------------------------

    def _find_table(self, database_id: str, name: str) -> Lookup:
        rows = self.kusto(
            database_id,
            f".show tables | where TableName == {kql_string(name)} | project TableName",
            management=True,
        )
        if rows:
            return Lookup(True, f"{database_id}/{name}")
        return Lookup.missing()

    def _create_table(self, database_id: str, name: str, definition: dict[str, Any]) -> str:
        columns: list[Column] = list(definition.get("columns", []))
        if not columns:
            raise InvalidDefinitionError(f"Table '{name}' has no columns")
        schema = ", ".join(f"{kql_identifier(c.name)}:{c.type}" for c in columns)
        try:
            self.kusto(database_id, f".create table {kql_identifier(name)} ({schema})", management=True)
        except DeployError as e:
            e.with_context(resource_kind="Table", resource_name=name)
            raise
        return f"{database_id}/{name}"

    def close(self) -> None:
        self._client.close()


class DataPlane:
    def __init__(self, control_plane: FabricControlPlane, database_id: str):
        self._control_plane = control_plane
        self.database_id = database_id

    def query(self, expression: str) -> list[dict[str, Any]]:
        return self._control_plane.kusto(self.database_id, expression)

    def command(self, expression: str) -> list[dict[str, Any]]:
        return self._control_plane.kusto(self.database_id, expression, management=True)


__all__ = ["DataPlane", "DatabaseInfo", "FabricControlPlane"]
