"""
Centralized settings for fabric-deploy.

One validated, cached settings object holds every knob the CLI, the
authentication resolver, the reconciler and the test runner read. Values
come from ``FABRIC_DEPLOY_*`` environment variables, a ``.env`` file in the
working directory, or explicit keyword arguments (the CLI passes its options
this way). The service principal fields additionally accept the standard
``AZURE_TENANT_ID`` / ``AZURE_CLIENT_ID`` / ``AZURE_CLIENT_SECRET`` names so
CI pipelines that already export them need no extra mapping.

Tags:
    configuration, settings, pydantic, caching, validation
"""

from __future__ import annotations

import json
from enum import Enum
from typing import Annotated

from pydantic import AliasChoices, Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

DEFAULT_TABLES = ["OTELLogs", "OTELMetrics", "OTELTraces"]


class SyncMode(str, Enum):
    """How table definitions reach the database."""

    DIRECT = "direct"  # reconciler creates tables itself
    GIT = "git"  # workspace Git integration delivers them; existence-only


class FabricDeploySettings(BaseSettings):
    """fabric-deploy configuration.

    All fields can be set via ``FABRIC_DEPLOY_*`` environment variables (e.g.
    ``FABRIC_DEPLOY_GATE_THRESHOLD=4``) or through a ``.env`` file.
    """

    model_config = SettingsConfigDict(
        env_prefix="FABRIC_DEPLOY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # ── Target resources ─────────────────────────────────────────
    workspace_name: str = Field(default="fabric-otel-workspace")
    database_name: str = Field(default="otelobservabilitydb")
    capacity_id: str | None = Field(default=None, description="Capacity assigned to a created workspace")
    expected_tables: Annotated[list[str], NoDecode] = Field(default_factory=lambda: list(DEFAULT_TABLES))
    manage_workspace: bool = Field(default=True, description="Create the workspace when missing")
    sync_mode: SyncMode = Field(default=SyncMode.DIRECT)

    # ── Endpoints ────────────────────────────────────────────────
    api_base_url: str = Field(default="https://api.fabric.microsoft.com")
    api_scope: str = Field(default="https://api.fabric.microsoft.com/.default")
    login_base_url: str = Field(default="https://login.microsoftonline.com")
    kusto_query_uri: str | None = Field(
        default=None, description="Override the query URI discovered from the database"
    )
    kusto_scope: str = Field(default="https://kusto.kusto.windows.net/.default")
    eventhub_namespace: str | None = Field(default=None)
    eventhub_name: str | None = Field(default=None)
    eventhub_scope: str = Field(default="https://eventhubs.azure.net/.default")

    # ── Authentication ───────────────────────────────────────────
    tenant_id: str | None = Field(
        default=None,
        validation_alias=AliasChoices("FABRIC_DEPLOY_TENANT_ID", "AZURE_TENANT_ID"),
    )
    client_id: str | None = Field(
        default=None,
        validation_alias=AliasChoices("FABRIC_DEPLOY_CLIENT_ID", "AZURE_CLIENT_ID"),
    )
    client_secret: SecretStr | None = Field(
        default=None,
        validation_alias=AliasChoices("FABRIC_DEPLOY_CLIENT_SECRET", "AZURE_CLIENT_SECRET"),
    )
    access_token: SecretStr | None = Field(
        default=None, description="Pre-issued control-plane token offered as the cached session"
    )
    prefer_cached: bool = Field(default=True)
    allow_delegated: bool = Field(default=True)
    allow_interactive: bool = Field(default=True)
    interactive_timeout_seconds: float | None = Field(
        default=None, description="None waits until the device code expires or the run is cancelled"
    )
    interactive_client_id: str = Field(
        default="04b07795-8ddb-461a-bbee-02f9e1bf7b46",
        description="Public client used for the device-code flow (Azure CLI app id)",
    )

    # ── Reconciler ───────────────────────────────────────────────
    request_timeout_seconds: float = Field(default=30.0, gt=0)
    max_attempts: int = Field(default=3, ge=1)
    backoff_base_seconds: float = Field(default=2.0, ge=0)
    backoff_max_seconds: float = Field(default=30.0, ge=0)
    max_workers: int = Field(default=8, ge=1)

    # ── Verification ─────────────────────────────────────────────
    gate_threshold: int = Field(default=6, ge=0)
    poll_interval_seconds: float = Field(default=10.0, gt=0)
    poll_timeout_seconds: float = Field(default=300.0, gt=0)
    query_threshold_seconds: float = Field(default=10.0, gt=0)
    run_deadline_seconds: float | None = Field(default=None, description="Overall budget for one invocation")

    # ── Output / logging ─────────────────────────────────────────
    output_dir: str = Field(default="test-results")
    log_level: str = Field(default="INFO")
    log_format: str | None = Field(default=None, description="json | console (auto-detected when unset)")

    @field_validator("expected_tables", mode="before")
    @classmethod
    def _split_tables(cls, value: object) -> object:
        if isinstance(value, str):
            if value.strip().startswith("["):
                return json.loads(value)
            return [part.strip() for part in value.split(",") if part.strip()]
        return value

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, value: str) -> str:
        return value.upper()

    @model_validator(mode="after")
    def _validate_credentials(self) -> FabricDeploySettings:
        """A client secret without its client id is almost always a typo."""
        if self.client_secret is not None and not self.client_id:
            raise ValueError("client_secret is set but client_id is missing")
        return self

    # ── Derived properties ───────────────────────────────────────

    @property
    def has_explicit_credentials(self) -> bool:
        return bool(self.tenant_id and self.client_id and self.client_secret)

    @property
    def has_eventhub(self) -> bool:
        return bool(self.eventhub_namespace and self.eventhub_name)

    @property
    def tables_managed(self) -> bool:
        return self.sync_mode == SyncMode.DIRECT


# ── Settings factory with caching ────────────────────────────────────────

_settings_cache: dict[str, FabricDeploySettings] = {}


def get_settings(*, _force_reload: bool = False, **overrides: object) -> FabricDeploySettings:
    """Load, validate, and cache a :class:`FabricDeploySettings` instance.

    Keyword overrides (non-``None`` values only) take precedence over the
    environment; each distinct override set is cached separately.
    """
    overrides = {key: value for key, value in overrides.items() if value is not None}
    cache_key = repr(sorted(overrides.items()))

    if not _force_reload and cache_key in _settings_cache:
        return _settings_cache[cache_key]

    settings = FabricDeploySettings(**overrides)  # type: ignore[arg-type]
    _settings_cache[cache_key] = settings
    return settings


def clear_settings_cache() -> None:
    """Clear the settings cache (useful for tests)."""
    _settings_cache.clear()


__all__ = [
    "DEFAULT_TABLES",
    "FabricDeploySettings",
    "SyncMode",
    "clear_settings_cache",
    "get_settings",
]
