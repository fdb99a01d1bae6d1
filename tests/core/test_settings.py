"""Tests for fabric_deploy.core.settings."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from fabric_deploy.core.settings import (
    DEFAULT_TABLES,
    FabricDeploySettings,
    SyncMode,
    clear_settings_cache,
    get_settings,
)


class TestDefaults:
    def test_defaults(self):
        s = FabricDeploySettings()
        assert s.workspace_name == "fabric-otel-workspace"
        assert s.database_name == "otelobservabilitydb"
        assert s.expected_tables == DEFAULT_TABLES
        assert s.sync_mode == SyncMode.DIRECT
        assert s.gate_threshold == 6
        assert s.poll_interval_seconds == 10.0
        assert s.poll_timeout_seconds == 300.0
        assert s.query_threshold_seconds == 10.0
        assert s.max_workers == 8
        assert s.output_dir == "test-results"
        assert not s.has_explicit_credentials
        assert not s.has_eventhub
        assert s.tables_managed


class TestEnvironment:
    def test_prefixed_env(self, monkeypatch):
        monkeypatch.setenv("FABRIC_DEPLOY_GATE_THRESHOLD", "4")
        monkeypatch.setenv("FABRIC_DEPLOY_SYNC_MODE", "git")
        s = FabricDeploySettings()
        assert s.gate_threshold == 4
        assert s.sync_mode == SyncMode.GIT
        assert not s.tables_managed

    def test_azure_credential_aliases(self, monkeypatch):
        monkeypatch.setenv("AZURE_TENANT_ID", "tenant")
        monkeypatch.setenv("AZURE_CLIENT_ID", "client")
        monkeypatch.setenv("AZURE_CLIENT_SECRET", "s3cr3t-value")
        s = FabricDeploySettings()
        assert s.has_explicit_credentials
        assert s.client_secret.get_secret_value() == "s3cr3t-value"
        assert "s3cr3t-value" not in repr(s)

    def test_tables_from_comma_list(self, monkeypatch):
        monkeypatch.setenv("FABRIC_DEPLOY_EXPECTED_TABLES", "A, B ,C")
        assert FabricDeploySettings().expected_tables == ["A", "B", "C"]

    def test_tables_from_json_list(self, monkeypatch):
        monkeypatch.setenv("FABRIC_DEPLOY_EXPECTED_TABLES", '["X", "Y"]')
        assert FabricDeploySettings().expected_tables == ["X", "Y"]

    def test_dotenv_file(self, tmp_path):
        (tmp_path / ".env").write_text("FABRIC_DEPLOY_DATABASE_NAME=fromdotenv\n")
        assert FabricDeploySettings().database_name == "fromdotenv"

    def test_log_level_upper_cased(self):
        assert FabricDeploySettings(log_level="debug").log_level == "DEBUG"


class TestValidation:
    def test_secret_without_client_id_rejected(self):
        with pytest.raises(ValidationError, match="client_id"):
            FabricDeploySettings(client_secret="s")

    def test_negative_gate_rejected(self):
        with pytest.raises(ValidationError):
            FabricDeploySettings(gate_threshold=-1)

    def test_unknown_sync_mode_rejected(self):
        with pytest.raises(ValidationError):
            FabricDeploySettings(sync_mode="ftp")


class TestGetSettings:
    def test_cached_per_override_set(self):
        a = get_settings()
        assert get_settings() is a
        b = get_settings(gate_threshold=2)
        assert b is not a
        assert b.gate_threshold == 2
        assert get_settings(gate_threshold=2) is b

    def test_none_overrides_ignored(self):
        assert get_settings(workspace_name=None) is get_settings()

    def test_clear_cache(self):
        a = get_settings()
        clear_settings_cache()
        assert get_settings() is not a

    def test_force_reload(self):
        a = get_settings()
        assert get_settings(_force_reload=True) is not a
