"""
Shared pytest fixtures for fabric-deploy tests.

This module provides:
- Environment isolation (no ambient ``FABRIC_DEPLOY_*`` / ``AZURE_*`` values,
  no ``.env`` from the developer's checkout)
- Settings cache reset between tests
- Quiet structured logging
- The default OTEL topology
"""

from __future__ import annotations

import os
from typing import Generator

import pytest

from fabric_deploy.core.logging import configure_logging
from fabric_deploy.core.settings import FabricDeploySettings, clear_settings_cache, get_settings
from fabric_deploy.topology.loader import build_topology
from fabric_deploy.topology.model import ResourceNode

_ENV_PREFIXES = ("FABRIC_DEPLOY_", "AZURE_")


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path) -> Generator[None, None, None]:
    """Run every test in an empty directory with a clean environment."""
    for key in list(os.environ):
        if key.startswith(_ENV_PREFIXES) or key == "GITHUB_STEP_SUMMARY":
            monkeypatch.delenv(key, raising=False)
    monkeypatch.chdir(tmp_path)
    clear_settings_cache()
    configure_logging(level="WARNING", format="json", force=True)
    yield
    clear_settings_cache()


@pytest.fixture
def settings() -> FabricDeploySettings:
    """Default settings with fast polling and no retry backoff."""
    return get_settings(
        poll_interval_seconds=0.01,
        poll_timeout_seconds=0.2,
        backoff_base_seconds=0,
    )


@pytest.fixture
def otel_topology(settings: FabricDeploySettings) -> ResourceNode:
    """Workspace -> otelobservabilitydb -> OTELLogs/OTELMetrics/OTELTraces."""
    return build_topology(settings)

