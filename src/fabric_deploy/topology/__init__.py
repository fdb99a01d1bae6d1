"""Declarative resource topology (workspace -> database -> tables)."""

from fabric_deploy.topology.loader import OTEL_TABLE_SCHEMAS, build_topology, load_topology, parse_topology
from fabric_deploy.topology.model import (
    Column,
    InvalidTransitionError,
    ResourceKind,
    ResourceNode,
    ResourceState,
)

__all__ = [
    "OTEL_TABLE_SCHEMAS",
    "Column",
    "InvalidTransitionError",
    "ResourceKind",
    "ResourceNode",
    "ResourceState",
    "build_topology",
    "load_topology",
    "parse_topology",
]
