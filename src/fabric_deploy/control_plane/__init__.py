"""Control-plane boundary and the Fabric REST adapter."""

from fabric_deploy.control_plane.protocol import ControlPlane, EventPublisher, Lookup, QueryClient

__all__ = ["ControlPlane", "EventPublisher", "Lookup", "QueryClient"]
