"""fabric-deploy: provision and verify a Fabric OpenTelemetry observability stack.

fabric-deploy converges a small resource hierarchy on Microsoft Fabric
(workspace, KQL database, OTEL tables) and then runs an ordered set of
verification stages against it, producing JUnit, JSON and Markdown reports
that CI pipelines consume.

Key Concepts:
    AuthenticationResolver: Ordered fallback over credential strategies
        (cached token, service principal, ``az`` CLI, device code). The
        first valid session wins and is reused until it is rejected.
    ResourceNode: One declared resource. Nodes form a tree; a child is only
        checked or created once its parent is available.
    Reconciler: Check-then-create convergence, siblings in parallel,
        transient errors retried, conflicts absorbed as success.
    GatedTestRunner: Runs verification stages in order; slow stages only
        run once enough earlier stages passed.
    RunSummary: Aggregated outcome rendered as JUnit XML, JSON, a table or
        Markdown.

Typical Usage::

    fabric-deploy reconcile
    fabric-deploy verify --format junit --skip-slow

Programmatic::

    from fabric_deploy.core.settings import get_settings
    from fabric_deploy.topology import build_topology

    root = build_topology(get_settings())
"""

__version__ = "0.1.0"
