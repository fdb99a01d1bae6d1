"""Topology convergence."""

from fabric_deploy.reconcile.reconciler import Reconciler
from fabric_deploy.reconcile.report import ConvergenceReport, NodeError, NodeReport

__all__ = ["ConvergenceReport", "NodeError", "NodeReport", "Reconciler"]
