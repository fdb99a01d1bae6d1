"""
Resource reconciler.

Drives a declared topology to convergence: every node ends in ``Exists``,
``Created`` or ``Failed``, and only ``create`` calls mutate anything.

Manifesto:
    Provisioning scripts that "create, and ignore the error if it is already
    there" cannot tell a benign race from a real failure, and re-running them
    is a gamble. The reconciler asks first, creates only what is missing,
    and sorts every failure into a typed class so a second run against a
    converged environment performs zero creates.

Algorithm:
    ::

        converge(node, parent_id):
            Checking ── check_exists ──► found ─────────────► Exists
                                 │
                                 ├── not found, create=False ─► Failed (Fatal)
                                 │
                                 └── Creating ── create ─────► Created
                                                  │  AlreadyExists ► Exists
                                                  │  Transient x N ► Failed (Transient)
                                                  │  Fatal ───────► Failed (Fatal)
            available? ── children in parallel (bounded pool)
            failed?    ── every descendant ► Failed ("parent unavailable"),
                          no calls made for them

    Transient failures are retried with exponential backoff on both the
    existence check and the create. ``AuthError`` aborts the whole run;
    siblings already in flight finish their current call, nothing new
    starts.

Related Modules:
    - :mod:`fabric_deploy.topology`: the descriptor tree
    - :mod:`fabric_deploy.reconcile.report`: the result value
    - :mod:`fabric_deploy.core.retry`: bounded backoff

Tags:
    reconciler, idempotent, convergence, thread-pool, retry
"""

from __future__ import annotations

import contextvars
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any, Callable, TypeVar

from fabric_deploy.control_plane.protocol import ControlPlane, Lookup
from fabric_deploy.core.cancellation import CancellationToken
from fabric_deploy.core.errors import (
    AlreadyExistsError,
    AuthError,
    CreationDisabledError,
    DeployError,
    ErrorClass,
    RunCancelledError,
    classify_error,
)
from fabric_deploy.core.logging import LogContext, get_logger
from fabric_deploy.core.retry import ExponentialBackoff, RetryContext, RetryStrategy
from fabric_deploy.reconcile.report import ConvergenceReport
from fabric_deploy.topology.model import ResourceNode, ResourceState

logger = get_logger(__name__)

T = TypeVar("T")

PARENT_UNAVAILABLE = "parent unavailable"


def _describe(error: Exception) -> str:
    return f"{type(error).__name__}: {error}"


class Reconciler:
    """Converges a ``ResourceNode`` tree against a ``ControlPlane``.

    Parameters
    ----------
    control_plane
        Adapter used for existence checks and creates.
    retry_strategy
        Backoff for transient failures (default: 3 attempts).
    max_workers
        Upper bound on sibling parallelism; each level uses
        ``min(max_workers, len(siblings))`` threads.
    cancel
        Run-wide cancellation token.
    """

    def __init__(
        self,
        control_plane: ControlPlane,
        *,
        retry_strategy: RetryStrategy | None = None,
        max_workers: int = 8,
        cancel: CancellationToken | None = None,
        run_id: str | None = None,
    ):
        self.control_plane = control_plane
        self.retry_strategy = retry_strategy or ExponentialBackoff(max_attempts=3)
        self.max_workers = max(1, max_workers)
        self.cancel = cancel or CancellationToken()
        self.run_id = run_id or uuid.uuid4().hex[:12]
        self._abort = threading.Event()
        self._abort_error: DeployError | None = None
        self._abort_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def converge(self, root: ResourceNode) -> ConvergenceReport:
        """Converge ``root`` and its subtree; always returns a report."""
        root.reset()
        self._abort.clear()
        self._abort_error = None
        report = ConvergenceReport(run_id=self.run_id)

        with LogContext(run_id=self.run_id):
            logger.info("reconcile.started", root=root.path, nodes=sum(1 for _ in root.walk()))
            try:
                self._converge_node(root, None)
            except (AuthError, RunCancelledError) as e:
                self._set_abort(e)

            if self._abort_error is not None:
                self._record_abort(report, root, self._abort_error)

            report.record_tree(root)
            report.mark_complete()
            logger.info(
                "reconcile.complete",
                created=report.created,
                existing=report.existing,
                failed=report.failed,
                converged=report.converged,
            )
        return report

    def abandon(self, root: ResourceNode, error: DeployError) -> ConvergenceReport:
        """Report for a run that never started, e.g. because no session resolved."""
        root.reset()
        report = ConvergenceReport(run_id=self.run_id)
        with LogContext(run_id=self.run_id):
            self._record_abort(report, root, error)
            report.record_tree(root)
            report.mark_complete()
        return report

    def _record_abort(self, report: ConvergenceReport, root: ResourceNode, error: DeployError) -> None:
        error_class = classify_error(error)
        report.aborted = error_class
        report.abort_reason = error.message
        self._fail_unfinished(root, error_class, f"run aborted: {error.message}")
        logger.error("reconcile.aborted", error_class=error_class.value, reason=error.message)

    # ------------------------------------------------------------------
    # Per-node convergence
    # ------------------------------------------------------------------

    def _converge_node(self, node: ResourceNode, parent_id: str | None) -> None:
        if self._abort.is_set():
            return
        if self.cancel.cancelled:
            raise RunCancelledError(self.cancel.reason or "cancelled")

        with LogContext(node=node.path):
            node.transition(ResourceState.CHECKING)
            try:
                lookup: Lookup = self._with_retry(
                    self.control_plane.check_exists, node.kind, node.name, parent_id
                )
            except (AuthError, RunCancelledError):
                raise
            except DeployError as e:
                self._fail(node, classify_error(e), f"existence check failed: {e.message}")
                return
            except Exception as e:
                self._fail(node, classify_error(e), f"existence check failed: {_describe(e)}")
                return

            if lookup.found:
                node.resource_id = lookup.id
                node.transition(ResourceState.EXISTS)
                logger.info("node.exists", resource_id=lookup.id)
            elif not node.create:
                disabled = CreationDisabledError("not found and creation disabled")
                self._fail(node, classify_error(disabled), disabled.message)
                return
            else:
                if not self._create(node, parent_id):
                    return

        self._converge_children(node)

    def _create(self, node: ResourceNode, parent_id: str | None) -> bool:
        node.transition(ResourceState.CREATING)
        definition: dict[str, Any] = dict(node.definition)
        if node.description and "description" not in definition:
            definition["description"] = node.description

        try:
            resource_id = self._with_retry(
                self.control_plane.create, node.kind, node.name, parent_id, definition
            )
        except AlreadyExistsError as e:
            return self._absorb_race(node, parent_id, e)
        except (AuthError, RunCancelledError):
            raise
        except DeployError as e:
            self._fail(node, classify_error(e), f"create failed: {e.message}")
            return False
        except Exception as e:
            self._fail(node, classify_error(e), f"create failed: {_describe(e)}")
            return False

        node.resource_id = resource_id
        node.transition(ResourceState.CREATED)
        logger.info("node.created", resource_id=resource_id)
        return True

    def _absorb_race(self, node: ResourceNode, parent_id: str | None, error: AlreadyExistsError) -> bool:
        """A concurrent actor created the node first; adopt it."""
        resource_id = error.resource_id
        if resource_id is None:
            try:
                lookup = self._with_retry(
                    self.control_plane.check_exists, node.kind, node.name, parent_id
                )
            except (AuthError, RunCancelledError):
                raise
            except DeployError as e:
                self._fail(node, classify_error(e), f"exists but lookup failed: {e.message}")
                return False
            except Exception as e:
                self._fail(node, classify_error(e), f"exists but lookup failed: {_describe(e)}")
                return False
            resource_id = lookup.id
        node.resource_id = resource_id
        node.transition(ResourceState.EXISTS)
        logger.info("node.create_race_absorbed", resource_id=resource_id)
        return True

    def _converge_children(self, node: ResourceNode) -> None:
        children = node.children
        if not children:
            return

        workers = min(self.max_workers, len(children))
        if workers == 1:
            for child in children:
                self._converge_node(child, node.resource_id)
            return

        errors: list[BaseException] = []
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="reconcile") as pool:
            futures = [
                pool.submit(contextvars.copy_context().run, self._converge_node, child, node.resource_id)
                for child in children
            ]
            for future in as_completed(futures):
                exc = future.exception()
                if exc is None:
                    continue
                if isinstance(exc, (AuthError, RunCancelledError)):
                    self._set_abort(exc)
                else:
                    errors.append(exc)

        if errors:
            raise errors[0]

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _with_retry(self, func: Callable[..., T], *args: Any) -> T:
        def on_retry(attempt: int, error: Exception, delay: float) -> None:
            logger.warning(
                "node.transient_retry",
                attempt=attempt,
                delay=round(delay, 2),
                error=str(error),
            )

        return RetryContext(self.retry_strategy, cancel=self.cancel, on_retry=on_retry).run(func, *args)

    def _fail(self, node: ResourceNode, error_class: ErrorClass, message: str) -> None:
        node.fail(error_class, message)
        logger.error("node.failed", error_class=error_class.value, message=message)
        pruned = 0
        for descendant in node.descendants():
            if descendant.state == ResourceState.UNKNOWN:
                descendant.fail(ErrorClass.FATAL, f"{PARENT_UNAVAILABLE}: {node.path}")
                pruned += 1
        if pruned:
            logger.warning("node.subtree_pruned", pruned=pruned)

    def _set_abort(self, error: BaseException) -> None:
        with self._abort_lock:
            if self._abort_error is None and isinstance(error, DeployError):
                self._abort_error = error
            elif isinstance(error, AuthError) and not isinstance(self._abort_error, AuthError):
                # auth failure outranks a cancellation seen first
                self._abort_error = error
            self._abort.set()

    @staticmethod
    def _fail_unfinished(root: ResourceNode, error_class: ErrorClass, message: str) -> None:
        for node in root.walk():
            if not node.state.is_terminal:
                node.fail(error_class, message)


__all__ = ["PARENT_UNAVAILABLE", "Reconciler"]
