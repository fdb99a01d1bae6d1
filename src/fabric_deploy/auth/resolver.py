"""
Authentication resolver.

Turns configuration into exactly one usable control-plane session by walking
a fixed-order chain of strategies, and re-resolves at most once per logical
operation when a downstream call reports the session as rejected.

Manifesto:
    Credentials come from many places: a token already held by this run, a
    service principal in CI, the operator's Azure CLI login, or a browser.
    Callers should not care which one won. They ask for a session, use it,
    and hand back any auth failure; the resolver decides whether a fresh
    session can be had.

Resolution:
    ::

        strategies = [Cached, Explicit, Delegated, Interactive]
        for strategy in strategies:
            session = strategy.acquire(scope)   # StrategyError -> record, next
            probe(session)                      # False -> Rejected, next
            store.set(session); return session
        raise AuthResolutionError(failures)     # lists every reason

Re-authentication:
    ``call_with_reauth(fn)`` calls ``fn(session)``. On an ``AuthError`` the
    session is invalidated, the chain runs again (the cached strategy now
    reports ``Rejected``) and ``fn`` is called once more. A second auth
    failure propagates and aborts the run.

Related Modules:
    - :mod:`fabric_deploy.auth.strategies`
    - :mod:`fabric_deploy.control_plane.fabric`: supplies the probe

Tags:
    authentication, resolver, fallback-chain, re-authentication
"""

from __future__ import annotations

import threading
from typing import Callable, TypeVar

from fabric_deploy.auth.session import AuthStrategyKind, Session, SessionStore
from fabric_deploy.auth.strategies import AuthStrategy
from fabric_deploy.core.cancellation import CancellationToken
from fabric_deploy.core.errors import (
    AuthError,
    AuthResolutionError,
    DeployError,
    StrategyError,
    StrategyFailure,
    StrategyFailureClass,
    TransientError,
)
from fabric_deploy.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

Probe = Callable[[Session], bool]


class AuthenticationResolver:
    """Resolve, cache and re-resolve the control-plane session for one run."""

    def __init__(
        self,
        strategies: list[AuthStrategy],
        *,
        scope: str,
        probe: Probe | None = None,
        store: SessionStore | None = None,
        cancel: CancellationToken | None = None,
    ):
        self.strategies = list(strategies)
        self.scope = scope
        self.store = store or SessionStore()
        self.cancel = cancel
        self._probe = probe
        self._lock = threading.RLock()
        self._failures: list[StrategyFailure] = []
        self._scoped: dict[str, Session] = {}

    @property
    def failures(self) -> list[StrategyFailure]:
        """Per-strategy failures recorded by the most recent resolution."""
        return list(self._failures)

    def current(self) -> Session | None:
        return self.store.get()

    def set_probe(self, probe: Probe) -> None:
        self._probe = probe

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def resolve(self) -> Session:
        """Return a probed session, trying strategies in priority order.

        Raises:
            AuthResolutionError: every strategy failed; ``failures`` lists why
            RunCancelledError: the run was cancelled while waiting
        """
        with self._lock:
            return self._resolve_locked()

    def _resolve_locked(self) -> Session:
        failures: list[StrategyFailure] = []
        self._failures = failures

        for strategy in self.strategies:
            if self.cancel is not None:
                self.cancel.raise_if_cancelled()

            try:
                session = strategy.acquire(self.scope)
            except StrategyError as e:
                self._record(failures, strategy, e.failure_class, e.message)
                continue

            if session is not self.store.peek():
                failure = self._check_probe(session)
                if failure is not None:
                    self._record(failures, strategy, *failure)
                    continue

            self.store.set(session)
            self._scoped = {self.scope: session}
            logger.info(
                "auth.resolved",
                strategy=session.strategy.value,
                identity=session.identity,
                attempted=len(failures) + 1,
            )
            return session

        error = AuthResolutionError(failures)
        logger.error("auth.exhausted", failures=[str(f) for f in failures])
        raise error

    def _check_probe(self, session: Session) -> tuple[StrategyFailureClass, str] | None:
        if self._probe is None:
            return None
        try:
            accepted = self._probe(session)
        except TransientError as e:
            return StrategyFailureClass.UNAVAILABLE, f"probe failed: {e.message}"
        except DeployError as e:
            return StrategyFailureClass.REJECTED, f"probe failed: {e.message}"
        if not accepted:
            return StrategyFailureClass.REJECTED, "session rejected by control-plane probe"
        return None

    @staticmethod
    def _record(
        failures: list[StrategyFailure],
        strategy: AuthStrategy,
        failure_class: StrategyFailureClass,
        reason: str,
    ) -> None:
        failure = StrategyFailure(strategy.name, failure_class, reason)
        failures.append(failure)
        logger.info(
            "auth.strategy_failed",
            strategy=strategy.name,
            failure_class=failure_class.value,
            reason=reason,
        )

    # ------------------------------------------------------------------
    # Invalidation / re-authentication
    # ------------------------------------------------------------------

    def invalidate(self, session: Session | None = None) -> None:
        """Mark ``session`` (or the current one) as rejected downstream."""
        with self._lock:
            if self.store.invalidate(session):
                self._scoped.clear()
                logger.warning("auth.session_invalidated", strategy=(session or self.store.peek()).strategy.value)

    def _reresolve(self, stale: Session) -> Session:
        with self._lock:
            current = self.store.get()
            if current is not None and current is not stale:
                # another worker already replaced it
                return current
            self.invalidate(stale)
            return self._resolve_locked()

    def call_with_reauth(self, fn: Callable[[Session], T]) -> T:
        """Call ``fn(session)``, re-resolving once if it raises ``AuthError``."""
        session = self.current() or self.resolve()
        try:
            return fn(session)
        except AuthResolutionError:
            raise
        except AuthError as e:
            logger.warning("auth.reauth", reason=e.message, strategy=session.strategy.value)
            fresh = self._reresolve(session)
            return fn(fresh)

    # ------------------------------------------------------------------
    # Data-plane tokens
    # ------------------------------------------------------------------

    def token_for(self, scope: str) -> str:
        """Bearer token for another resource.

        The strategy that won the resolution is asked first, then the rest of
        the chain in order.

        These tokens are not probed; a data-plane 401 surfaces as the
        caller's ``AuthError``.
        """
        with self._lock:
            base = self.current() or self._resolve_locked()
            if scope == self.scope:
                return base.access_token

            cached = self._scoped.get(scope)
            if cached is not None and cached.usable:
                return cached.access_token

            reasons: list[str] = []
            for strategy in self._scoped_order(base.strategy):
                try:
                    session = strategy.acquire(scope)
                except StrategyError as e:
                    reasons.append(f"{strategy.name}: {e.message}")
                    continue
                self._scoped[scope] = session
                logger.debug("auth.scoped_token", scope=scope, strategy=strategy.name)
                return session.access_token
            raise AuthError(f"No strategy could issue a token for {scope}: {'; '.join(reasons) or 'none enabled'}")

    def _scoped_order(self, winner: AuthStrategyKind) -> list[AuthStrategy]:
        """The winning strategy first, then the rest of the chain in order."""
        first = [s for s in self.strategies if s.kind == winner]
        return first + [s for s in self.strategies if s.kind != winner]


__all__ = ["AuthenticationResolver", "Probe"]
