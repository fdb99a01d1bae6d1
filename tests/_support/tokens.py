"""Cancellation tokens and token helpers for tests that must not sleep."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

from fabric_deploy.auth.resolver import AuthenticationResolver
from fabric_deploy.auth.session import AuthStrategyKind, Session
from fabric_deploy.auth.strategies import AuthStrategy
from fabric_deploy.core.cancellation import CancellationToken


class InstantToken(CancellationToken):
    """``wait()`` returns at once; optionally cancels after ``cancel_after`` waits."""

    def __init__(self, cancel_after: int | None = None) -> None:
        super().__init__()
        self.cancel_after = cancel_after
        self.waits: list[float] = []

    def wait(self, seconds: float) -> bool:
        self.waits.append(seconds)
        if self.cancel_after is not None and len(self.waits) >= self.cancel_after:
            self.cancel("test cancel")
        return self.cancelled


def make_session(
    token: str = "tok",
    *,
    strategy: AuthStrategyKind = AuthStrategyKind.EXPLICIT_CREDENTIAL,
    scope: str = "https://api.fabric.microsoft.com/.default",
    expires_in: float | None = 3600,
) -> Session:
    expires_at = datetime.now(UTC) + timedelta(seconds=expires_in) if expires_in is not None else None
    return Session(identity="tester", strategy=strategy, access_token=token, scope=scope, expires_at=expires_at)


class CountingStrategy(AuthStrategy):
    """Issues ``tok-1``, ``tok-2``, ... (one per ``acquire``) for any scope."""

    kind = AuthStrategyKind.EXPLICIT_CREDENTIAL

    def __init__(self, prefix: str = "tok") -> None:
        self.prefix = prefix
        self.scopes: list[str] = []

    def acquire(self, scope: str) -> Session:
        self.scopes.append(scope)
        return make_session(f"{self.prefix}-{len(self.scopes)}", strategy=self.kind, scope=scope)


def make_resolver(strategy: AuthStrategy | None = None, scope: str = "https://api.fabric.microsoft.com/.default"):
    """Resolver over a single strategy, no probe, with its own store."""
    return AuthenticationResolver([strategy or CountingStrategy()], scope=scope)
