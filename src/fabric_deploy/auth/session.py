"""Authenticated sessions and the in-memory session store.

A ``Session`` is created by the ``AuthenticationResolver`` and lives only for
one run. When a downstream call fails with an auth-class error the session is
invalidated (``valid`` flips to ``False``), never mutated otherwise, and the
resolver builds a fresh one.

The ``SessionStore`` is the only mutable state shared between reconciler
worker threads, so every read and write goes through one lock.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any


class AuthStrategyKind(str, Enum):
    """Authentication strategies, in the order the resolver tries them."""

    CACHED_TOKEN = "CachedToken"
    EXPLICIT_CREDENTIAL = "ExplicitCredential"
    DELEGATED_EXCHANGE = "DelegatedExchange"
    INTERACTIVE_BROWSER = "InteractiveBrowser"


# Tokens this close to expiry are treated as already expired
EXPIRY_SKEW = timedelta(seconds=60)


@dataclass
class Session:
    """An authenticated identity for the control plane."""

    identity: str
    strategy: AuthStrategyKind
    access_token: str = field(repr=False)
    scope: str = ""
    expires_at: datetime | None = None
    valid: bool = True
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        now = now or datetime.now(UTC)
        return now + EXPIRY_SKEW >= self.expires_at

    @property
    def usable(self) -> bool:
        return self.valid and not self.is_expired()

    def invalidate(self) -> None:
        self.valid = False

    def authorization_header(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.access_token}"}

    def to_dict(self) -> dict[str, Any]:
        """Public view of the session; the token itself is never included."""
        return {
            "identity": self.identity,
            "strategy": self.strategy.value,
            "scope": self.scope,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "valid": self.valid,
        }


class SessionStore:
    """Thread-safe holder of the current session for one run."""

    def __init__(self, session: Session | None = None) -> None:
        self._lock = threading.Lock()
        self._session = session

    def get(self) -> Session | None:
        """Current session if it is still usable."""
        with self._lock:
            if self._session is not None and self._session.usable:
                return self._session
            return None

    def peek(self) -> Session | None:
        """Current session regardless of validity."""
        with self._lock:
            return self._session

    def set(self, session: Session) -> None:
        with self._lock:
            self._session = session

    def invalidate(self, session: Session | None = None) -> bool:
        """Invalidate ``session`` (or the current one).

        Returns False when ``session`` is no longer the stored session, i.e.
        another thread has already replaced it.
        """
        with self._lock:
            if self._session is None:
                return False
            if session is not None and session is not self._session:
                return False
            self._session.invalidate()
            return True

    def clear(self) -> None:
        with self._lock:
            self._session = None


__all__ = ["AuthStrategyKind", "EXPIRY_SKEW", "Session", "SessionStore"]
