"""Authentication: session store, credential strategies and the fallback resolver."""

from fabric_deploy.auth.resolver import AuthenticationResolver
from fabric_deploy.auth.session import AuthStrategyKind, Session, SessionStore
from fabric_deploy.auth.strategies import (
    AuthStrategy,
    CachedTokenStrategy,
    DelegatedExchangeStrategy,
    ExplicitCredentialStrategy,
    InteractiveBrowserStrategy,
    build_strategies,
)

__all__ = [
    "AuthStrategy",
    "AuthStrategyKind",
    "AuthenticationResolver",
    "CachedTokenStrategy",
    "DelegatedExchangeStrategy",
    "ExplicitCredentialStrategy",
    "InteractiveBrowserStrategy",
    "Session",
    "SessionStore",
    "build_strategies",
]
