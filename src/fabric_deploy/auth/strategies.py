"""
Authentication strategies.

Each strategy knows one way of obtaining an access token for a scope and
reports *why* it could not, as a ``StrategyError`` carrying one of three
failure classes:

- ``NotConfigured``: the strategy has nothing to work with (no credentials,
  no cached session)
- ``Rejected``: the identity provider refused (bad secret, expired login,
  declined device code)
- ``Unavailable``: the mechanism itself is missing or unreachable (no ``az``
  binary, network failure)

The token protocols themselves are azure-identity's credentials; a strategy
only builds the credential, calls ``get_token`` and maps its exceptions.

Architecture:
    ::

        ┌──────────────────────────────────────────────────────────┐
        │                  AuthenticationResolver                  │
        │   tries strategies in order, first probed session wins   │
        └──────────────────────────────────────────────────────────┘
                 │            │              │              │
                 ▼            ▼              ▼              ▼
          CachedToken  ExplicitCredential  Delegated   InteractiveBrowser
          (store or    (ClientSecret-      Exchange    (DeviceCode-
           preset)      Credential)        (AzureCli-   Credential,
                                           Credential)  cancellable wait)

Related Modules:
    - :mod:`fabric_deploy.auth.resolver`: runs the chain
    - :mod:`fabric_deploy.auth.session`: Session / SessionStore

Tags:
    authentication, azure-identity, device-code, strategy-chain
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from datetime import UTC, datetime
from typing import Any, Callable

from azure.core.credentials import TokenCredential
from azure.core.exceptions import ClientAuthenticationError, ServiceRequestError
from azure.identity import (
    AzureCliCredential,
    ClientSecretCredential,
    CredentialUnavailableError,
    DeviceCodeCredential,
)

from fabric_deploy.auth.session import AuthStrategyKind, Session, SessionStore
from fabric_deploy.core.cancellation import CancellationToken
from fabric_deploy.core.errors import RunCancelledError, StrategyError, StrategyFailureClass
from fabric_deploy.core.logging import get_logger
from fabric_deploy.core.settings import FabricDeploySettings

logger = get_logger(__name__)

# How often the interactive wait looks at the cancellation token
CANCEL_POLL_SECONDS = 0.5


def _first_line(error: Exception) -> str:
    text = str(error).strip()
    return text.splitlines()[0] if text else type(error).__name__


# =============================================================================
# Strategy base
# =============================================================================


class AuthStrategy(ABC):
    """One way of obtaining a session for a scope."""

    kind: AuthStrategyKind

    @property
    def name(self) -> str:
        return self.kind.value

    @abstractmethod
    def acquire(self, scope: str) -> Session:
        """Return a session for ``scope`` or raise ``StrategyError``."""
        ...

    def _session(self, token: str, scope: str, expires_at: datetime | None, identity: str) -> Session:
        return Session(
            identity=identity,
            strategy=self.kind,
            access_token=token,
            scope=scope,
            expires_at=expires_at,
        )


class CredentialStrategy(AuthStrategy):
    """A strategy backed by an azure-identity ``TokenCredential``.

    Subclasses build the credential (once, lazily) and name the identity;
    token acquisition and the exception mapping live here.
    """

    identity = "unknown"

    def __init__(self, credential: TokenCredential | None = None):
        self._credential = credential

    @abstractmethod
    def _build_credential(self) -> TokenCredential: ...

    @property
    def credential(self) -> TokenCredential:
        if self._credential is None:
            self._credential = self._build_credential()
        return self._credential

    def acquire(self, scope: str) -> Session:
        return self._fetch(scope)

    def _fetch(self, scope: str) -> Session:
        try:
            token = self.credential.get_token(scope)
        except CredentialUnavailableError as e:
            raise self._unavailable(e) from e
        except ClientAuthenticationError as e:
            raise StrategyError(StrategyFailureClass.REJECTED, _first_line(e), cause=e) from e
        except ServiceRequestError as e:
            raise StrategyError(
                StrategyFailureClass.UNAVAILABLE, f"token endpoint unreachable: {_first_line(e)}", cause=e
            ) from e

        expires_at = datetime.fromtimestamp(token.expires_on, tz=UTC) if token.expires_on else None
        return self._session(token.token, scope, expires_at, identity=self.identity)

    def _unavailable(self, error: CredentialUnavailableError) -> StrategyError:
        return StrategyError(StrategyFailureClass.UNAVAILABLE, _first_line(error), cause=error)


class CachedTokenStrategy(AuthStrategy):
    """Reuse the session already held by the store, or a pre-issued token.

    A pre-issued token (``FABRIC_DEPLOY_ACCESS_TOKEN``) is only offered once:
    after it has been invalidated the store keeps the dead session and this
    strategy reports ``Rejected`` so the chain moves on.
    """

    kind = AuthStrategyKind.CACHED_TOKEN

    def __init__(self, store: SessionStore, preset_token: str | None = None, preset_scope: str = ""):
        self._store = store
        self._preset_token = preset_token
        self._preset_scope = preset_scope

    def acquire(self, scope: str) -> Session:
        current = self._store.peek()
        if current is not None:
            if current.scope and current.scope != scope:
                raise StrategyError(
                    StrategyFailureClass.NOT_CONFIGURED, f"cached session is for {current.scope}"
                )
            if not current.valid:
                raise StrategyError(StrategyFailureClass.REJECTED, "cached session was invalidated")
            if current.is_expired():
                raise StrategyError(StrategyFailureClass.REJECTED, "cached session expired")
            return current

        if self._preset_token and (not self._preset_scope or self._preset_scope == scope):
            return self._session(self._preset_token, scope, None, identity="preset-token")

        raise StrategyError(StrategyFailureClass.NOT_CONFIGURED, "no cached session")


class ExplicitCredentialStrategy(CredentialStrategy):
    """Service principal client secret (``ClientSecretCredential``)."""

    kind = AuthStrategyKind.EXPLICIT_CREDENTIAL

    def __init__(
        self,
        tenant_id: str | None,
        client_id: str | None,
        client_secret: str | None,
        *,
        authority: str | None = None,
        credential: TokenCredential | None = None,
    ):
        super().__init__(credential)
        self.tenant_id = tenant_id
        self.client_id = client_id
        self._client_secret = client_secret
        self.authority = authority
        self.identity = f"app:{client_id}"

    def _build_credential(self) -> TokenCredential:
        kwargs: dict[str, Any] = {}
        if self.authority:
            kwargs["authority"] = self.authority
        return ClientSecretCredential(
            tenant_id=self.tenant_id,
            client_id=self.client_id,
            client_secret=self._client_secret,
            **kwargs,
        )

    def acquire(self, scope: str) -> Session:
        missing = [
            name
            for name, value in (
                ("tenant_id", self.tenant_id),
                ("client_id", self.client_id),
                ("client_secret", self._client_secret),
            )
            if not value
        ]
        if missing:
            raise StrategyError(
                StrategyFailureClass.NOT_CONFIGURED, f"missing {', '.join(missing)}"
            )
        return self._fetch(scope)


class DelegatedExchangeStrategy(CredentialStrategy):
    """Borrow a token from an already signed-in Azure CLI (``AzureCliCredential``)."""

    kind = AuthStrategyKind.DELEGATED_EXCHANGE
    identity = "az-cli"

    def __init__(self, *, timeout: float = 30.0, credential: TokenCredential | None = None):
        super().__init__(credential)
        self.timeout = timeout

    def _build_credential(self) -> TokenCredential:
        return AzureCliCredential(process_timeout=int(self.timeout))

    def _unavailable(self, error: CredentialUnavailableError) -> StrategyError:
        # A missing login is "nothing to work with", a missing binary is not
        if "az login" in str(error):
            return StrategyError(StrategyFailureClass.NOT_CONFIGURED, "no Azure CLI login", cause=error)
        return super()._unavailable(error)


class InteractiveBrowserStrategy(CredentialStrategy):
    """Device-code flow; the operator signs in from a browser.

    ``DeviceCodeCredential`` blocks while it waits for the operator, so the
    call runs on a helper thread and this strategy watches the run's
    cancellation token meanwhile. The wait is bounded by ``timeout`` (or the
    device code's own lifetime). The credential keeps the sign-in, so later
    scopes do not prompt again.
    """

    kind = AuthStrategyKind.INTERACTIVE_BROWSER
    identity = "interactive"

    def __init__(
        self,
        client_id: str,
        *,
        tenant_id: str | None = None,
        authority: str | None = None,
        timeout: float | None = None,
        cancel: CancellationToken | None = None,
        notify: Callable[[str], None] | None = None,
        credential: TokenCredential | None = None,
    ):
        super().__init__(credential)
        self.client_id = client_id
        self.tenant = tenant_id or "organizations"
        self.authority = authority
        self.timeout = timeout
        self.cancel = cancel or CancellationToken()
        self._notify = notify or (lambda message: logger.warning("auth.device_code", prompt=message))

    def _prompt(self, verification_uri: str, user_code: str, expires_on: datetime) -> None:
        self._notify(f"To sign in, open {verification_uri} and enter the code {user_code}")

    def _build_credential(self) -> TokenCredential:
        kwargs: dict[str, Any] = {"prompt_callback": self._prompt}
        if self.authority:
            kwargs["authority"] = self.authority
        if self.timeout is not None:
            kwargs["timeout"] = int(self.timeout)
        return DeviceCodeCredential(client_id=self.client_id, tenant_id=self.tenant, **kwargs)

    def acquire(self, scope: str) -> Session:
        if self.cancel.cancelled:
            raise RunCancelledError(self.cancel.reason or "cancelled before interactive sign-in")

        outcome: dict[str, Any] = {}
        done = threading.Event()

        def sign_in() -> None:
            try:
                outcome["session"] = self._fetch(scope)
            except Exception as e:  # re-raised on the waiting thread
                outcome["error"] = e
            finally:
                done.set()

        threading.Thread(target=sign_in, name="device-code-sign-in", daemon=True).start()
        while not done.is_set():
            if self.cancel.wait(CANCEL_POLL_SECONDS):
                raise RunCancelledError(self.cancel.reason or "cancelled during interactive sign-in")

        if "error" in outcome:
            raise outcome["error"]
        return outcome["session"]


# =============================================================================
# Factory
# =============================================================================


def build_strategies(
    settings: FabricDeploySettings,
    store: SessionStore,
    *,
    cancel: CancellationToken | None = None,
    notify: Callable[[str], None] | None = None,
) -> list[AuthStrategy]:
    """Build the fixed-order chain, leaving out strategies disabled by flags."""
    strategies: list[AuthStrategy] = []

    if settings.prefer_cached:
        preset = settings.access_token.get_secret_value() if settings.access_token else None
        strategies.append(CachedTokenStrategy(store, preset_token=preset, preset_scope=settings.api_scope))

    strategies.append(
        ExplicitCredentialStrategy(
            settings.tenant_id,
            settings.client_id,
            settings.client_secret.get_secret_value() if settings.client_secret else None,
            authority=settings.login_base_url,
        )
    )

    if settings.allow_delegated:
        strategies.append(DelegatedExchangeStrategy(timeout=settings.request_timeout_seconds))

    if settings.allow_interactive:
        strategies.append(
            InteractiveBrowserStrategy(
                settings.interactive_client_id,
                tenant_id=settings.tenant_id,
                authority=settings.login_base_url,
                timeout=settings.interactive_timeout_seconds,
                cancel=cancel,
                notify=notify,
            )
        )

    logger.debug("auth.chain_built", strategies=[s.name for s in strategies])
    return strategies


__all__ = [
    "AuthStrategy",
    "CachedTokenStrategy",
    "CredentialStrategy",
    "DelegatedExchangeStrategy",
    "ExplicitCredentialStrategy",
    "InteractiveBrowserStrategy",
    "build_strategies",
]
