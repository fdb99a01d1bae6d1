"""
Structured error types for fabric-deploy.

Every failure the orchestrator can observe is mapped onto a small typed
hierarchy. Each error carries the metadata the reconciler, the resolver and
the test runner need to decide what happens next:

- **Category:** What kind of failure (auth, conflict, transient, fatal, ...)
- **Retryable:** Whether a bounded retry with backoff is allowed
- **Retry-after:** Server-suggested delay (``Retry-After`` on HTTP 429)
- **Context:** Resource kind/name, HTTP status, request URL, error code
- **Cause:** The chained underlying exception

Architecture:
    ::

        ┌─────────────────────────────────────────────────────────────────┐
        │                        DeployError                              │
        │  (category, retryable, retry_after, context, cause)             │
        ├─────────────────────────────────────────────────────────────────┤
        │                                                                 │
        │  AuthError            AlreadyExistsError     TransientError     │
        │  (AUTH)               (CONFLICT)             (retryable=True)   │
        │       │                                           │             │
        │  AuthenticationError                        NetworkError        │
        │  AuthResolutionError                        TimeoutError        │
        │                                             RateLimitError      │
        │                                             ServiceUnavailable  │
        │                                                                 │
        │  FatalError           ConfigError           RunCancelledError   │
        │  (FATAL)              (CONFIG)              (CANCELLED)         │
        │       │                    │                                    │
        │  PermissionDenied     InvalidConfigError                        │
        │  QuotaExceeded        TopologyError                             │
        │  InvalidDefinition                                              │
        │  CreationDisabled                                               │
        └─────────────────────────────────────────────────────────────────┘

Propagation policy:
    - ``AlreadyExistsError`` is a benign race: the reconciler treats it
      exactly like a successful existence check.
    - ``TransientError`` is retried a bounded number of times; a recovered
      transient is only logged.
    - ``FatalError`` fails the node and prunes its subtree, siblings continue.
    - ``AuthError`` aborts the whole run once re-resolution has been tried.
    - ``RunCancelledError`` is raised by poll loops and interactive waits when
      the run's cancellation token fires.

Examples:
    >>> error = RateLimitError("Too many requests", retry_after=12)
    >>> error.retryable
    True
    >>> classify_error(error)
    <ErrorClass.TRANSIENT: 'Transient'>

    >>> error = PermissionDeniedError("Caller lacks Contributor role")
    >>> error.with_context(resource_kind="Workspace", resource_name="otel")
    PermissionDeniedError('Caller lacks Contributor role', category=FATAL)

Tags:
    error-handling, exception-hierarchy, retry-logic, error-context
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Error categories used for routing, logging and retry decisions."""

    AUTH = "AUTH"                 # No usable session, 401
    CONFLICT = "CONFLICT"         # Resource already exists (benign race)
    NETWORK = "NETWORK"           # Connection, timeout, DNS, throttling
    SERVICE = "SERVICE"           # Temporary upstream unavailability
    FATAL = "FATAL"               # Permission, quota, malformed definition
    CONFIG = "CONFIG"             # Missing or invalid settings / topology
    CANCELLED = "CANCELLED"       # External interrupt or run deadline
    INTERNAL = "INTERNAL"         # Bugs, unexpected state
    UNKNOWN = "UNKNOWN"


class ErrorClass(str, Enum):
    """The outcome classes a control-plane failure collapses into.

    These are the values recorded in a ``ConvergenceReport`` error entry and
    the vocabulary the reconciler branches on.
    """

    AUTH = "AuthError"
    ALREADY_EXISTS = "AlreadyExists"
    TRANSIENT = "Transient"
    FATAL = "Fatal"
    CANCELLED = "Cancelled"


@dataclass
class ErrorContext:
    """
    Structured metadata attached to an error.

    Only the fields that are set end up in ``to_dict()``, so log lines stay
    compact. Anything that has no dedicated field goes into ``metadata``.
    """

    # Resource context
    resource_kind: str | None = None
    resource_name: str | None = None
    parent_id: str | None = None

    # Run context
    run_id: str | None = None
    stage: str | None = None
    strategy: str | None = None

    # Request context
    url: str | None = None
    http_status: int | None = None
    error_code: str | None = None

    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Serialise non-empty fields for logging."""
        result: dict[str, Any] = {}
        for key in (
            "resource_kind",
            "resource_name",
            "parent_id",
            "run_id",
            "stage",
            "strategy",
            "url",
            "http_status",
            "error_code",
        ):
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class DeployError(Exception):
    """
    Base exception for all fabric-deploy errors.

    Subclasses set ``default_category`` and ``default_retryable``; both can be
    overridden per instance. Passing ``cause=`` chains the original exception
    so tracebacks keep the root cause.

    Examples:
        >>> try:
        ...     raise ConnectionError("DNS failure")
        ... except ConnectionError as e:
        ...     err = NetworkError("Control plane unreachable", cause=e)
        >>> err.__cause__
        ConnectionError('DNS failure')
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        retry_after: float | None = None,
        context: ErrorContext | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.retry_after = retry_after
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> DeployError:
        """Attach context fields and return self for chaining."""
        for key, value in kwargs.items():
            if hasattr(self.context, key) and key != "metadata":
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to a dictionary for logging/serialization."""
        result: dict[str, Any] = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        if self.retry_after is not None:
            result["retry_after"] = self.retry_after
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# AUTHENTICATION ERRORS
# =============================================================================


class AuthError(DeployError):
    """No usable session. Never retried blindly; see ``AuthenticationResolver``."""

    default_category = ErrorCategory.AUTH
    default_retryable = False


class AuthenticationError(AuthError):
    """A call made with a session was rejected as unauthenticated (HTTP 401)."""


class StrategyFailureClass(str, Enum):
    """Why a single authentication strategy did not produce a session."""

    NOT_CONFIGURED = "NotConfigured"
    REJECTED = "Rejected"
    UNAVAILABLE = "Unavailable"


@dataclass(frozen=True)
class StrategyFailure:
    """One strategy's reason for not yielding a session."""

    strategy: str
    failure_class: StrategyFailureClass
    reason: str

    def __str__(self) -> str:
        return f"{self.strategy}: {self.failure_class.value} ({self.reason})"


class StrategyError(AuthError):
    """Raised by a strategy to report its own failure class."""

    def __init__(self, failure_class: StrategyFailureClass, message: str, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.failure_class = failure_class


class AuthResolutionError(AuthError):
    """Every strategy in the chain was exhausted without a valid session."""

    def __init__(self, failures: list[StrategyFailure], message: str | None = None):
        self.failures = list(failures)
        if message is None:
            if self.failures:
                detail = "; ".join(str(f) for f in self.failures)
                message = f"No authentication strategy produced a valid session: {detail}"
            else:
                message = "No authentication strategy is enabled"
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["failures"] = [
            {"strategy": f.strategy, "class": f.failure_class.value, "reason": f.reason}
            for f in self.failures
        ]
        return result


# =============================================================================
# CONFLICT
# =============================================================================


class AlreadyExistsError(DeployError):
    """Create lost a check-then-act race; the resource exists."""

    default_category = ErrorCategory.CONFLICT
    default_retryable = False

    def __init__(self, message: str, *, resource_id: str | None = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.resource_id = resource_id


# =============================================================================
# TRANSIENT ERRORS (Retryable)
# =============================================================================


class TransientError(DeployError):
    """
    Temporary failure that may succeed on retry.

    Use for throttling, temporary unavailability and network faults. Retries
    are always bounded by the caller's ``RetryStrategy``.
    """

    default_category = ErrorCategory.NETWORK
    default_retryable = True


class NetworkError(TransientError):
    """Connection-level failure talking to a remote endpoint."""


class TimeoutError(TransientError):  # noqa: A001
    """A single request exceeded its per-call timeout."""


class RateLimitError(TransientError):
    """Rate limit exceeded (HTTP 429)."""

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        *,
        retry_after: float | None = None,
        **kwargs: Any,
    ):
        super().__init__(message, retry_after=retry_after, **kwargs)


class ServiceUnavailableError(TransientError):
    """Upstream temporarily unavailable (HTTP 408/5xx)."""

    default_category = ErrorCategory.SERVICE


# =============================================================================
# FATAL ERRORS (Never retried)
# =============================================================================


class FatalError(DeployError):
    """Non-retryable control-plane failure, surfaced immediately."""

    default_category = ErrorCategory.FATAL
    default_retryable = False


class PermissionDeniedError(FatalError):
    """The session is valid but not authorised for the operation (HTTP 403)."""


class QuotaExceededError(FatalError):
    """Capacity or quota limits prevent the creation."""


class InvalidDefinitionError(FatalError):
    """The resource definition was rejected as malformed."""


class CreationDisabledError(FatalError):
    """The node is existence-only and was not found."""


# =============================================================================
# CANCELLATION
# =============================================================================


class RunCancelledError(DeployError):
    """The run was cancelled by a signal or its overall deadline."""

    default_category = ErrorCategory.CANCELLED
    default_retryable = False


# =============================================================================
# CONFIGURATION ERRORS
# =============================================================================


class ConfigError(DeployError):
    """Configuration error. Never retryable; the configuration must be fixed."""

    default_category = ErrorCategory.CONFIG
    default_retryable = False


class InvalidConfigError(ConfigError):
    """Configuration value is invalid."""

    def __init__(self, key: str, value: Any, message: str | None = None):
        self.key = key
        self.value = value
        super().__init__(message or f"Invalid configuration for {key}: {value!r}")


class TopologyError(ConfigError):
    """The declared resource topology is malformed."""


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================


def is_retryable(error: Exception) -> bool:
    """Check if an error is eligible for a bounded retry."""
    if isinstance(error, DeployError):
        return error.retryable
    return isinstance(error, (ConnectionError, BrokenPipeError))


def get_retry_after(error: Exception) -> float | None:
    """Get the server-suggested retry delay, if any."""
    if isinstance(error, DeployError):
        return error.retry_after
    return None


def classify_error(error: Exception) -> ErrorClass:
    """Collapse any exception into one of the five outcome classes."""
    if isinstance(error, AuthError):
        return ErrorClass.AUTH
    if isinstance(error, AlreadyExistsError):
        return ErrorClass.ALREADY_EXISTS
    if isinstance(error, RunCancelledError):
        return ErrorClass.CANCELLED
    if is_retryable(error):
        return ErrorClass.TRANSIENT
    return ErrorClass.FATAL


__all__ = [
    "ErrorCategory",
    "ErrorClass",
    "ErrorContext",
    "DeployError",
    # Auth
    "AuthError",
    "AuthenticationError",
    "AuthResolutionError",
    "StrategyError",
    "StrategyFailure",
    "StrategyFailureClass",
    # Conflict
    "AlreadyExistsError",
    # Transient
    "TransientError",
    "NetworkError",
    "TimeoutError",
    "RateLimitError",
    "ServiceUnavailableError",
    # Fatal
    "FatalError",
    "PermissionDeniedError",
    "QuotaExceededError",
    "InvalidDefinitionError",
    "CreationDisabledError",
    # Cancellation
    "RunCancelledError",
    # Config
    "ConfigError",
    "InvalidConfigError",
    "TopologyError",
    # Utilities
    "is_retryable",
    "get_retry_after",
    "classify_error",
]
