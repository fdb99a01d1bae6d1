"""Core primitives: errors, settings, logging, retry and cancellation."""

from fabric_deploy.core.cancellation import CancellationToken, install_signal_handlers
from fabric_deploy.core.errors import (
    AlreadyExistsError,
    AuthError,
    AuthResolutionError,
    ConfigError,
    DeployError,
    ErrorClass,
    FatalError,
    RunCancelledError,
    TransientError,
    classify_error,
    is_retryable,
)
from fabric_deploy.core.logging import configure_logging, get_logger
from fabric_deploy.core.retry import ExponentialBackoff, NoRetry, RetryContext, RetryStrategy
from fabric_deploy.core.settings import FabricDeploySettings, SyncMode, get_settings

__all__ = [
    "AlreadyExistsError",
    "AuthError",
    "AuthResolutionError",
    "CancellationToken",
    "ConfigError",
    "DeployError",
    "ErrorClass",
    "ExponentialBackoff",
    "FabricDeploySettings",
    "FatalError",
    "NoRetry",
    "RetryContext",
    "RetryStrategy",
    "RunCancelledError",
    "SyncMode",
    "TransientError",
    "classify_error",
    "configure_logging",
    "get_logger",
    "get_settings",
    "install_signal_handlers",
    "is_retryable",
]
