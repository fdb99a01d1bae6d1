"""Bounded retry with exponential backoff for transient control-plane errors.

Only errors classified as retryable (``TransientError`` and subclasses) are
retried; everything else propagates on the first failure. Sleeps go through
the run's ``CancellationToken`` so a cancelled run never sits in a backoff.

Example:
    >>> strategy = ExponentialBackoff(max_attempts=3, base_delay=1.0)
    >>> ctx = RetryContext(strategy, cancel=token)
    >>> workspace_id = ctx.run(client.create, ResourceKind.WORKSPACE, "otel", None, {})
"""

from __future__ import annotations

import random
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, TypeVar

from fabric_deploy.core.cancellation import CancellationToken
from fabric_deploy.core.errors import RunCancelledError, get_retry_after, is_retryable

T = TypeVar("T")


class RetryStrategy(ABC):
    """Abstract base for retry strategies."""

    @abstractmethod
    def next_delay(self, attempt: int) -> float:
        """Delay in seconds before the retry following ``attempt`` (1-based)."""
        ...

    @abstractmethod
    def should_retry(self, attempt: int, error: Exception | None = None) -> bool:
        """Whether another attempt is allowed after ``attempt`` attempts."""
        ...


@dataclass
class ExponentialBackoff(RetryStrategy):
    """Exponential backoff with optional jitter.

    Delay = min(base_delay * (multiplier ** (attempt - 1)), max_delay) +/- jitter

    Attributes:
        max_attempts: Total attempts including the first call
        base_delay: Delay before the first retry, in seconds
        max_delay: Cap for any single delay
        multiplier: Exponential multiplier
        jitter: Randomise delays to avoid synchronised retries
        jitter_range: Jitter as a fraction of the delay (0.0-1.0)
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    multiplier: float = 2.0
    jitter: bool = True
    jitter_range: float = 0.25

    def next_delay(self, attempt: int) -> float:
        delay = min(self.base_delay * (self.multiplier ** max(0, attempt - 1)), self.max_delay)
        if self.jitter:
            jitter_amount = delay * self.jitter_range
            delay = max(0.0, delay + random.uniform(-jitter_amount, jitter_amount))
        return delay

    def should_retry(self, attempt: int, error: Exception | None = None) -> bool:
        if attempt >= self.max_attempts:
            return False
        return error is None or is_retryable(error)


@dataclass
class NoRetry(RetryStrategy):
    """No retry - fail immediately."""

    def next_delay(self, attempt: int) -> float:
        return 0.0

    def should_retry(self, attempt: int, error: Exception | None = None) -> bool:
        return False


@dataclass
class RetryContext:
    """Retry state for one logical operation.

    Without a ``cancel`` token the backoff waits on a private one that is
    never cancelled.
    """

    strategy: RetryStrategy
    cancel: CancellationToken = field(default_factory=CancellationToken)
    on_retry: Callable[[int, Exception, float], None] | None = None
    attempt: int = field(default=0, init=False)
    errors: list[Exception] = field(default_factory=list, init=False)

    @property
    def attempts(self) -> int:
        return self.attempt

    def run(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Execute ``func`` with retry logic.

        Raises:
            The last exception once the strategy stops retrying, or
            ``RunCancelledError`` if the run is cancelled during a backoff.
        """
        while True:
            self.attempt += 1
            try:
                return func(*args, **kwargs)
            except Exception as e:
                self.errors.append(e)

                if not self.strategy.should_retry(self.attempt, e):
                    raise

                delay = self.strategy.next_delay(self.attempt)
                retry_after = get_retry_after(e)
                if retry_after is not None:
                    delay = max(delay, float(retry_after))

                if self.on_retry:
                    self.on_retry(self.attempt, e, delay)

                if self.cancel.wait(delay):
                    raise RunCancelledError(self.cancel.reason or "cancelled") from e


__all__ = [
    "RetryStrategy",
    "ExponentialBackoff",
    "NoRetry",
    "RetryContext",
]
