"""Bounded poll-until for stages that wait on eventual consistency."""

from __future__ import annotations

import time
from typing import Callable, TypeVar

from fabric_deploy.core.cancellation import CancellationToken
from fabric_deploy.core.errors import RunCancelledError, TransientError
from fabric_deploy.core.logging import get_logger
from fabric_deploy.verify.registry import StageFailed

logger = get_logger(__name__)

T = TypeVar("T")


def poll_until(
    condition: Callable[[], T],
    *,
    interval: float,
    timeout: float,
    cancel: CancellationToken,
    description: str = "condition",
    clock: Callable[[], float] = time.monotonic,
) -> T:
    """Call ``condition`` every ``interval`` seconds until it returns a truthy value.

    Transient errors from ``condition`` count as "not yet". The wait between
    attempts goes through ``cancel.wait`` so a cancelled run stops within one
    interval.

    Raises:
        StageFailed: ``timeout`` elapsed without success
        RunCancelledError: the run was cancelled while waiting
    """
    deadline = clock() + timeout
    attempt = 0
    while True:
        attempt += 1
        try:
            value = condition()
        except TransientError as e:
            logger.info("poll.transient", description=description, attempt=attempt, error=e.message)
            value = None  # type: ignore[assignment]
        if value:
            logger.info("poll.satisfied", description=description, attempts=attempt)
            return value

        remaining = deadline - clock()
        if remaining <= 0:
            raise StageFailed(f"{description} not observed within {timeout:g}s ({attempt} attempts)")
        logger.debug("poll.waiting", description=description, attempt=attempt, remaining=round(remaining, 1))
        if cancel.wait(min(interval, remaining)):
            raise RunCancelledError(cancel.reason or "cancelled")


__all__ = ["poll_until"]
