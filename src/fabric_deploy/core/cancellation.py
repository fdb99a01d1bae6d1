"""
Run-wide cancellation.

A single ``CancellationToken`` is created per CLI invocation and handed to
every component that can block: the interactive authentication wait, the
retry backoff sleeps and the poll-until loops of verification stages.
Blocking code never calls ``time.sleep``; it calls ``token.wait(seconds)``,
which returns early as soon as the token is cancelled, so every wait ends
within one polling interval of a cancellation.

The token is cancelled by SIGINT/SIGTERM (see ``install_signal_handlers``)
or implicitly when its optional overall deadline passes.
"""

from __future__ import annotations

import signal
import threading
import time
from typing import Any, Callable

from fabric_deploy.core.errors import RunCancelledError
from fabric_deploy.core.logging import get_logger

logger = get_logger(__name__)


class CancellationToken:
    """Cooperative cancellation flag with an optional monotonic deadline.

    Parameters
    ----------
    deadline_seconds
        Overall budget measured from construction. ``None`` means no
        deadline; only an explicit ``cancel()`` ends the run.
    """

    def __init__(self, deadline_seconds: float | None = None) -> None:
        self._event = threading.Event()
        self._reason: str | None = None
        self._deadline = (
            time.monotonic() + deadline_seconds if deadline_seconds is not None else None
        )

    @property
    def reason(self) -> str | None:
        return self._reason

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._deadline is not None and time.monotonic() >= self._deadline:
            self.cancel("run deadline exceeded")
            return True
        return False

    def remaining(self) -> float | None:
        """Seconds until the deadline, or ``None`` without one."""
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self._reason = reason
            self._event.set()
            logger.warning("run.cancelled", reason=reason)

    def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; return True if cancelled meanwhile.

        The sleep is clipped to the deadline so a deadline that expires
        mid-wait is observed immediately.
        """
        if self.cancelled:
            return True
        timeout = max(0.0, seconds)
        remaining = self.remaining()
        if remaining is not None:
            timeout = min(timeout, remaining)
        self._event.wait(timeout)
        return self.cancelled

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise RunCancelledError(self._reason or "cancelled")


def install_signal_handlers(token: CancellationToken) -> Callable[[], None]:
    """Cancel ``token`` on SIGINT / SIGTERM.

    Returns a callable that restores the previous handlers. Only possible
    from the main thread; elsewhere this is a no-op.
    """

    def _handle_signal(signum: int, frame: Any) -> None:
        token.cancel(f"received signal {signal.Signals(signum).name}")

    previous: dict[int, Any] = {}
    try:
        for signum in (signal.SIGINT, signal.SIGTERM):
            previous[signum] = signal.signal(signum, _handle_signal)
    except (ValueError, OSError):
        logger.debug("signals.not_installed", reason="not in main thread")

    def restore() -> None:
        for signum, handler in previous.items():
            if handler is not None:
                signal.signal(signum, handler)

    return restore


__all__ = ["CancellationToken", "install_signal_handlers"]
