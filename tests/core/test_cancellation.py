"""Tests for fabric_deploy.core.cancellation."""

from __future__ import annotations

import signal
import threading
import time

import pytest

from fabric_deploy.core.cancellation import CancellationToken, install_signal_handlers
from fabric_deploy.core.errors import RunCancelledError


class TestCancellationToken:
    def test_initially_not_cancelled(self):
        token = CancellationToken()
        assert not token.cancelled
        assert token.reason is None
        assert token.remaining() is None

    def test_cancel_records_first_reason(self):
        token = CancellationToken()
        token.cancel("first")
        token.cancel("second")
        assert token.cancelled
        assert token.reason == "first"

    def test_raise_if_cancelled(self):
        token = CancellationToken()
        token.raise_if_cancelled()
        token.cancel("stop")
        with pytest.raises(RunCancelledError, match="stop"):
            token.raise_if_cancelled()

    def test_wait_returns_early_on_cancel(self):
        token = CancellationToken()
        threading.Timer(0.05, token.cancel, args=("from timer",)).start()
        started = time.monotonic()
        assert token.wait(10) is True
        assert time.monotonic() - started < 5

    def test_wait_without_cancel(self):
        assert CancellationToken().wait(0.01) is False

    def test_deadline_cancels(self):
        token = CancellationToken(deadline_seconds=0.01)
        time.sleep(0.05)
        assert token.wait(10) is True
        assert token.reason == "run deadline exceeded"
        assert token.remaining() == 0.0


class TestSignalHandlers:
    def test_sigint_cancels_and_restore_reinstates(self):
        original = signal.getsignal(signal.SIGINT)
        token = CancellationToken()
        restore = install_signal_handlers(token)
        try:
            handler = signal.getsignal(signal.SIGINT)
            assert handler is not original
            handler(signal.SIGINT, None)
            assert token.cancelled
            assert token.reason == "received signal SIGINT"
        finally:
            restore()
        assert signal.getsignal(signal.SIGINT) is original

    def test_outside_main_thread_is_noop(self):
        token = CancellationToken()
        result = {}

        def worker():
            result["restore"] = install_signal_handlers(token)

        thread = threading.Thread(target=worker)
        thread.start()
        thread.join()
        result["restore"]()
        assert not token.cancelled
