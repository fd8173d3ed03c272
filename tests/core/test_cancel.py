"""Tests for CancelScope."""

from __future__ import annotations

import threading

import pytest

from cloudtree.core.cancel import CancelScope
from cloudtree.core.types import TransferCancelledError


class TestCancelScope:
    """Tests for CancelScope."""

    def test_initially_not_cancelled(self) -> None:
        """A new scope should not be cancelled."""
        scope = CancelScope()
        assert scope.cancelled is False
        scope.raise_if_cancelled()

    def test_cancel_is_idempotent(self) -> None:
        """Only the first cancel() should report that it cancelled."""
        scope = CancelScope()
        assert scope.cancel() is True
        assert scope.cancel() is False
        assert scope.cancelled is True

    def test_callbacks_run_once(self) -> None:
        """Callbacks should run exactly once, in reverse registration order."""
        scope = CancelScope()
        calls: list[str] = []
        scope.on_cancel(lambda: calls.append("first"))
        scope.on_cancel(lambda: calls.append("second"))

        scope.cancel()
        scope.cancel()

        assert calls == ["second", "first"]

    def test_callback_after_cancel_runs_immediately(self) -> None:
        """A callback registered after cancellation should run at once."""
        scope = CancelScope()
        scope.cancel()
        calls: list[int] = []

        scope.on_cancel(lambda: calls.append(1))

        assert calls == [1]

    def test_raise_if_cancelled(self) -> None:
        """raise_if_cancelled() should raise TransferCancelledError."""
        scope = CancelScope("upload backup.zstd")
        scope.cancel()

        with pytest.raises(TransferCancelledError, match="upload backup.zstd cancelled"):
            scope.raise_if_cancelled()

    def test_error_is_cancellation(self) -> None:
        """error() should build a TransferCancelledError."""
        assert isinstance(CancelScope().error(), TransferCancelledError)

    def test_wait(self) -> None:
        """wait() should return once another thread cancels."""
        scope = CancelScope()
        assert scope.wait(timeout=0.01) is False

        timer = threading.Timer(0.05, scope.cancel)
        timer.start()
        try:
            assert scope.wait(timeout=5) is True
        finally:
            timer.cancel()

    def test_concurrent_cancel(self) -> None:
        """Concurrent cancel() calls should run callbacks once."""
        scope = CancelScope()
        calls: list[int] = []
        scope.on_cancel(lambda: calls.append(1))

        threads = [threading.Thread(target=scope.cancel) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert calls == [1]
