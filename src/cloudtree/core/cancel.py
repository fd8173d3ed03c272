"""Cancellation scope shared by the stages of one transfer.

This module provides:
- CancelScope: Thread-safe, idempotent cancellation with close-on-cancel callbacks
"""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING

from cloudtree.core.types import TransferCancelledError

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)


class CancelScope:
    """Cancellation scope for a single transfer.

    Callbacks registered with on_cancel() run exactly once, on the thread
    that calls cancel(). A callback registered after cancellation runs
    immediately. Stages use callbacks to close the I/O they are blocked on.

    Usage:
        scope = CancelScope()
        scope.on_cancel(lambda: pipe_writer.close_with_error(scope.error()))
        ...
        scope.cancel()  # safe from any thread, any number of times
    """

    def __init__(self, name: str = "transfer") -> None:
        """Initialize the scope.

        Args:
            name: Name used in log and error messages.
        """
        self.name = name
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: list[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        """Check if cancellation was requested."""
        return self._event.is_set()

    def error(self) -> TransferCancelledError:
        """Build the error stages raise once the scope is cancelled."""
        return TransferCancelledError(f"{self.name} cancelled")

    def cancel(self) -> bool:
        """Request cancellation.

        Returns:
            True if this call cancelled the scope, False if it already was.
        """
        with self._lock:
            if self._event.is_set():
                return False
            self._event.set()
            callbacks = self._callbacks
            self._callbacks = []

        logger.info(f"{self.name}: cancellation requested")
        for callback in reversed(callbacks):
            callback()
        return True

    def on_cancel(self, callback: Callable[[], None]) -> None:
        """Register a callback to run when the scope is cancelled."""
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        callback()

    def raise_if_cancelled(self) -> None:
        """Raise TransferCancelledError if cancellation was requested."""
        if self._event.is_set():
            raise self.error()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the scope is cancelled or the timeout expires.

        Returns:
            True if the scope was cancelled.
        """
        return self._event.wait(timeout)
