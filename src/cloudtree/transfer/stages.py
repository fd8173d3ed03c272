"""Pipeline stages with a one-shot terminal outcome.

This module provides:
- StageState: Enum for stage lifecycle states
- StageResult: Terminal outcome of a stage
- Stage: A pipeline step running on its own thread
- run_inline: Run a pipeline step on the calling thread, producing a StageResult
- first_failure: Reduce stage outcomes to the one reported to the caller
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from dataclasses import dataclass
from enum import Enum, auto
from typing import TYPE_CHECKING, Any

from cloudtree.core.types import TransferCancelledError

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from cloudtree.core.cancel import CancelScope

logger = logging.getLogger(__name__)


class StageState(Enum):
    """State of a stage."""

    IDLE = auto()
    RUNNING = auto()
    COMPLETED = auto()
    CANCELLED = auto()
    FAILED = auto()


@dataclass
class StageResult:
    """Terminal outcome of a stage.

    Attributes:
        name: Stage name.
        success: Whether the stage succeeded.
        result: Return value of the stage function if successful.
        error: The exception the stage failed with.
        cancelled: Whether the stage failed because its scope was cancelled.
        elapsed_time: Time taken in seconds.
        finished_at: time.monotonic() when the stage reached its outcome.
    """

    name: str
    success: bool
    result: Any = None
    error: BaseException | None = None
    cancelled: bool = False
    elapsed_time: float = 0.0
    finished_at: float = 0.0


class Stage:
    """A pipeline step running on its own thread.

    The target runs once. Its outcome is published exactly once through a
    single-slot queue, and the on_exit hook runs before publication with the
    error (or None) so that the stage can close the pipe ends it owns; this
    is what unblocks the neighbouring stages.

    Usage:
        stage = Stage("archive", write_archive, on_exit=close_pipe, scope=scope)
        stage.start()
        ...
        result = stage.wait()
    """

    def __init__(
        self,
        name: str,
        target: Callable[[], Any],
        on_exit: Callable[[BaseException | None], None] | None = None,
        scope: CancelScope | None = None,
    ) -> None:
        """Initialize the stage.

        Args:
            name: Stage name, used in logs and results.
            target: Function performing the work.
            on_exit: Hook called with the error (or None) once target returns.
            scope: Cancellation scope used to classify failures.
        """
        self.name = name
        self._target = target
        self._on_exit = on_exit
        self._scope = scope
        self._state = StageState.IDLE
        self._outcome: queue.Queue[StageResult] = queue.Queue(maxsize=1)
        self._result: StageResult | None = None
        self._thread = threading.Thread(target=self._run, name=f"stage-{name}", daemon=True)

    @property
    def state(self) -> StageState:
        """Get current stage state."""
        return self._state

    def start(self) -> None:
        """Start the stage thread."""
        self._state = StageState.RUNNING
        self._thread.start()

    def wait(self, timeout: float | None = None) -> StageResult:
        """Block until the stage has published its outcome.

        Raises:
            TimeoutError: If the timeout expires first.
        """
        if self._result is None:
            try:
                self._result = self._outcome.get(timeout=timeout)
            except queue.Empty:
                raise TimeoutError(f"stage {self.name} still running") from None
        return self._result

    def _run(self) -> None:
        try:
            result = _execute(self.name, self._target, self._on_exit, self._scope)
        except BaseException as e:
            # on_exit itself failed, or SystemExit was raised inside the thread
            result = StageResult(
                name=self.name, success=False, error=e, finished_at=time.monotonic()
            )
        if result.success:
            self._state = StageState.COMPLETED
        elif result.cancelled:
            self._state = StageState.CANCELLED
        else:
            self._state = StageState.FAILED
        self._outcome.put(result)


def run_inline(
    name: str,
    target: Callable[[], Any],
    on_exit: Callable[[BaseException | None], None] | None = None,
    scope: CancelScope | None = None,
) -> StageResult:
    """Run a pipeline step on the calling thread.

    Exceptions become a failed StageResult, except BaseExceptions that are
    not Exceptions (KeyboardInterrupt, SystemExit), which propagate after
    on_exit has run.
    """
    return _execute(name, target, on_exit, scope)


def _execute(
    name: str,
    target: Callable[[], Any],
    on_exit: Callable[[BaseException | None], None] | None,
    scope: CancelScope | None,
) -> StageResult:
    start_time = time.monotonic()
    try:
        value = target()
    except Exception as e:
        finished_at = time.monotonic()
        cancelled = isinstance(e, TransferCancelledError) or bool(scope and scope.cancelled)
        if cancelled:
            logger.info(f"{name} stage: cancelled after {finished_at - start_time:.2f}s")
        else:
            logger.debug(f"{name} stage failed: {e}")
        if on_exit:
            on_exit(e)
        return StageResult(
            name=name,
            success=False,
            error=e,
            cancelled=cancelled,
            elapsed_time=finished_at - start_time,
            finished_at=finished_at,
        )
    except BaseException as e:
        if on_exit:
            on_exit(e)
        raise

    finished_at = time.monotonic()
    if on_exit:
        on_exit(None)
    return StageResult(
        name=name,
        success=True,
        result=value,
        elapsed_time=finished_at - start_time,
        finished_at=finished_at,
    )


def first_failure(results: Iterable[StageResult]) -> StageResult | None:
    """Return the earliest failed outcome, or None if every stage succeeded.

    Later failures are usually consequences of the first one (a closed pipe,
    a truncated stream) and are only logged.
    """
    failures = sorted((r for r in results if not r.success), key=lambda r: r.finished_at)
    for secondary in failures[1:]:
        logger.debug(f"Ignoring secondary failure in {secondary.name}: {secondary.error}")
    return failures[0] if failures else None
