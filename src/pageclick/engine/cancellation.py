"""Cooperative cancellation shared by every suspension point of a task."""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Callable, TypeVar

logger = logging.getLogger("pageclick.engine.cancellation")

T = TypeVar("T")

# Blocking calls (model HTTP requests) run here so the caller can stop
# waiting as soon as the token fires.
_EXECUTOR = ThreadPoolExecutor(max_workers=4, thread_name_prefix="pageclick-call")


class TaskAborted(Exception):
    """Raised at a suspension point once the task's token has been cancelled."""

    def __init__(self, reason: str = "Task cancelled") -> None:
        super().__init__(reason)
        self.reason = reason


class CancellationToken:
    """A one-shot cancellation signal bound to a task epoch.

    The orchestrator hands out a fresh token on every ``start_task``; the old
    token is cancelled so that any late callback from the previous task sees
    ``cancelled`` and stops before touching the new state.
    """

    def __init__(self, epoch: int = 0) -> None:
        self.epoch = epoch
        self._event = threading.Event()
        self.reason = ""

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "Task cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise TaskAborted(self.reason or "Task cancelled")

    def sleep(self, seconds: float) -> None:
        """Sleep for *seconds*, waking early and raising TaskAborted on cancel."""
        if seconds <= 0:
            self.raise_if_cancelled()
            return
        if self._event.wait(seconds):
            raise TaskAborted(self.reason or "Task cancelled")


def run_cancellable(
    fn: Callable[[], T],
    token: CancellationToken,
    timeout: float | None = None,
    poll_interval: float = 0.05,
) -> T:
    """Run a blocking callable in a worker thread and wait for it cooperatively.

    Raises TaskAborted if *token* is cancelled before the call returns and
    TimeoutError once *timeout* seconds have passed. In both cases the worker
    result is discarded.
    """
    token.raise_if_cancelled()
    future: Future[T] = _EXECUTOR.submit(fn)
    deadline = time.monotonic() + timeout if timeout is not None else None
    while True:
        wait([future], timeout=poll_interval)
        if future.done():
            return future.result()
        if token.cancelled:
            future.cancel()
            logger.debug("Cancelled in-flight call (epoch %d)", token.epoch)
            raise TaskAborted(token.reason or "Task cancelled")
        if deadline is not None and time.monotonic() >= deadline:
            future.cancel()
            raise TimeoutError(f"Call did not finish within {timeout:.0f}s")
