from __future__ import annotations

import concurrent.futures
import logging
import threading
import time
from collections.abc import Callable
from typing import Any, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class DeadlineExceeded(TimeoutError):
    """Raised when work outlives its deadline or the deadline is cancelled."""


class Deadline:
    """Cancellation token with a fixed budget.

    Passed into every storage and LLM call of one unit of work; callers use
    ``remaining()`` as their client timeout and ``check()`` between steps.
    """

    def __init__(self, seconds: float, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self.seconds = max(0.0, float(seconds))
        self._expires_at = clock() + self.seconds
        self._cancelled = threading.Event()

    def remaining(self) -> float:
        if self._cancelled.is_set():
            return 0.0
        return max(0.0, self._expires_at - self._clock())

    @property
    def expired(self) -> bool:
        return self.remaining() <= 0.0

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        self._cancelled.set()

    def check(self) -> None:
        if self.expired:
            raise DeadlineExceeded(f"deadline of {self.seconds:g}s exceeded")

    def sleep(self, seconds: float) -> None:
        """Sleep up to ``seconds``; raise if the deadline runs out first."""
        wait_s = max(0.0, float(seconds))
        if wait_s > self.remaining():
            self._cancelled.wait(self.remaining())
            raise DeadlineExceeded(f"deadline of {self.seconds:g}s exceeded while backing off")
        if self._cancelled.wait(wait_s):
            raise DeadlineExceeded("deadline cancelled")


def run_with_deadline(fn: Callable[[Deadline], T], *, timeout_s: float, name: str = "work") -> T:
    """Race ``fn(deadline)`` on a worker thread against ``timeout_s``.

    On timeout the token is cancelled and DeadlineExceeded is raised; whatever
    the worker later returns is discarded. ``fn`` must not commit state.
    """
    deadline = Deadline(timeout_s)
    executor = concurrent.futures.ThreadPoolExecutor(max_workers=1, thread_name_prefix="audit-deadline")
    try:
        future = executor.submit(fn, deadline)
        done, _ = concurrent.futures.wait([future], timeout=timeout_s)
        if not done:
            deadline.cancel()
            future.add_done_callback(_log_abandoned(name))
            raise DeadlineExceeded(f"{name} timed out after {timeout_s:g}s")
        exc = future.exception()
        if isinstance(exc, DeadlineExceeded) or (exc is not None and deadline.expired):
            # the worker noticed the deadline at the same moment the wait returned
            deadline.cancel()
            raise DeadlineExceeded(f"{name} timed out after {timeout_s:g}s") from exc
        return future.result()
    finally:
        executor.shutdown(wait=False)


def _log_abandoned(name: str) -> Callable[[Any], None]:
    def _callback(future: Any) -> None:
        exc = future.exception()
        if exc is not None:
            logger.debug("abandoned %s finished with %s", name, type(exc).__name__)

    return _callback
