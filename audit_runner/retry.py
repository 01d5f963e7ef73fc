from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

from audit_runner.errors import ApiError
from audit_runner.timeouts import Deadline, DeadlineExceeded

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry with linear backoff, shared by extraction and synthesis."""

    max_retries: int = 2
    backoff_base_s: float = 2.0
    backoff_max_s: float = 30.0

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def backoff_s(self, attempt: int) -> float:
        """Wait before retry number ``attempt`` (1-based): 2s, 4s, ..."""
        return min(self.backoff_max_s, self.backoff_base_s * max(1, attempt))

    @staticmethod
    def is_retryable(exc: BaseException) -> bool:
        if isinstance(exc, DeadlineExceeded):
            return False
        if isinstance(exc, ApiError):
            return exc.retryable
        return isinstance(exc, (TimeoutError, ConnectionError))

    def run(
        self,
        fn: Callable[[], T],
        *,
        deadline: Deadline | None = None,
        describe: str = "call",
        sleep: Callable[[float], None] | None = None,
    ) -> T:
        attempt = 0
        while True:
            if deadline is not None:
                deadline.check()
            try:
                return fn()
            except Exception as exc:
                if not self.is_retryable(exc) or attempt >= self.max_retries:
                    if attempt > 0:
                        logger.warning(
                            "%s failed after %d attempts: %s",
                            describe,
                            attempt + 1,
                            type(exc).__name__,
                        )
                    raise
                attempt += 1
                wait_s = self.backoff_s(attempt)
                logger.warning(
                    "%s failed (%s), retry %d/%d in %.1fs",
                    describe,
                    type(exc).__name__,
                    attempt,
                    self.max_retries,
                    wait_s,
                )
                if sleep is not None:
                    sleep(wait_s)
                elif deadline is not None:
                    deadline.sleep(wait_s)
                else:
                    time.sleep(wait_s)

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls(
            max_retries=settings.llm_max_retries,
            backoff_base_s=settings.llm_backoff_base_s,
            backoff_max_s=settings.llm_backoff_max_s,
        )
