"""
Retry policy.

`RetryPolicy` describes how often an operation may be attempted and which
failures justify another attempt. The HTTP transport applies it to sends and
the session cache applies it to login round-trips; both run through
`RetryPolicy.run()`, which drives a `tenacity.Retrying` loop.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_incrementing,
)

from .exceptions import (
    AuthError,
    BuildError,
    DescriptorError,
    ParseError,
    RequestTimeoutError,
    StatusError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Never retried, whatever the policy says: retrying cannot change the outcome.
NEVER_RETRY: tuple[type[BaseException], ...] = (
    AuthError,
    BuildError,
    DescriptorError,
    StatusError,
    ParseError,
)


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """
    How many times an operation is attempted, and for which failures.

    `max_attempts=1` means a single attempt (no retry). Delays grow linearly:
    attempt N waits `backoff * N` seconds before attempt N+1.
    """

    max_attempts: int = 1
    backoff: float = 0.0
    retry_on: tuple[type[BaseException], ...] = (RequestTimeoutError,)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.backoff < 0:
            raise ValueError("backoff must be >= 0")

    def should_retry(self, error: BaseException, attempt: int) -> bool:
        if attempt >= self.max_attempts:
            return False
        if isinstance(error, NEVER_RETRY):
            return False
        return isinstance(error, self.retry_on)

    def retrying(self, *, sleep: Callable[[float], None] = time.sleep) -> Retrying:
        return Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_incrementing(start=self.backoff, increment=self.backoff),
            retry=(
                retry_if_exception_type(self.retry_on)
                & retry_if_not_exception_type(NEVER_RETRY)
            ),
            before_sleep=before_sleep_log(logger, logging.DEBUG),
            sleep=sleep,
            reraise=True,
        )

    def run(
        self,
        operation: Callable[[], T],
        *,
        description: str = "operation",
        sleep: Callable[[float], None] = time.sleep,
    ) -> T:
        """Run `operation`, retrying eligible failures."""
        if self.max_attempts == 1:
            return operation()
        logger.debug("%s: up to %d attempt(s)", description, self.max_attempts)
        return self.retrying(sleep=sleep)(operation)


NO_RETRY = RetryPolicy()
