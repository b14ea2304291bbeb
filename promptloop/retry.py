"""
PromptLoop - Transport retry policy.
"""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional, TypeVar, Union

from .exceptions import TransportError

logger = logging.getLogger("promptloop.retry")

T = TypeVar("T")


class RetryStrategy(str, Enum):
    """Retry strategy for failed provider calls."""

    NONE = "none"
    FIXED = "fixed"
    EXPONENTIAL = "exponential"
    LINEAR = "linear"


@dataclass
class RetryPolicy:
    """How often and how long to wait before retrying a provider call.

    Only retryable :class:`TransportError` instances and the exception
    classes in ``retry_on`` are retried. With the defaults the waits are
    1s, 2s and 4s.
    """

    strategy: RetryStrategy = RetryStrategy.EXPONENTIAL
    max_retries: int = 3
    base_delay_ms: int = 1000
    max_delay_ms: int = 60000
    retry_on: tuple = ()

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait before retry number ``attempt`` (1-based)."""
        if self.strategy == RetryStrategy.FIXED:
            delay = self.base_delay_ms
        elif self.strategy == RetryStrategy.LINEAR:
            delay = self.base_delay_ms * attempt
        elif self.strategy == RetryStrategy.EXPONENTIAL:
            delay = self.base_delay_ms * 2 ** (attempt - 1)
        else:
            delay = 0
        return min(delay, self.max_delay_ms) / 1000

    def should_retry(self, exc: BaseException) -> bool:
        if self.strategy == RetryStrategy.NONE:
            return False
        if isinstance(exc, TransportError):
            return exc.retryable
        return bool(self.retry_on) and isinstance(exc, self.retry_on)

    def call(self, fn: Callable[[], T], sleep: Callable[[float], None] = time.sleep) -> T:
        attempt = 0
        while True:
            try:
                return fn()
            except Exception as e:
                if attempt >= self.max_retries or not self.should_retry(e):
                    if attempt:
                        logger.error(
                            "Giving up after %d retries: %s", attempt, type(e).__name__
                        )
                    raise
                attempt += 1
                delay = self.delay_for(attempt)
                logger.warning(
                    "Retry attempt %d/%d after %s, waiting %.1fs",
                    attempt,
                    self.max_retries,
                    type(e).__name__,
                    delay,
                )
                sleep(delay)

    @classmethod
    def from_config(
        cls,
        retries: Union[bool, "RetryPolicy", Callable[..., Any], None] = True,
        retries_count: int = 3,
        retries_on: tuple = (),
    ) -> Union["RetryPolicy", Callable[..., Any]]:
        """Build the retry policy from configuration values.

        ``retries`` may be a bool, a ready policy, or a callable that takes the
        zero-argument provider call and returns its result.
        """
        if isinstance(retries, RetryPolicy):
            return retries
        if callable(retries) and not isinstance(retries, bool):
            return retries
        if not retries:
            return cls(strategy=RetryStrategy.NONE, max_retries=0)
        return cls(max_retries=retries_count, retry_on=tuple(retries_on or ()))


def run_with_retries(
    policy: Union[RetryPolicy, Callable[..., Any], None],
    fn: Callable[[], T],
    sleep: Optional[Callable[[float], None]] = None,
) -> T:
    """Run ``fn`` under ``policy``, which may be a custom callable."""
    if policy is None:
        return fn()
    if isinstance(policy, RetryPolicy):
        return policy.call(fn, sleep=sleep or time.sleep)
    return policy(fn)
