"""
RetryPolicy - bounded exponential backoff as an injectable object.

The same policy type is used by backends (retrying TransientError on I/O)
and by the Finalizer (retrying each orphan's destroy call). Tests inject
``RetryPolicy.no_wait()`` so retries run without sleeping.
"""

import logging
import random
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator, Optional, TypeVar

from .errors import TransientError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """
    Retry configuration with exponential backoff.

    Attributes:
        max_attempts: Total attempts including the first call (>= 1)
        backoff_seconds: Delay before the second attempt
        backoff_multiplier: Factor applied to the delay after each retry
        max_backoff_seconds: Upper bound for a single delay
        jitter_seconds: Random extra delay in [0, jitter_seconds]
        sleep: Sleep function (injectable for tests)
    """
    max_attempts: int = 3
    backoff_seconds: float = 1.0
    backoff_multiplier: float = 2.0
    max_backoff_seconds: float = 30.0
    jitter_seconds: float = 0.0
    sleep: Callable[[float], Any] = field(default=time.sleep, compare=False, repr=False)

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.backoff_seconds < 0 or self.max_backoff_seconds < 0:
            raise ValueError("backoff values must be >= 0")
        if self.backoff_multiplier < 1:
            raise ValueError("backoff_multiplier must be >= 1")

    @classmethod
    def no_wait(cls, max_attempts: int = 3) -> "RetryPolicy":
        """Policy that retries without sleeping."""
        return cls(max_attempts=max_attempts, backoff_seconds=0.0, max_backoff_seconds=0.0)

    @classmethod
    def single_attempt(cls) -> "RetryPolicy":
        """Policy that never retries."""
        return cls(max_attempts=1, backoff_seconds=0.0, max_backoff_seconds=0.0)

    def with_attempts(self, max_attempts: int) -> "RetryPolicy":
        """Return a copy with a different attempt budget."""
        return RetryPolicy(
            max_attempts=max_attempts,
            backoff_seconds=self.backoff_seconds,
            backoff_multiplier=self.backoff_multiplier,
            max_backoff_seconds=self.max_backoff_seconds,
            jitter_seconds=self.jitter_seconds,
            sleep=self.sleep,
        )

    def delays(self) -> Iterator[float]:
        """Yield the delay before each retry (max_attempts - 1 values)."""
        wait = self.backoff_seconds
        for _ in range(self.max_attempts - 1):
            delay = min(wait, self.max_backoff_seconds)
            if self.jitter_seconds:
                delay += random.uniform(0.0, self.jitter_seconds)
            yield delay
            wait *= self.backoff_multiplier

    def run(
        self,
        func: Callable[[], T],
        *,
        retry_on: tuple[type[BaseException], ...] = (TransientError,),
        give_up_on: tuple[type[BaseException], ...] = (),
        description: str = "operation",
        cancel: Optional[threading.Event] = None,
    ) -> T:
        """
        Call ``func`` until it succeeds or the attempt budget is spent.

        Args:
            func: Zero-argument callable to invoke
            retry_on: Exception types that trigger a retry
            give_up_on: Exception types re-raised immediately even if they
                also match ``retry_on``
            description: Label used in retry log messages
            cancel: Optional event; once set, no further attempts are made

        Returns:
            Result of the first successful call

        Raises:
            The last exception raised by ``func`` when retries are exhausted,
            or immediately for exceptions outside ``retry_on``.
        """
        delays = self.delays()
        attempt = 1
        while True:
            try:
                return func()
            except give_up_on:
                raise
            except retry_on as e:
                delay = next(delays, None)
                if delay is None:
                    if self.max_attempts > 1:
                        logger.error(f"{description}: all {self.max_attempts} attempts failed: {e}")
                    raise
                if cancel is not None and cancel.is_set():
                    raise
                logger.warning(
                    f"{description}: attempt {attempt}/{self.max_attempts} failed: {e}. "
                    f"Retrying in {delay:.2f}s..."
                )
                if cancel is not None:
                    if cancel.wait(delay):
                        raise
                elif delay > 0:
                    self.sleep(delay)
                attempt += 1
