"""
RETRY UTILITIES

Two different things live here:

- RetryPolicy: how the scheduler treats a unit of work that failed. Failed
  work is simply left due and picked up again on a later tick. The policy
  makes that decision explicit and inspectable instead of implicit.
- Backoff / call_with_backoff: short in-process retries for flaky I/O such
  as syncing the state directory with its remote.
"""

import random
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional, Tuple, Type

from loguru import logger


@dataclass(frozen=True)
class RetryPolicy:
    """
    What happens to a failed unit of work.

    max_attempts=None means unbounded: the item stays due forever until it
    succeeds. backoff_seconds delays eligibility after a failure (0 = eligible
    again on the very next tick).
    """
    max_attempts: Optional[int] = None
    backoff_seconds: float = 0.0

    def should_retry(self, attempts: int) -> bool:
        """True if an item that has failed `attempts` times stays due."""
        if self.max_attempts is None:
            return True
        return attempts < self.max_attempts

    def describe(self) -> str:
        cap = "unbounded" if self.max_attempts is None else f"max {self.max_attempts}"
        return f"{cap} attempts, backoff {self.backoff_seconds:.0f}s"


# Failed work stays queued and is retried next tick, with no cap and no backoff.
TASK_RETRY_POLICY = RetryPolicy()


@dataclass(frozen=True)
class Backoff:
    """Exponential backoff for a blocking call: base * 2^n, capped, with jitter."""
    retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter: bool = True
    retry_on: Tuple[Type[Exception], ...] = (OSError,)

    def delay(self, attempt: int) -> float:
        seconds = min(self.base_delay * (2 ** attempt), self.max_delay)
        if self.jitter:
            seconds *= 0.5 + random.random()
        return seconds


class RetryError(Exception):
    """All attempts failed. `last_exception` is the final failure."""

    def __init__(self, message: str, last_exception: Exception, attempts: int):
        super().__init__(message)
        self.last_exception = last_exception
        self.attempts = attempts


def call_with_backoff(
    operation: Callable[..., Any],
    *args,
    backoff: Backoff = Backoff(),
    sleep: Callable[[float], None] = time.sleep,
    **kwargs
) -> Any:
    """Call `operation`, retrying the exceptions `backoff` names."""
    attempts = backoff.retries + 1
    for attempt in range(attempts):
        try:
            return operation(*args, **kwargs)
        except backoff.retry_on as e:
            if attempt == attempts - 1:
                raise RetryError(f"Failed after {attempts} attempts", e, attempts) from e
            wait = backoff.delay(attempt)
            logger.warning(f"Retry {attempt + 1}/{backoff.retries} in {wait:.1f}s: {e}")
            sleep(wait)
