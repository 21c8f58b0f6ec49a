"""Retry strategies with exponential backoff for repository and DPS calls.

Only errors flagged ``retryable`` (see :func:`metis_core.core.errors.is_retryable`)
are retried by default; everything else propagates on the first failure.

Example:
    >>> strategy = ExponentialBackoff(max_retries=3, base_delay=0.5, max_delay=5.0)
    >>> ctx = RetryContext(strategy)
    >>> execution = await ctx.run_async(asyncio.to_thread, repository.get_by_id, execution_id)
"""

from __future__ import annotations

import asyncio
import random
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, TypeVar

from metis_core.core.errors import is_retryable
from metis_core.core.logging import get_logger

T = TypeVar("T")

logger = get_logger(__name__)


class RetryStrategy(ABC):
    """Decides whether and when a failed call is tried again."""

    @abstractmethod
    def next_delay(self, attempt: int) -> float:
        """Delay in seconds before retry number *attempt* (zero-based)."""
        ...

    @abstractmethod
    def should_retry(self, attempt: int, error: Exception | None = None) -> bool:
        """True if another attempt should follow *attempt* failed ones."""
        ...


@dataclass
class ExponentialBackoff(RetryStrategy):
    """Delay = min(base_delay * multiplier ** attempt, max_delay), +-jitter_range.

    ``max_retries`` counts attempts, the first one included, so the default
    gives a repository call three tries before the executor aborts the run.
    """

    max_retries: int = 3
    base_delay: float = 0.5
    max_delay: float = 30.0
    multiplier: float = 2.0
    jitter: bool = True
    jitter_range: float = 0.25
    retry_on: Callable[[Exception], bool] = is_retryable

    def next_delay(self, attempt: int) -> float:
        delay = min(self.base_delay * (self.multiplier ** attempt), self.max_delay)
        if self.jitter:
            jitter_amount = delay * self.jitter_range
            delay = max(0.0, delay + random.uniform(-jitter_amount, jitter_amount))
        return delay

    def should_retry(self, attempt: int, error: Exception | None = None) -> bool:
        if attempt >= self.max_retries:
            return False
        if error is not None:
            return self.retry_on(error)
        return True


@dataclass
class NoRetry(RetryStrategy):
    """Fail on the first error."""

    def next_delay(self, attempt: int) -> float:
        return 0.0

    def should_retry(self, attempt: int, error: Exception | None = None) -> bool:
        return False


@dataclass
class RetryContext:
    """Attempt bookkeeping for one retried call.

    ``attempt`` is what the driver reports when submission finally gives up.
    """

    strategy: RetryStrategy
    on_retry: Callable[[int, Exception, float], None] | None = None
    attempt: int = field(default=0, init=False)
    last_error: Exception | None = field(default=None, init=False)

    async def run_async(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Await ``func(*args, **kwargs)``, retrying per the strategy.

        Raises:
            The last exception once the strategy gives up.
        """
        while True:
            self.attempt += 1
            try:
                return await func(*args, **kwargs)
            except Exception as e:
                self.last_error = e

                if not self.strategy.should_retry(self.attempt, e):
                    raise

                delay = self.strategy.next_delay(self.attempt - 1)
                if self.on_retry:
                    self.on_retry(self.attempt, e, delay)
                await asyncio.sleep(delay)


def _log_retry(operation: str) -> Callable[[int, Exception, float], None]:
    def _callback(attempt: int, error: Exception, delay: float) -> None:
        logger.warning(
            "retry.scheduled",
            operation=operation,
            attempt=attempt,
            delay_seconds=round(delay, 3),
            error=str(error),
        )

    return _callback


async def call_with_retry(
    strategy: RetryStrategy,
    func: Callable[..., T],
    *args: Any,
    **kwargs: Any,
) -> T:
    """Run a blocking call in a worker thread, retrying transient failures."""
    ctx = RetryContext(strategy=strategy, on_retry=_log_retry(getattr(func, "__name__", "call")))
    return await ctx.run_async(asyncio.to_thread, func, *args, **kwargs)


__all__ = [
    "RetryStrategy",
    "ExponentialBackoff",
    "NoRetry",
    "RetryContext",
    "call_with_retry",
]
