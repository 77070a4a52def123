"""Retry with exponential backoff, shared by the transport backends."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryPolicy:
    """Retries an async call while a predicate says the error is retryable.

    The delay before retry ``n`` (0-based) is ``base_delay * 2 ** n``.
    Non-retryable errors propagate immediately; once ``max_attempts``
    calls have failed the last error is raised.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        is_retryable: Callable[[BaseException], bool] | None = None,
        max_delay: float | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.is_retryable = is_retryable or (lambda e: True)
        self.max_delay = max_delay
        self._sleep = sleep

    def delay_for(self, attempt: int) -> float:
        """Backoff before the retry following failed attempt ``attempt``."""
        delay = self.base_delay * (2 ** attempt)
        if self.max_delay is not None:
            delay = min(delay, self.max_delay)
        return delay

    async def run(self, operation: Callable[[], Awaitable[T]], name: str = "operation") -> T:
        """Call ``operation`` until it succeeds or retries are exhausted."""
        for attempt in range(self.max_attempts):
            try:
                return await operation()
            except Exception as e:
                if not self.is_retryable(e):
                    raise
                if attempt >= self.max_attempts - 1:
                    logger.error(f"{name} failed after {self.max_attempts} attempts: {e}")
                    raise

                delay = self.delay_for(attempt)
                logger.warning(
                    f"{name} failed (attempt {attempt + 1}/{self.max_attempts}), "
                    f"retrying in {delay:.1f}s: {e}"
                )
                await self._sleep(delay)

        raise AssertionError("unreachable")
