"""Bounded retries for idempotent network calls.

Only reads and the log-stream connect go through a RetryPolicy; writes to
the orchestrator or blob store are attempted exactly once.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import Any, Callable, Coroutine, TypeVar

from lattice.errors import NetworkError, NetworkTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetriesExhaustedError(Exception):
    """Raised when all retry attempts have been exhausted."""

    def __init__(self, message: str, attempts: int, last_exception: Exception | None = None):
        super().__init__(message)
        self.attempts = attempts
        self.last_exception = last_exception


@dataclass
class RetryPolicy:
    """Retry policy with exponential backoff.

    Delay before attempt ``n + 1`` is ``base_delay * exponential_base**(n-1)``,
    capped at ``max_delay`` and optionally spread by ``jitter`` (a fraction
    of the delay).
    """

    max_attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 5.0
    exponential_base: float = 2.0
    jitter: float = 0.1
    retry_on: tuple[type[Exception], ...] = field(default=(NetworkError,))
    give_up_on: tuple[type[Exception], ...] = field(default=(NetworkTimeoutError,))

    def calculate_delay(self, attempt: int) -> float:
        """Calculate delay after the given attempt (1-based)."""
        delay = min(self.base_delay * (self.exponential_base ** (attempt - 1)), self.max_delay)
        if self.jitter > 0:
            spread = delay * self.jitter
            delay += random.uniform(-spread, spread)
        return max(delay, 0.0)

    async def execute(
        self,
        func: Callable[[], Coroutine[Any, Any, T]],
        description: str = "operation",
    ) -> T:
        """Run ``func`` until it succeeds or attempts run out.

        Args:
            func: Coroutine factory, called once per attempt.
            description: Used in log messages.

        Returns:
            The first successful result.

        Raises:
            RetriesExhaustedError: If every attempt raised a retryable error.
            Exception: Any non-retryable error, immediately. Errors in
                ``give_up_on`` are never retried, even when they also match
                ``retry_on``.
        """
        last_exception: Exception | None = None

        for attempt in range(1, self.max_attempts + 1):
            try:
                return await func()
            except self.give_up_on:
                raise
            except self.retry_on as e:
                last_exception = e
                logger.warning(f"{description}: attempt {attempt}/{self.max_attempts} failed: {e}")
                if attempt < self.max_attempts:
                    delay = self.calculate_delay(attempt)
                    logger.debug(f"{description}: retrying in {delay:.2f}s")
                    await asyncio.sleep(delay)

        raise RetriesExhaustedError(
            f"{description}: all {self.max_attempts} attempts failed",
            attempts=self.max_attempts,
            last_exception=last_exception,
        )

    async def execute_or_raise_last(
        self,
        func: Callable[[], Coroutine[Any, Any, T]],
        description: str = "operation",
    ) -> T:
        """Like ``execute`` but re-raise the final underlying error on exhaustion."""
        try:
            return await self.execute(func, description)
        except RetriesExhaustedError as e:
            if e.last_exception is None:
                raise
            raise e.last_exception


NO_RETRY = RetryPolicy(max_attempts=1)
