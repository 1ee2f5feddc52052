"""Bounded exponential backoff with jitter for chain RPC calls."""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from typing import TypeVar

from token_transfer_indexer.chain.client import TransientRPCError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 6
DEFAULT_INITIAL_DELAY_SECONDS = 1.0
DEFAULT_JITTER_SECONDS = 0.3


class RetryPolicy:
    """Retry a zero-argument coroutine factory on transient failures.

    The delay before attempt ``k`` (``k >= 2``) is
    ``initial_delay * 2 ** (k - 1) + uniform(0, jitter)``. The first attempt
    runs immediately. When the budget is exhausted the last exception is
    re-raised unchanged.

    Example:
        ```python
        policy = RetryPolicy(max_attempts=5, initial_delay_seconds=0.5)
        head = await policy.run(client.head_height)
        logs = await policy.run(lambda: client.logs_in_range(addr, topic, 10, 20))
        ```
    """

    def __init__(
        self,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        initial_delay_seconds: float = DEFAULT_INITIAL_DELAY_SECONDS,
        jitter_seconds: float = DEFAULT_JITTER_SECONDS,
        retry_on: tuple[type[BaseException], ...] = (TransientRPCError,),
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        """Initialize the policy.

        Args:
            max_attempts: Total attempts including the first call.
            initial_delay_seconds: Base delay, doubled per attempt.
            jitter_seconds: Upper bound of uniform random jitter.
            retry_on: Exception types considered transient.
            sleep: Awaitable sleep function (injectable for tests).
            rng: Random source for jitter (injectable for tests).
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if initial_delay_seconds < 0 or jitter_seconds < 0:
            raise ValueError("delays must be >= 0")
        self._max_attempts = max_attempts
        self._initial_delay = initial_delay_seconds
        self._jitter = jitter_seconds
        self._retry_on = retry_on
        self._sleep = sleep
        self._rng = rng or random.Random()

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    def delay_before(self, attempt: int) -> float:
        """Backoff (without jitter) applied before the given 1-based attempt."""
        if attempt <= 1:
            return 0.0
        return self._initial_delay * (2 ** (attempt - 1))

    async def run(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run ``operation`` until it succeeds or the attempt budget is spent.

        Raises:
            The last exception raised by ``operation`` once retries are
            exhausted, or immediately for non-transient exceptions.
        """
        attempt = 1
        while True:
            try:
                return await operation()
            except self._retry_on as e:
                if attempt >= self._max_attempts:
                    logger.warning("Giving up after %d attempts: %s", attempt, e)
                    raise
                attempt += 1
                delay = self.delay_before(attempt) + self._rng.uniform(0.0, self._jitter)
                logger.warning(
                    "Transient RPC failure (attempt %d/%d): %s. Retrying in %.0fms...",
                    attempt - 1,
                    self._max_attempts,
                    e,
                    delay * 1000,
                )
                await self._sleep(delay)
