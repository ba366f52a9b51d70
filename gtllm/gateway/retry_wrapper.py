"""
Retry with exponential backoff for non-streaming gateway calls.

Retried (transient):
- 429: Rate limited
- 5xx: Server errors
- Network errors and timeouts

Not retried (permanent):
- 401, 403: Auth/permission errors
- 400: Bad request
- 451 / data policy blocks
- Unparseable responses

Streams are never retried: a half-delivered answer cannot be replayed
without duplicating tokens on screen.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from gtllm.gateway.base import GatewayError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryPolicy:
    """Runs a coroutine factory until it succeeds or a permanent error shows up."""

    def __init__(
        self,
        max_retries: int = 2,
        backoff_base: float = 1.5,
        backoff_max: float = 10.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.max_retries = max(0, max_retries)
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self._sleep = sleep

    def _backoff_seconds(self, attempt: int) -> float:
        """Calculate backoff time for attempt N (exponential)."""
        delay = self.backoff_base ** attempt
        return min(delay, self.backoff_max)

    async def call(self, label: str, fn: Callable[[], Awaitable[T]]) -> T:
        for attempt in range(self.max_retries + 1):
            try:
                return await fn()
            except GatewayError as e:
                if not e.retryable:
                    logger.debug("%s failed with non-retryable %s: %s", label, e.kind.value, e.message)
                    raise

                if attempt < self.max_retries:
                    backoff = self._backoff_seconds(attempt + 1)
                    logger.warning(
                        "%s transient %s, retry in %.1fs (%d/%d)",
                        label,
                        e.kind.value,
                        backoff,
                        attempt + 1,
                        self.max_retries,
                    )
                    await self._sleep(backoff)
                    continue

                logger.error("%s exhausted retries (last: %s)", label, e.message)
                raise
        raise AssertionError("unreachable")
