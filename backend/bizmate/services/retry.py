"""Bounded retry with exponential backoff for outbound calls."""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """How often and how patiently to retry one operation.

    Attempt ``n`` (1-based) that fails with a ``retry_on`` exception is
    followed by a sleep of ``backoff * multiplier ** (n - 1)`` seconds,
    capped at ``max_delay``. Other exceptions propagate immediately, as does
    the last failure once ``max_attempts`` is reached.

    Example:
        ```python
        policy = RetryPolicy(max_attempts=4, backoff=2.0, retry_on=(FeishuError,))
        await policy.run(lambda: client.send_chunk(chat_id, text))
        ```
    """
    max_attempts: int = 3
    backoff: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 30.0
    retry_on: Tuple[Type[BaseException], ...] = (Exception,)
    sleep: Callable[[float], Awaitable[None]] = field(default=asyncio.sleep, compare=False)

    def delay_for(self, attempt: int) -> float:
        return min(self.backoff * self.multiplier ** (attempt - 1), self.max_delay)

    async def run(self, operation: Callable[[], Awaitable[T]]) -> T:
        attempts = max(self.max_attempts, 1)
        for attempt in range(1, attempts + 1):
            try:
                return await operation()
            except self.retry_on as e:
                if attempt >= attempts:
                    logger.warning(f"Giving up after {attempt} attempts: {e}")
                    raise
                delay = self.delay_for(attempt)
                logger.info(f"Attempt {attempt}/{attempts} failed ({e}); retrying in {delay:.1f}s")
                await self.sleep(delay)
        raise RuntimeError("unreachable")
