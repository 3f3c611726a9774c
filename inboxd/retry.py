"""
Retry helper with exponential backoff and jitter for provider calls
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from inboxd.errors import ProviderError


logger = logging.getLogger(__name__)

T = TypeVar('T')


@dataclass
class RetryPolicy:
    """Retries retryable ProviderErrors; everything else propagates at once"""
    max_attempts: int = 5
    base_delay: float = 0.5
    factor: float = 2.0
    max_delay: float = 30.0
    jitter: float = 0.2
    sleep_fn: Callable[[float], Awaitable[None]] = asyncio.sleep

    async def execute(self, func: Callable[[], Awaitable[T]], label: str = 'request') -> T:
        attempt = 0
        while True:
            attempt += 1
            try:
                return await func()
            except ProviderError as error:
                if not error.retryable or attempt >= self.max_attempts:
                    if error.retryable:
                        logger.warning(f"{label} failed after {attempt} attempts: {error}")
                    raise
                delay = self.delay_for(attempt)
                logger.info(f"{label} failed ({error.kind}), retrying in {delay:.2f}s (attempt {attempt}/{self.max_attempts})")
                await self.sleep_fn(delay)

    def delay_for(self, attempt: int) -> float:
        """Backoff before retry number `attempt` (1-based), with +/- jitter"""
        delay = min(self.base_delay * (self.factor ** (attempt - 1)), self.max_delay)
        return delay * random.uniform(1 - self.jitter, 1 + self.jitter)
