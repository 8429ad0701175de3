"""Rate limiter for sequential comparison requests."""
import asyncio
import logging
import time
from collections import defaultdict
from typing import Dict

logger = logging.getLogger(__name__)


class RateLimiter:
    """Spaces out requests sharing the same key (one key per credential)."""

    def __init__(self, rate_per_second: float):
        self.rate_per_second = rate_per_second
        self.min_interval = 1.0 / rate_per_second if rate_per_second > 0 else 0
        self._last_request: Dict[str, float] = defaultdict(lambda: 0.0)
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def acquire(self, key: str) -> None:
        """Wait if necessary to respect the rate for ``key``."""
        async with self._locks[key]:
            elapsed = time.monotonic() - self._last_request[key]
            if self._last_request[key] and elapsed < self.min_interval:
                wait_time = self.min_interval - elapsed
                logger.debug(f"Rate limit: sleeping {wait_time:.2f}s")
                await asyncio.sleep(wait_time)
            self._last_request[key] = time.monotonic()
