"""Per-host politeness limiter for outgoing requests."""
import asyncio
import logging
import time
from collections import defaultdict
from typing import Dict
from urllib.parse import urlparse

logger = logging.getLogger(__name__)


class RateLimiter:
    """Spaces requests to the same host by at least ``1 / rate_per_second`` seconds."""

    def __init__(self, rate_per_second: float):
        self.rate_per_second = rate_per_second
        self.min_interval = 1.0 / rate_per_second if rate_per_second > 0 else 0.0
        self._next_slot: Dict[str, float] = defaultdict(float)
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self.total_wait = 0.0

    @staticmethod
    def host_of(url: str) -> str:
        return (urlparse(url).hostname or "").lower()

    async def acquire(self, url: str) -> float:
        """Wait for this host's next slot; returns the seconds waited."""
        if self.min_interval <= 0:
            return 0.0
        host = self.host_of(url)
        async with self._locks[host]:
            now = time.monotonic()
            wait = self._next_slot[host] - now
            if wait > 0:
                logger.debug(f"Rate limit: waiting {wait:.2f}s for {host}")
                await asyncio.sleep(wait)
                self.total_wait += wait
            self._next_slot[host] = max(now, self._next_slot[host]) + self.min_interval
            return max(wait, 0.0)
