"""Per-origin politeness throttle with minimum spacing and jitter."""

import asyncio
import logging
import random
import time
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional
from urllib.parse import urlparse

from pricewatch.config import settings

logger = logging.getLogger(__name__)


def origin_of(url: str) -> str:
    """Scheme + host (+ port) of a URL, lower-cased."""
    parsed = urlparse(url)
    return f"{parsed.scheme.lower()}://{parsed.netloc.lower()}"


class DomainThrottle:
    """
    One in-flight fetch per origin, spaced by a minimum interval.

    Holding the origin's lock for the whole fetch keeps requests to the same
    site serialized; the interval is measured from the end of the previous
    fetch. Independent of the per-product locks in the worker.
    """

    def __init__(
        self,
        min_interval: Optional[float] = None,
        jitter: Optional[float] = None,
    ):
        self.min_interval = settings.domain_min_interval_seconds if min_interval is None else min_interval
        self.jitter = settings.domain_jitter_seconds if jitter is None else jitter
        self.locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self.last_request: dict[str, float] = {}
        self.domain_cooldowns: dict[str, float] = {}  # Origin -> cooldown until timestamp

    def _interval(self) -> float:
        if self.jitter > 0:
            return self.min_interval + random.uniform(0.0, self.jitter)
        return self.min_interval

    @asynccontextmanager
    async def slot(self, url: str) -> AsyncIterator[float]:
        """
        Hold the origin's fetch slot.

        Yields:
            Seconds waited before the slot was granted
        """
        origin = origin_of(url)
        async with self.locks[origin]:
            waited = 0.0
            now = time.monotonic()

            cooldown_until = self.domain_cooldowns.get(origin, 0.0)
            if now < cooldown_until:
                wait_time = cooldown_until - now
                logger.debug(f"Origin {origin} in cooldown, waiting {wait_time:.1f}s")
                await asyncio.sleep(wait_time)
                waited += wait_time
                now = time.monotonic()

            last_time = self.last_request.get(origin)
            if last_time is not None:
                wait_needed = max(0.0, self._interval() - (now - last_time))
                if wait_needed > 0:
                    logger.debug(f"Throttling {origin}: waiting {wait_needed:.2f}s")
                    await asyncio.sleep(wait_needed)
                    waited += wait_needed

            try:
                yield waited
            finally:
                self.last_request[origin] = time.monotonic()

    def set_cooldown(self, url: str, seconds: float) -> None:
        """Block requests to the URL's origin for the given duration."""
        self.domain_cooldowns[origin_of(url)] = time.monotonic() + seconds


# Global throttle instance
domain_throttle = DomainThrottle()
