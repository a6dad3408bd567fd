"""In-process per-product mutual exclusion for check cycles."""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from pricewatch.errors import ScheduleConflict

logger = logging.getLogger(__name__)


class ProductLockManager:
    """
    Keyed asyncio.Lock map guaranteeing at most one cycle per product.

    Two ways in:
    - claim(): scheduled cycles; never waits, raises ScheduleConflict if the
      product is running or has a refresh queued.
    - claim_queued(): manual refreshes; waits behind a running cycle. Only
      one refresh may wait per product, a second raises ScheduleConflict.
    """

    def __init__(self):
        self._locks: dict[int, asyncio.Lock] = {}
        self._queued: set[int] = set()

    def _lock(self, product_id: int) -> asyncio.Lock:
        lock = self._locks.get(product_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[product_id] = lock
        return lock

    def is_running(self, product_id: int) -> bool:
        lock = self._locks.get(product_id)
        return lock is not None and lock.locked()

    def is_queued(self, product_id: int) -> bool:
        return product_id in self._queued

    @asynccontextmanager
    async def claim(self, product_id: int) -> AsyncIterator[None]:
        """
        Claim a product without waiting.

        Raises:
            ScheduleConflict: If a cycle or a queued refresh holds the product
        """
        lock = self._lock(product_id)
        # A released lock may still be promised to a queued refresh
        if lock.locked() or product_id in self._queued:
            raise ScheduleConflict(product_id)
        await lock.acquire()
        try:
            yield
        finally:
            self._release(product_id, lock)

    @asynccontextmanager
    async def claim_queued(self, product_id: int) -> AsyncIterator[None]:
        """
        Claim a product, queueing behind an in-flight cycle.

        Raises:
            ScheduleConflict: If another refresh is already queued
        """
        if product_id in self._queued:
            raise ScheduleConflict(product_id)

        lock = self._lock(product_id)
        self._queued.add(product_id)
        try:
            if lock.locked():
                logger.debug(f"Refresh for product {product_id} queued behind running cycle")
            await lock.acquire()
        finally:
            self._queued.discard(product_id)
            # Cancelled while waiting on a lock nobody holds any more
            if not lock.locked() and self._locks.get(product_id) is lock:
                del self._locks[product_id]

        try:
            yield
        finally:
            self._release(product_id, lock)

    def _release(self, product_id: int, lock: asyncio.Lock) -> None:
        lock.release()
        # A queued refresh keeps the entry until it has acquired the lock
        if product_id not in self._queued and self._locks.get(product_id) is lock:
            del self._locks[product_id]

    def active_count(self) -> int:
        return sum(1 for lock in self._locks.values() if lock.locked())

    def forget(self, product_id: int) -> None:
        """Drop the lock of a deleted product if nobody holds or awaits it."""
        lock = self._locks.get(product_id)
        if lock is not None and not lock.locked() and product_id not in self._queued:
            del self._locks[product_id]


product_locks = ProductLockManager()
