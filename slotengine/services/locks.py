"""
Per-resource serialization scopes for the check-then-write booking sequence.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Iterable, List, Optional

from ..domain.exceptions import ConcurrencyTimeout

logger = logging.getLogger(__name__)


class ResourceLockManager:
    """
    One ``asyncio.Lock`` per resource id.

    Multi-resource scopes take their locks in sorted id order so two bookings
    on overlapping resource sets cannot deadlock. The whole acquisition is
    bounded by a single deadline; on expiry every lock already taken is
    released and ``ConcurrencyTimeout`` is raised.
    """

    def __init__(self, timeout_seconds: float = 5.0) -> None:
        self.timeout_seconds = timeout_seconds
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, resource_id: str) -> asyncio.Lock:
        lock = self._locks.get(resource_id)
        if lock is None:
            lock = self._locks[resource_id] = asyncio.Lock()
        return lock

    def is_locked(self, resource_id: str) -> bool:
        lock = self._locks.get(resource_id)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(
        self,
        resource_ids: Iterable[str],
        timeout: Optional[float] = None,
    ) -> AsyncIterator[None]:
        """
        Hold the locks of all ``resource_ids`` for the duration of the block.

        Raises:
            ConcurrencyTimeout: If the locks cannot be taken within ``timeout``
        """
        ordered = sorted(set(resource_ids))
        loop = asyncio.get_running_loop()
        deadline = loop.time() + (timeout if timeout is not None else self.timeout_seconds)
        acquired: List[asyncio.Lock] = []

        try:
            for resource_id in ordered:
                lock = self._lock_for(resource_id)
                remaining = deadline - loop.time()
                if remaining <= 0 and lock.locked():
                    raise ConcurrencyTimeout(f"Resource '{resource_id}' is busy, try again")
                try:
                    await asyncio.wait_for(lock.acquire(), timeout=max(remaining, 0.001))
                except asyncio.TimeoutError:
                    logger.warning("Timed out waiting for resource %s", resource_id)
                    raise ConcurrencyTimeout(f"Resource '{resource_id}' is busy, try again") from None
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()
