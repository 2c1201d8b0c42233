import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Dict, Optional

from .errors import ConcurrentModification

logger = logging.getLogger(__name__)

class LocationLocks:
    """
    Per-location advisory locks. Attempts for the same location queue up,
    attempts for different locations never wait on each other.
    """
    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._waiters: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, location_id: str, timeout: Optional[float] = None):
        lock = self._locks.setdefault(location_id, asyncio.Lock())
        self._waiters[location_id] = self._waiters.get(location_id, 0) + 1
        try:
            if lock.locked():
                logger.info(f"Location {location_id} busy, waiting for running attempt")
            try:
                await asyncio.wait_for(lock.acquire(), timeout)
            except asyncio.TimeoutError:
                raise ConcurrentModification(
                    f"Another reconciliation for location {location_id} held the lock for more than {timeout}s"
                )
            try:
                yield
            finally:
                lock.release()
        finally:
            self._waiters[location_id] -= 1
            if self._waiters[location_id] == 0:
                # Last waiter gone
                del self._waiters[location_id]
                self._locks.pop(location_id, None)
