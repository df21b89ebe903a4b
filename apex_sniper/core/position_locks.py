"""
Per-position sell leases.

The monitor takes a lease without waiting (busy means skip this tick);
manual sells wait up to a timeout and then give up with PositionBusy.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Dict

from ..constants import SELL_LEASE_TIMEOUT
from ..exceptions import PositionBusy


class PositionLocks:
    def __init__(self):
        self._locks: Dict[int, asyncio.Lock] = {}

    def _lock(self, position_id: int) -> asyncio.Lock:
        lock = self._locks.get(position_id)
        if lock is None:
            lock = self._locks[position_id] = asyncio.Lock()
        return lock

    def is_busy(self, position_id: int) -> bool:
        lock = self._locks.get(position_id)
        return bool(lock and lock.locked())

    @asynccontextmanager
    async def try_lease(self, position_id: int):
        """Non-blocking lease: yields False without waiting when the position is busy"""
        lock = self._lock(position_id)
        if lock.locked():
            yield False
            return
        await lock.acquire()
        try:
            yield True
        finally:
            lock.release()

    @asynccontextmanager
    async def lease(self, position_id: int, timeout: float = SELL_LEASE_TIMEOUT):
        """Blocking lease with a timeout"""
        lock = self._lock(position_id)
        try:
            await asyncio.wait_for(lock.acquire(), timeout=timeout)
        except asyncio.TimeoutError:
            raise PositionBusy(position_id=position_id)
        try:
            yield
        finally:
            lock.release()

    def discard(self, position_id: int):
        """Forget the lock of a closed position"""
        lock = self._locks.get(position_id)
        if lock is not None and not lock.locked():
            del self._locks[position_id]
