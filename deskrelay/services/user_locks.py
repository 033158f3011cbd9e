"""Per-user asyncio locks that are dropped as soon as nobody holds or waits on them."""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional


class UserLocks:
    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, user_id: str, timeout: Optional[float] = None) -> AsyncIterator[None]:
        """Hold the user's lock. Raises asyncio.TimeoutError if `timeout` elapses first."""
        lock = self._locks.setdefault(user_id, asyncio.Lock())
        self._users[user_id] = self._users.get(user_id, 0) + 1
        try:
            if timeout is None:
                await lock.acquire()
            else:
                await asyncio.wait_for(lock.acquire(), timeout=timeout)
            try:
                yield
            finally:
                lock.release()
        finally:
            self._users[user_id] -= 1
            if not self._users[user_id]:
                del self._users[user_id]
                del self._locks[user_id]

    def locked(self, user_id: str) -> bool:
        lock = self._locks.get(user_id)
        return lock is not None and lock.locked()

    def __contains__(self, user_id: str) -> bool:
        return user_id in self._locks

    def __len__(self) -> int:
        return len(self._locks)
