"""Per-user serialization of inbound events and disconnect handling."""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict


class UserSequencer:
    """
    One ``asyncio.Lock`` per user.

    Events of the same user run one at a time in arrival order; different
    users never wait on each other. Locks are dropped once nobody holds or
    waits on them.
    """

    def __init__(self):
        self._locks: Dict[int, asyncio.Lock] = {}
        self._users: Dict[int, int] = {}

    @asynccontextmanager
    async def hold(self, user_id: int) -> AsyncIterator[None]:
        lock = self._locks.setdefault(user_id, asyncio.Lock())
        self._users[user_id] = self._users.get(user_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._users[user_id] - 1
            if remaining:
                self._users[user_id] = remaining
            else:
                self._users.pop(user_id, None)
                self._locks.pop(user_id, None)

    def active_users(self) -> int:
        return len(self._locks)
