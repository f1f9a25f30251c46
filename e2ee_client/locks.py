"""
Serialization helpers for per-session state.

Ratchet and chain state is read, advanced and written back on every call, so
two concurrent calls for the same peer or channel would derive the same key
or lose an update. KeyedLock gives one writer per key; OperationGate lets a
wipe wait for in-flight operations and hold off new ones.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Dict, Hashable


class KeyedLock:
    """One asyncio.Lock per key, dropped once nobody holds or awaits it"""

    def __init__(self):
        self._locks: Dict[Hashable, asyncio.Lock] = {}
        self._users: Dict[Hashable, int] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable):
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def locked(self, key: Hashable) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()


class OperationGate:
    """
    Shared/exclusive gate.

    Any number of operations may run at once; an exclusive section waits for
    running operations to drain and blocks new ones until it exits.
    """

    def __init__(self):
        self._condition = asyncio.Condition()
        self._active = 0
        self._exclusive = False

    @asynccontextmanager
    async def operation(self):
        async with self._condition:
            await self._condition.wait_for(lambda: not self._exclusive)
            self._active += 1
        try:
            yield
        finally:
            async with self._condition:
                self._active -= 1
                self._condition.notify_all()

    @asynccontextmanager
    async def exclusive(self):
        async with self._condition:
            await self._condition.wait_for(lambda: not self._exclusive)
            self._exclusive = True
            await self._condition.wait_for(lambda: self._active == 0)
        try:
            yield
        finally:
            async with self._condition:
                self._exclusive = False
                self._condition.notify_all()

    @property
    def active(self) -> int:
        return self._active
