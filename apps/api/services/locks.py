"""Run guards: a non-blocking single-run lock and per-key advisory locks."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Hashable
from contextlib import asynccontextmanager


class SingleRunLock:
    """
    Non-blocking guard for work that must never overlap with itself.

    A second caller does not queue; `try_acquire()` simply returns False.
    """

    def __init__(self) -> None:
        self._held = False

    @property
    def locked(self) -> bool:
        return self._held

    def try_acquire(self) -> bool:
        if self._held:
            return False
        self._held = True
        return True

    def release(self) -> None:
        self._held = False

    @asynccontextmanager
    async def hold(self) -> AsyncIterator[bool]:
        """Yield True if acquired, False if another run holds the lock."""
        acquired = self.try_acquire()
        try:
            yield acquired
        finally:
            if acquired:
                self.release()


class KeyedLock:
    """In-memory map of per-key locks; entries disappear once nobody holds or waits."""

    def __init__(self) -> None:
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._users: dict[Hashable, int] = {}

    def is_locked(self, key: Hashable) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def active_keys(self) -> list[Hashable]:
        return [key for key, lock in self._locks.items() if lock.locked()]

    @asynccontextmanager
    async def acquire(self, key: Hashable) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]
