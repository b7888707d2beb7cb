"""
Per-key asyncio locks.

Used to serialize read-modify-write sequences per driver: one registry for
wallet mutations, one for vehicle dispatch state. Locks are not reentrant,
so a holder must never await a method that takes the same registry's lock.
"""
import asyncio


class KeyedLocks:
    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    def __call__(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def __len__(self) -> int:
        return len(self._locks)
