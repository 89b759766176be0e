"""Per-instance serialization of engine mutations."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional

from .errors import LockTimeout


class InstanceLocks:
    """One ``asyncio.Lock`` per workflow instance.

    Every mutating engine call on an instance runs while holding its lock, so
    reading the step set, evaluating joins and committing never interleave
    for the same instance. Other instances are unaffected. The repository's
    version check covers writers in other processes.
    """

    def __init__(self, timeout: Optional[float] = None) -> None:
        self._timeout = timeout
        self._locks: Dict[str, asyncio.Lock] = {}
        self._holders: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, instance_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(instance_id, asyncio.Lock())
        self._holders[instance_id] = self._holders.get(instance_id, 0) + 1
        try:
            try:
                if self._timeout is None:
                    await lock.acquire()
                else:
                    await asyncio.wait_for(lock.acquire(), self._timeout)
            except asyncio.TimeoutError:
                raise LockTimeout(instance_id, self._timeout) from None
            try:
                yield
            finally:
                lock.release()
        finally:
            self._holders[instance_id] -= 1
            if not self._holders[instance_id]:
                del self._holders[instance_id]
                self._locks.pop(instance_id, None)

    def is_locked(self, instance_id: str) -> bool:
        lock = self._locks.get(instance_id)
        return bool(lock and lock.locked())
