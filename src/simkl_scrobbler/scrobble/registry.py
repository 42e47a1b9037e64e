from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager

from .models import PendingJobHandle


class PendingJobRegistry:
    """
    user_key -> the one job currently scheduled for that user.

    Lookups and writes are plain dict operations (atomic on the event loop).
    Multi-step sequences (lookup, cancel, enqueue, record) run under `locked(user_key)`,
    a per-user lock, so different users never wait on each other.
    """

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._handles: dict[str, PendingJobHandle] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    @asynccontextmanager
    async def locked(self, user_key: str) -> AsyncIterator[None]:
        lock = self._locks.get(user_key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[user_key] = lock
        self._lock_users[user_key] = self._lock_users.get(user_key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            n = self._lock_users.get(user_key, 1) - 1
            if n <= 0:
                self._lock_users.pop(user_key, None)
                self._locks.pop(user_key, None)
            else:
                self._lock_users[user_key] = n

    def record(self, user_key: str, job_id: str, *, fire_at: float | None = None) -> PendingJobHandle:
        """Make `job_id` the sole tracked job for `user_key` (overwrites)."""
        now = self._clock()
        handle = PendingJobHandle(
            job_id=str(job_id),
            armed_at=now,
            fire_at=float(fire_at) if fire_at is not None else now,
        )
        self._handles[user_key] = handle
        return handle

    def lookup(self, user_key: str) -> str | None:
        h = self._handles.get(user_key)
        return h.job_id if h is not None else None

    def handle(self, user_key: str) -> PendingJobHandle | None:
        return self._handles.get(user_key)

    def clear(self, user_key: str, job_id: str | None = None) -> bool:
        """
        Remove the mapping; clearing an absent key is a no-op.

        With `job_id`, only removes the mapping if it still points at that job.
        """
        h = self._handles.get(user_key)
        if h is None:
            return False
        if job_id is not None and h.job_id != str(job_id):
            return False
        del self._handles[user_key]
        return True

    def __len__(self) -> int:
        return len(self._handles)

    def __contains__(self, user_key: object) -> bool:
        return user_key in self._handles
