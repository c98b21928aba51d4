"""
Background dispatcher: detached asyncio jobs, serialized per key.

``submit`` schedules a coroutine and returns at once; the request that
submitted it never waits for it.  Jobs sharing a key run one after
another in submission order, jobs with different keys run concurrently
(optionally bounded by a global semaphore).  A failing job is logged
with its traceback and counted, never re-raised: nobody is left waiting
for its result.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Hashable

logger = logging.getLogger(__name__)

JobFactory = Callable[[], Awaitable[None]]


class BackgroundDispatcher:
    def __init__(self, max_concurrency: int | None = None) -> None:
        self._tasks: set[asyncio.Task] = set()
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._holders: dict[Hashable, int] = {}
        self._semaphore = asyncio.Semaphore(max_concurrency) if max_concurrency else None
        self._completed = 0
        self._failed = 0

    def submit(self, key: Hashable, job: JobFactory, *, name: str | None = None) -> asyncio.Task:
        """Schedule *job* under *key* without awaiting it."""
        # Registering under the key before the task first runs keeps the
        # per-key lock queue in submission order.
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._holders[key] = self._holders.get(key, 0) + 1

        task = asyncio.get_running_loop().create_task(self._run(key, lock, job), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, key: Hashable, lock: asyncio.Lock, job: JobFactory) -> None:
        try:
            async with lock:
                if self._semaphore is None:
                    await job()
                else:
                    async with self._semaphore:
                        await job()
        except Exception:
            self._failed += 1
            logger.exception("Background job failed for key=%r", key)
        else:
            self._completed += 1
        finally:
            self._holders[key] -= 1
            if self._holders[key] == 0:
                del self._holders[key]
                del self._locks[key]

    async def drain(self, timeout: float | None = None) -> bool:
        """
        Wait for every job submitted so far.

        Returns False when *timeout* expired with jobs still running; those
        jobs are left to finish on their own, never cancelled.
        """
        if not self._tasks:
            return True
        _, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        if pending:
            logger.warning("%d background job(s) still running after drain", len(pending))
            return False
        return True

    @property
    def pending(self) -> int:
        return len(self._tasks)

    @property
    def stats(self) -> dict:
        return {
            "pending": self.pending,
            "completed": self._completed,
            "failed": self._failed,
        }
