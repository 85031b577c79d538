"""
Job-level concurrency gate.

Bounds how many jobs may be inside the orchestrator at once. Jobs over
the limit wait in FIFO order for a free slot instead of being rejected.
"""

import asyncio
from collections import deque
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Hashable

from .utils import get_logger

logger = get_logger(__name__)


class JobConcurrencyGate:
    """
    FIFO admission of alignment jobs.

    Slots are counted per admission, so two runs of the same job id hold
    two slots.
    """

    def __init__(self, max_concurrent: int = 2):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.max_concurrent = max_concurrent
        self._running = 0
        self._waiters: deque = deque()
        self.completed = 0

    @property
    def running(self) -> int:
        return self._running

    @property
    def waiting(self) -> int:
        return len(self._waiters)

    async def acquire(self, job_id: Hashable):
        if self._running < self.max_concurrent and not self._waiters:
            self._running += 1
            logger.debug(f"Job {job_id} admitted ({self.running}/{self.max_concurrent})")
            return

        future = asyncio.get_running_loop().create_future()
        entry = (job_id, future)
        self._waiters.append(entry)
        logger.info(f"Job {job_id} queued at position {len(self._waiters)}")

        try:
            await future
        except asyncio.CancelledError:
            if entry in self._waiters:
                self._waiters.remove(entry)
            elif future.done() and not future.cancelled():
                # Slot was handed over just before cancellation; the job never ran
                self._free_slot()
            raise

    def release(self, job_id: Hashable):
        """Give back the slot of a finished job."""
        self.completed += 1
        logger.debug(f"Job {job_id} finished")
        self._free_slot()

    def _free_slot(self):
        self._running = max(0, self._running - 1)

        while self._waiters and self._running < self.max_concurrent:
            next_id, future = self._waiters.popleft()
            if future.done():
                continue
            self._running += 1
            future.set_result(None)
            logger.debug(f"Job {next_id} admitted from queue")

    @asynccontextmanager
    async def slot(self, job_id: Hashable) -> AsyncIterator[None]:
        """Hold a job slot for the duration of the block."""
        await self.acquire(job_id)
        try:
            yield
        finally:
            self.release(job_id)

    def get_stats(self) -> Dict:
        return {
            "running": self.running,
            "waiting": self.waiting,
            "max_concurrent": self.max_concurrent,
            "completed": self.completed,
        }
