"""Debounced, coalescing job writes.

The driver mutates a JobRecord many times per stage. Each mutation calls
schedule(); writes for the same job id are coalesced behind a timer that is
reset on every request, so only the latest state reaches the database.
flush() writes immediately (stage boundaries, failures) and flush_all()
drains everything on shutdown.
"""

import asyncio
from collections.abc import Awaitable, Callable

import structlog

from remote_optimizer.jobs.record import JobRecord

logger = structlog.get_logger(__name__)

RowWriter = Callable[[dict], Awaitable[None]]


class PersistQueue:
    def __init__(self, write: RowWriter, delay: float = 1.0):
        self._write = write
        self._delay = delay
        self._timers: dict[str, asyncio.Task] = {}
        self._records: dict[str, JobRecord] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._writers: dict[str, int] = {}

    @property
    def pending_ids(self) -> set[str]:
        return set(self._timers)

    def schedule(self, job: JobRecord) -> None:
        """Request a write of ``job``; restarts the debounce timer for its id."""
        self._cancel_timer(job.id)
        self._records[job.id] = job
        self._timers[job.id] = asyncio.create_task(self._delayed(job.id))

    async def flush(self, job: JobRecord) -> None:
        """Write ``job`` now, dropping any pending debounced write for it."""
        self._cancel_timer(job.id)
        self._records.pop(job.id, None)
        await self._persist(job)

    async def flush_all(self) -> None:
        for job_id in list(self._timers):
            self._cancel_timer(job_id)
            job = self._records.pop(job_id, None)
            if job is not None:
                await self._persist(job)

    def _cancel_timer(self, job_id: str) -> None:
        timer = self._timers.pop(job_id, None)
        if timer is not None and not timer.done():
            timer.cancel()

    async def _delayed(self, job_id: str) -> None:
        await asyncio.sleep(self._delay)
        # Detach before writing so a concurrent flush cannot cancel a write in progress
        self._timers.pop(job_id, None)
        job = self._records.pop(job_id, None)
        if job is not None:
            await self._persist(job)

    @property
    def lock_count(self) -> int:
        return len(self._locks)

    async def _persist(self, job: JobRecord) -> None:
        lock = self._locks.setdefault(job.id, asyncio.Lock())
        self._writers[job.id] = self._writers.get(job.id, 0) + 1
        try:
            async with lock:
                # Serialized inside the lock so writes land in mutation order
                row = job.to_row()
                try:
                    await self._write(row)
                except Exception as exc:
                    logger.warning(
                        "remote_job_persist_failed",
                        job_id=job.id,
                        error=str(exc),
                        error_type=type(exc).__name__,
                    )
        finally:
            # The lock lives only while writes for the id are queued on it
            self._writers[job.id] -= 1
            if not self._writers[job.id]:
                del self._writers[job.id]
                self._locks.pop(job.id, None)
