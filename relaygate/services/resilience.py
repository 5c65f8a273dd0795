from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable


logger = logging.getLogger(__name__)


class BoundedTaskPool:
    """Fire-and-forget background work with a concurrency ceiling.

    Submitted work starts immediately as a task but waits on a semaphore before
    running, so at most ``limit`` jobs execute at once. ``drain`` waits for
    outstanding work and cancels whatever is left after the grace period.
    """

    def __init__(self, name: str, limit: int) -> None:
        # Use asyncio semaphores to cap concurrency for outbound calls.
        self._name = name
        self._limit = max(1, limit)
        self._sem = asyncio.Semaphore(self._limit)
        self._tasks: set[asyncio.Task[Any]] = set()
        self._closed = False

    @property
    def name(self) -> str:
        return self._name

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def outstanding(self) -> int:
        return len(self._tasks)

    @property
    def closed(self) -> bool:
        return self._closed

    def submit(self, job: Callable[[], Awaitable[Any]], *, label: str = "job") -> asyncio.Task[Any] | None:
        # Reject new work once draining has begun so shutdown converges.
        if self._closed:
            logger.warning("pool_closed_reject pool=%s label=%s", self._name, label)
            return None
        task = asyncio.create_task(self._run(job, label), name=f"{self._name}:{label}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, job: Callable[[], Awaitable[Any]], label: str) -> Any:
        async with self._sem:
            try:
                return await job()
            except asyncio.CancelledError:
                raise
            except Exception:  # noqa: BLE001 - background failures are logged, never propagated.
                logger.exception("pool_job_failed pool=%s label=%s", self._name, label)
                return None

    async def join(self) -> None:
        # Wait until no work is outstanding, including jobs submitted while waiting.
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def drain(self, grace_s: float) -> int:
        # Stop intake, wait up to grace_s, then cancel stragglers; returns the number cancelled.
        self._closed = True
        try:
            await asyncio.wait_for(self.join(), timeout=max(0.0, grace_s))
            return 0
        except asyncio.TimeoutError:
            remaining = list(self._tasks)
            for task in remaining:
                task.cancel()
            await asyncio.gather(*remaining, return_exceptions=True)
            logger.warning("pool_drain_forced pool=%s cancelled=%s", self._name, len(remaining))
            return len(remaining)
