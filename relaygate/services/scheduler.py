from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable


logger = logging.getLogger(__name__)


@dataclass
class _ScheduledTask:
    key: str
    group: str | None
    task: asyncio.Task[None]


class DelayedTaskScheduler:
    """Keyed, cancellable delayed callbacks.

    Scheduling a key that is already pending replaces the previous task. A key
    is released the moment its delay elapses, so a callback that re-schedules
    or cancels its own key never cancels itself. Groups let callers cancel all
    work belonging to one instance in a single call.
    """

    def __init__(self) -> None:
        self._tasks: dict[str, _ScheduledTask] = {}
        self._closed = False

    def schedule(
        self,
        key: str,
        delay_s: float,
        callback: Callable[[], Awaitable[None]],
        *,
        group: str | None = None,
    ) -> asyncio.Task[None] | None:
        if self._closed:
            logger.debug("scheduler_closed_drop key=%s", key)
            return None
        self.cancel(key)
        task = asyncio.create_task(self._run(key, max(0.0, delay_s), callback), name=f"delayed:{key}")
        self._tasks[key] = _ScheduledTask(key=key, group=group, task=task)
        return task

    async def _run(self, key: str, delay_s: float, callback: Callable[[], Awaitable[None]]) -> None:
        await asyncio.sleep(delay_s)
        entry = self._tasks.get(key)
        if entry is not None and entry.task is asyncio.current_task():
            del self._tasks[key]
        try:
            await callback()
        except asyncio.CancelledError:
            raise
        except Exception:  # noqa: BLE001 - keep scheduler alive while surfacing failures in logs.
            logger.exception("scheduled_task_failed key=%s", key)

    def cancel(self, key: str) -> bool:
        entry = self._tasks.pop(key, None)
        if entry is None:
            return False
        if entry.task is not asyncio.current_task():
            entry.task.cancel()
        return True

    def cancel_group(self, group: str) -> int:
        keys = [key for key, entry in self._tasks.items() if entry.group == group]
        for key in keys:
            self.cancel(key)
        return len(keys)

    def pending(self, key: str) -> bool:
        return key in self._tasks

    def pending_keys(self, group: str | None = None) -> list[str]:
        return [key for key, entry in self._tasks.items() if group is None or entry.group == group]

    async def close(self) -> None:
        # Stop accepting work and cancel everything still waiting.
        self._closed = True
        current = asyncio.current_task()
        tasks = [entry.task for entry in self._tasks.values() if entry.task is not current]
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
