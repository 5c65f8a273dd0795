from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

from relaygate.providers.protocol.base import EventListener, ProtocolEvent


logger = logging.getLogger(__name__)

EventHandler = Callable[[int, ProtocolEvent], Awaitable[None]]


class InstanceMailbox:
    """Bounded per-instance queue drained by exactly one worker task.

    Protocol callbacks only enqueue; the worker applies events in arrival
    order. A full queue makes the producing callback wait.
    """

    def __init__(self, instance_id: str, handler: EventHandler, *, maxsize: int = 256) -> None:
        self.instance_id = instance_id
        self._handler = handler
        self._queue: asyncio.Queue[tuple[int, ProtocolEvent]] = asyncio.Queue(maxsize=max(1, maxsize))
        self._worker: asyncio.Task[None] | None = None
        self._stopped = False

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def start(self) -> None:
        if self._stopped or self.running:
            return
        self._worker = asyncio.create_task(self._run(), name=f"mailbox:{self.instance_id}")

    def listener_for(self, generation: int) -> EventListener:
        # Tag every event with the handle generation that produced it.
        async def _listener(event: ProtocolEvent) -> None:
            if self._stopped:
                logger.debug("mailbox_stopped_drop instance_id=%s", self.instance_id)
                return
            await self._queue.put((generation, event))

        return _listener

    async def _run(self) -> None:
        while True:
            generation, event = await self._queue.get()
            try:
                await self._handler(generation, event)
            except asyncio.CancelledError:
                raise
            except Exception:  # noqa: BLE001 - one bad event must not kill the instance worker.
                logger.exception(
                    "mailbox_event_failed instance_id=%s event=%s", self.instance_id, type(event).__name__
                )
            finally:
                self._queue.task_done()

    def pending(self) -> int:
        return self._queue.qsize()

    async def join(self) -> None:
        # Wait until every queued event has been handled.
        if self.running:
            await self._queue.join()

    async def stop(self) -> None:
        self._stopped = True
        worker = self._worker
        self._worker = None
        if worker is None or worker is asyncio.current_task():
            return
        worker.cancel()
        await asyncio.gather(worker, return_exceptions=True)
