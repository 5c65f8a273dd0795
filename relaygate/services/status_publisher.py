from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any


logger = logging.getLogger(__name__)


def _instance_channel(instance_id: str) -> str:
    return f"instance:{instance_id}"


def _tenant_channel(tenant_id: str) -> str:
    return f"tenant:{tenant_id}"


class StatusSubscription:
    """Bounded, async-iterable view of one publisher channel.

    Slow consumers lose the oldest notifications instead of blocking
    publishers; ``dropped`` counts how many were discarded.
    """

    def __init__(self, publisher: "StatusPublisher", channel: str, maxsize: int) -> None:
        self._publisher = publisher
        self.channel = channel
        self._queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=max(1, maxsize))
        self.dropped = 0
        self.closed = False

    def offer(self, message: dict[str, Any]) -> None:
        if self.closed:
            return
        if self._queue.full():
            # Drop the oldest entry so the newest status is always visible.
            self._queue.get_nowait()
            self.dropped += 1
        self._queue.put_nowait(message)

    async def get(self, timeout: float | None = None) -> dict[str, Any] | None:
        # Return the next message, or None when the timeout elapses first.
        if timeout is None:
            return await self._queue.get()
        try:
            return await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    def pending(self) -> int:
        return self._queue.qsize()

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._publisher.unsubscribe(self)

    def __aiter__(self) -> "StatusSubscription":
        return self

    async def __anext__(self) -> dict[str, Any]:
        if self.closed and self._queue.empty():
            raise StopAsyncIteration
        return await self._queue.get()


class StatusPublisher:
    """In-process fan-out of status changes to instance and tenant channels."""

    def __init__(self, *, queue_size: int = 100) -> None:
        self._queue_size = queue_size
        self._channels: dict[str, set[StatusSubscription]] = {}

    def subscribe_instance(self, instance_id: str) -> StatusSubscription:
        return self._subscribe(_instance_channel(instance_id))

    def subscribe_tenant(self, tenant_id: str) -> StatusSubscription:
        return self._subscribe(_tenant_channel(tenant_id))

    def _subscribe(self, channel: str) -> StatusSubscription:
        subscription = StatusSubscription(self, channel, self._queue_size)
        self._channels.setdefault(channel, set()).add(subscription)
        return subscription

    def unsubscribe(self, subscription: StatusSubscription) -> None:
        members = self._channels.get(subscription.channel)
        if members is None:
            return
        members.discard(subscription)
        if not members:
            self._channels.pop(subscription.channel, None)

    def subscriber_count(self, channel: str) -> int:
        return len(self._channels.get(channel, ()))

    def _publish(self, channel: str, message: dict[str, Any]) -> int:
        delivered = 0
        for subscription in list(self._channels.get(channel, ())):
            subscription.offer(message)
            delivered += 1
        return delivered

    def publish_status(
        self,
        *,
        instance_id: str,
        tenant_id: str,
        old_status: str | None,
        new_status: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        # Fan out one status change to the instance channel and its tenant channel.
        message = {
            "type": "status",
            "instance_id": instance_id,
            "old_status": old_status,
            "new_status": new_status,
            "metadata": dict(metadata or {}),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        delivered = self._publish(_instance_channel(instance_id), message)
        delivered += self._publish(_tenant_channel(tenant_id), message)
        logger.debug(
            "status_published instance_id=%s old=%s new=%s subscribers=%s",
            instance_id,
            old_status,
            new_status,
            delivered,
        )

    def publish_pairing_code(
        self,
        *,
        instance_id: str,
        code: str,
        expires_at: datetime,
        attempt: int,
        max_attempts: int,
    ) -> None:
        # Pairing codes are secrets of one instance; never fan out to the tenant channel.
        self._publish(
            _instance_channel(instance_id),
            {
                "type": "pairing_code",
                "instance_id": instance_id,
                "code": code,
                "expires_at": expires_at.isoformat(),
                "attempt": attempt,
                "max_attempts": max_attempts,
            },
        )
