from __future__ import annotations

import logging
from typing import Awaitable, Callable

from relaygate.domain.state import InstanceStatus
from relaygate.services.scheduler import DelayedTaskScheduler
from relaygate.services.sessions.registry import SessionRecord


logger = logging.getLogger(__name__)


class ReconnectionScheduler:
    """Exponential-backoff reconnects, one pending timer per instance.

    Each armed timer carries the record's epoch; cancelling bumps the epoch so
    a timer that already woke up can still tell it went stale.
    """

    def __init__(
        self,
        scheduler: DelayedTaskScheduler,
        *,
        base_delay_s: float = 5.0,
        max_attempts: int = 5,
    ) -> None:
        self._scheduler = scheduler
        self.base_delay_s = base_delay_s
        self.max_attempts = max_attempts

    @staticmethod
    def timer_key(instance_id: str) -> str:
        return f"reconnect:{instance_id}"

    def next_delay(self, record: SessionRecord) -> float | None:
        # None means the budget is spent and the caller should fail terminally.
        if record.reconnect_attempts >= self.max_attempts:
            return None
        return self.base_delay_s * (2 ** record.reconnect_attempts)

    def arm(
        self,
        record: SessionRecord,
        delay_s: float,
        fire: Callable[[str, int], Awaitable[None]],
    ) -> int:
        record.reconnect_epoch += 1
        epoch = record.reconnect_epoch
        instance_id = record.instance_id

        async def _fire() -> None:
            await fire(instance_id, epoch)

        self._scheduler.schedule(self.timer_key(instance_id), delay_s, _fire, group=instance_id)
        logger.info(
            "reconnect_scheduled instance_id=%s attempts=%s delay_s=%s",
            instance_id,
            record.reconnect_attempts,
            delay_s,
        )
        return epoch

    def cancel(self, record: SessionRecord) -> bool:
        record.reconnect_epoch += 1
        return self._scheduler.cancel(self.timer_key(record.instance_id))

    def pending(self, instance_id: str) -> bool:
        return self._scheduler.pending(self.timer_key(instance_id))

    def is_current(self, record: SessionRecord, epoch: int) -> bool:
        # A fired timer is only honoured if nothing touched the instance since it was armed.
        return (
            record.reconnect_epoch == epoch
            and not record.terminal
            and not record.manual_disconnect
            and record.handle is None
            and record.state == InstanceStatus.RECONNECTING
        )
