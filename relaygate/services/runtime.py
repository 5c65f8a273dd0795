from __future__ import annotations

from dataclasses import dataclass
import logging

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from relaygate.core.config import Settings, get_settings
from relaygate.providers.protocol.base import ProtocolClient
from relaygate.providers.protocol.factory import get_protocol_client
from relaygate.services.dispatch import EventDispatcher
from relaygate.services.messages import MessageGateway
from relaygate.services.quota import QuotaEnforcer, RedisWindowStore, WindowStore, build_window_store
from relaygate.services.resilience import BoundedTaskPool
from relaygate.services.scheduler import DelayedTaskScheduler
from relaygate.services.sessions.lifecycle import ConnectionLifecycleManager
from relaygate.services.status_publisher import StatusPublisher


logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    # Process-wide collaborators shared by the API and background work.
    settings: Settings
    client: ProtocolClient
    scheduler: DelayedTaskScheduler
    publisher: StatusPublisher
    dispatcher: EventDispatcher
    quota: QuotaEnforcer
    lifecycle: ConnectionLifecycleManager
    messages: MessageGateway
    started: bool = False
    stopped: bool = False

    async def start(self) -> int:
        # Restore sessions that were connected before the last shutdown.
        if self.started:
            return 0
        self.started = True
        restored = await self.lifecycle.restore_sessions()
        logger.info("runtime_started restored=%s", restored)
        return restored

    async def shutdown(self, grace_s: float | None = None) -> None:
        if self.stopped:
            return
        self.stopped = True
        await self.lifecycle.shutdown(grace_s)
        store = self.quota.store
        if isinstance(store, RedisWindowStore):
            await store.close()
        logger.info("runtime_stopped")


def build_runtime(
    *,
    session_factory: async_sessionmaker[AsyncSession],
    settings: Settings | None = None,
    client: ProtocolClient | None = None,
    quota_store: WindowStore | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> Runtime:
    # Wire the gateway graph explicitly; nothing here reaches for module globals.
    settings = settings or get_settings()
    client = client or get_protocol_client(settings.protocol_client)
    scheduler = DelayedTaskScheduler()
    publisher = StatusPublisher(queue_size=settings.status_subscriber_queue_size)
    dispatcher = EventDispatcher(
        session_factory=session_factory,
        scheduler=scheduler,
        pool=BoundedTaskPool("webhooks", settings.webhook_max_concurrency),
        settings=settings,
        transport=transport,
    )
    quota = QuotaEnforcer(
        store=quota_store or build_window_store(settings, session_factory),
        session_factory=session_factory,
        settings=settings,
    )
    lifecycle = ConnectionLifecycleManager(
        client=client,
        session_factory=session_factory,
        scheduler=scheduler,
        publisher=publisher,
        dispatcher=dispatcher,
        settings=settings,
    )
    messages = MessageGateway(
        lifecycle=lifecycle,
        quota=quota,
        dispatcher=dispatcher,
        session_factory=session_factory,
    )
    lifecycle.set_message_handler(messages.handle_inbound)
    return Runtime(
        settings=settings,
        client=client,
        scheduler=scheduler,
        publisher=publisher,
        dispatcher=dispatcher,
        quota=quota,
        lifecycle=lifecycle,
        messages=messages,
    )
