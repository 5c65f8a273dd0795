from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timezone
import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from relaygate.core.errors import NotConnectedError, ProtocolConnectionError, ValidationError
from relaygate.domain.state import InstanceStatus
from relaygate.persistence.repos import usage as usage_repo
from relaygate.providers.protocol.base import MessagesReceived
from relaygate.services.dispatch import EventDispatcher
from relaygate.services.quota import ACTION_MESSAGE, QuotaDecision, QuotaEnforcer
from relaygate.services.sessions.lifecycle import ConnectionLifecycleManager
from relaygate.services.sessions.registry import SessionRecord


logger = logging.getLogger(__name__)


def _today() -> date:
    return datetime.now(timezone.utc).date()


@dataclass(frozen=True)
class SentMessage:
    message_id: str
    target_id: str
    message_type: str
    timestamp: str
    quota: QuotaDecision


def _message_type(content: dict[str, Any]) -> str:
    # Content is opaque to the gateway apart from its declared type.
    declared = content.get("type")
    if isinstance(declared, str) and declared.strip():
        return declared.strip()
    return "text" if "text" in content else "unknown"


class MessageGateway:
    """Outbound sends and inbound bookkeeping for connected sessions."""

    def __init__(
        self,
        *,
        lifecycle: ConnectionLifecycleManager,
        quota: QuotaEnforcer,
        dispatcher: EventDispatcher,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        self._lifecycle = lifecycle
        self._quota = quota
        self._dispatcher = dispatcher
        self._session_factory = session_factory

    async def _bump(self, instance_id: str, field: str, count: int = 1) -> None:
        try:
            async with self._session_factory() as session:
                await usage_repo.increment_message_stat(
                    session, instance_id=instance_id, day=_today(), field=field, count=count
                )
        except Exception:  # noqa: BLE001 - counters are advisory and never fail a send
            logger.exception("message_stat_update_failed instance_id=%s field=%s", instance_id, field)

    async def send_message(
        self,
        instance_id: str,
        *,
        credential_id: str,
        tenant_id: str,
        target: str,
        content: dict[str, Any],
    ) -> SentMessage:
        # Gate once, then send through the live handle; content never reaches webhooks.
        if not target.strip():
            raise ValidationError("target must be non-empty")
        if not isinstance(content, dict) or not content:
            raise ValidationError("content must be a non-empty object")
        decision = await self._quota.enforce(ACTION_MESSAGE, credential_id=credential_id, tenant_id=tenant_id)
        record = self._lifecycle.registry.get(instance_id)
        if record is None or record.handle is None or record.state != InstanceStatus.CONNECTED:
            raise NotConnectedError(f"Instance {instance_id} is not connected")
        message_type = _message_type(content)
        try:
            result = await record.handle.send_message(target, content)
        except Exception as exc:  # noqa: BLE001 - count the failure and report a connection error
            await self._bump(instance_id, "messages_failed")
            logger.warning("message_send_failed instance_id=%s error=%s", instance_id, exc)
            if isinstance(exc, ProtocolConnectionError):
                raise
            raise ProtocolConnectionError(f"Failed to send message: {exc}") from exc
        await self._bump(instance_id, "messages_sent")
        await self._bump(instance_id, "api_calls")
        self._dispatcher.dispatch_message_sent(
            instance_id,
            {
                "to": result.target_id,
                "messageType": message_type,
                "timestamp": result.timestamp,
                "messageId": result.message_id,
            },
        )
        return SentMessage(
            message_id=result.message_id,
            target_id=result.target_id,
            message_type=message_type,
            timestamp=result.timestamp,
            quota=decision,
        )

    async def handle_inbound(self, record: SessionRecord, event: MessagesReceived) -> None:
        # Only live traffic from other parties counts and is forwarded.
        if event.kind != "notify":
            return
        inbound = [message for message in event.messages if not message.from_me]
        if not inbound:
            return
        await self._bump(record.instance_id, "messages_received", len(inbound))
        for message in inbound:
            self._dispatcher.dispatch_message_received(
                record.instance_id,
                {
                    "from": message.sender_id,
                    "to": message.recipient_id or (record.phone or ""),
                    "messageType": message.message_type,
                    "timestamp": message.timestamp,
                    "messageId": message.message_id,
                },
            )
