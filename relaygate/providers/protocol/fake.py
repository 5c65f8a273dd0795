from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from relaygate.core.errors import ProtocolConnectionError
from relaygate.domain.state import CloseReason
from relaygate.providers.protocol.base import (
    ConnectionUpdate,
    EventListener,
    InboundMessage,
    MessagesReceived,
    ProtocolEvent,
    SendResult,
    SessionUser,
)


class FakeSessionHandle:
    def __init__(self, instance_id: str, listener: EventListener) -> None:
        self.instance_id = instance_id
        self.handle_id = uuid4().hex
        self._listener = listener
        self._user: SessionUser | None = None
        self.ended = False
        self.logged_out = False
        self.sent: list[tuple[str, dict[str, Any]]] = []

    @property
    def user(self) -> SessionUser | None:
        return self._user

    async def emit(self, event: ProtocolEvent) -> None:
        # Push an event through the listener exactly as a live socket would.
        await self._listener(event)

    async def present_code(self, code: str | None = None) -> str:
        code = code or f"pair-{uuid4().hex[:12]}"
        await self.emit(ConnectionUpdate(pairing_code=code))
        return code

    async def open(self, user: SessionUser | None = None) -> None:
        self._user = user or SessionUser(id=f"15550000000:1@{self.instance_id}.test", name="Fake Device")
        await self.emit(ConnectionUpdate(state="open"))

    async def close(self, reason: CloseReason = CloseReason.CONNECTION_LOST, error: str | None = None) -> None:
        self._user = None
        await self.emit(ConnectionUpdate(state="close", close_reason=reason, error=error or reason.value))

    async def receive(self, *messages: InboundMessage, kind: str = "notify") -> None:
        await self.emit(MessagesReceived(messages=list(messages), kind=kind))

    async def send_message(self, target_id: str, content: dict[str, Any]) -> SendResult:
        if self.ended or self._user is None:
            raise ProtocolConnectionError("session is not open")
        self.sent.append((target_id, content))
        return SendResult(
            message_id=uuid4().hex,
            target_id=target_id,
            timestamp=datetime.now(timezone.utc).isoformat(),
        )

    async def logout(self) -> None:
        self.logged_out = True

    async def end(self) -> None:
        self.ended = True
        self._user = None


class FakeProtocolClient:
    """In-process protocol client for local development and tests.

    Handles never touch the network; tests drive them through ``emit``,
    ``present_code``, ``open`` and ``close``.
    """

    def __init__(self) -> None:
        self.handles: dict[str, list[FakeSessionHandle]] = {}
        self.credentials: set[str] = set()
        self.erased: list[str] = []
        self.connect_calls: dict[str, int] = {}
        # Number of upcoming connect calls per instance that should fail.
        self.fail_connects: dict[str, int] = {}

    async def connect(
        self,
        instance_id: str,
        config: dict[str, Any],
        listener: EventListener,
    ) -> FakeSessionHandle:
        self.connect_calls[instance_id] = self.connect_calls.get(instance_id, 0) + 1
        pending_failures = self.fail_connects.get(instance_id, 0)
        if pending_failures > 0:
            self.fail_connects[instance_id] = pending_failures - 1
            raise ProtocolConnectionError(f"fake connect failure for {instance_id}")
        handle = FakeSessionHandle(instance_id, listener)
        self.handles.setdefault(instance_id, []).append(handle)
        self.credentials.add(instance_id)
        return handle

    async def erase_credentials(self, instance_id: str) -> None:
        self.credentials.discard(instance_id)
        self.erased.append(instance_id)

    def latest(self, instance_id: str) -> FakeSessionHandle:
        return self.handles[instance_id][-1]

    def live_handles(self, instance_id: str) -> list[FakeSessionHandle]:
        return [handle for handle in self.handles.get(instance_id, []) if not handle.ended]
