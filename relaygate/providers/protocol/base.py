from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Protocol, Union

from relaygate.domain.state import CloseReason


@dataclass(frozen=True)
class SessionUser:
    # Identity reported by the protocol once a session is paired.
    id: str
    name: str | None = None

    @property
    def phone(self) -> str:
        # Protocol ids look like "<phone>:<device>@<server>"; keep the phone part only.
        return self.id.split("@", 1)[0].split(":", 1)[0]


@dataclass(frozen=True)
class ConnectionUpdate:
    # state is one of "connecting", "open", "close" or None for pairing-only updates.
    state: str | None = None
    pairing_code: str | None = None
    close_reason: CloseReason | None = None
    error: str | None = None


@dataclass(frozen=True)
class CredentialsUpdate:
    pass


@dataclass(frozen=True)
class InboundMessage:
    message_id: str
    sender_id: str
    recipient_id: str | None
    message_type: str
    timestamp: str
    from_me: bool = False


@dataclass(frozen=True)
class MessagesReceived:
    messages: list[InboundMessage]
    # "notify" marks live traffic; history syncs use other kinds and are not counted.
    kind: str = "notify"


@dataclass(frozen=True)
class ContactsUpdated:
    contacts: list[dict[str, Any]] = field(default_factory=list)


@dataclass(frozen=True)
class SendResult:
    message_id: str
    target_id: str
    timestamp: str


ProtocolEvent = Union[ConnectionUpdate, CredentialsUpdate, MessagesReceived, ContactsUpdated]
EventListener = Callable[[ProtocolEvent], Awaitable[None]]


class SessionHandle(Protocol):
    @property
    def user(self) -> SessionUser | None:
        ...

    async def send_message(self, target_id: str, content: dict[str, Any]) -> SendResult:
        ...

    async def logout(self) -> None:
        ...

    async def end(self) -> None:
        ...


class ProtocolClient(Protocol):
    async def connect(
        self,
        instance_id: str,
        config: dict[str, Any],
        listener: EventListener,
    ) -> SessionHandle:
        ...

    async def erase_credentials(self, instance_id: str) -> None:
        ...
