from __future__ import annotations

from typing import Any, TypedDict


EVENT_MESSAGE_RECEIVED = "message.received"
EVENT_MESSAGE_SENT = "message.sent"
EVENT_INSTANCE_STATUS = "instance.status"
EVENT_CONNECTION_UPDATE = "connection.update"
EVENT_TEST = "test"

SUPPORTED_EVENT_TYPES = frozenset(
    {
        EVENT_MESSAGE_RECEIVED,
        EVENT_MESSAGE_SENT,
        EVENT_INSTANCE_STATUS,
        EVENT_CONNECTION_UPDATE,
        EVENT_TEST,
    }
)


class InstanceRef(TypedDict):
    id: str
    name: str


class WebhookEnvelope(TypedDict):
    event: str
    instance: InstanceRef
    data: dict[str, Any]
    timestamp: str


class StatusChangeData(TypedDict, total=False):
    status: str
    previousStatus: str | None
    timestamp: str
    phone: str | None
    displayName: str | None
    error: str | None


# Message bodies are never forwarded; only routing metadata.
MessageMetadata = TypedDict(
    "MessageMetadata",
    {
        "from": str,
        "to": str,
        "messageType": str,
        "timestamp": str,
        "messageId": str,
        "status": str,
    },
    total=False,
)
