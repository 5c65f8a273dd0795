from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterator
import weakref

from relaygate.core.errors import NotInitializedError
from relaygate.domain.state import InstanceStatus
from relaygate.providers.protocol.base import SessionHandle
from relaygate.services.sessions.mailbox import InstanceMailbox


@dataclass
class SessionRecord:
    """Everything the gateway knows about one instance's live session.

    Records are only mutated while holding the registry lock for their
    instance id. ``generation`` changes whenever the handle is replaced or
    dropped so events from an abandoned handle can be recognised and ignored.
    """

    instance_id: str
    tenant_id: str
    name: str
    config: dict[str, Any] = field(default_factory=dict)
    state: InstanceStatus = InstanceStatus.DISCONNECTED
    handle: SessionHandle | None = None
    generation: int = 0
    reconnect_attempts: int = 0
    reconnect_epoch: int = 0
    pairing_attempts: int = 0
    pairing_code: str | None = None
    pairing_expires_at: datetime | None = None
    manual_disconnect: bool = False
    # Set on FORCE_DISCONNECTED and ERROR; only an explicit connect/restart clears it.
    terminal: bool = False
    phone: str | None = None
    display_name: str | None = None
    last_error: str | None = None
    mailbox: InstanceMailbox | None = field(default=None, repr=False)

    @property
    def live(self) -> bool:
        return self.handle is not None

    def detach_handle(self) -> SessionHandle | None:
        handle = self.handle
        self.handle = None
        self.generation += 1
        return handle

    def clear_pairing(self) -> None:
        self.pairing_code = None
        self.pairing_expires_at = None


class SessionRegistry:
    """Single owner of session records, at most one per instance id."""

    def __init__(self) -> None:
        self._records: dict[str, SessionRecord] = {}
        # Held or awaited locks stay referenced by their users; idle ones are dropped.
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def lock_for(self, instance_id: str) -> asyncio.Lock:
        lock = self._locks.get(instance_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[instance_id] = lock
        return lock

    def get(self, instance_id: str) -> SessionRecord | None:
        return self._records.get(instance_id)

    def require(self, instance_id: str) -> SessionRecord:
        record = self._records.get(instance_id)
        if record is None:
            raise NotInitializedError(f"Instance {instance_id} is not initialized")
        return record

    def register(self, record: SessionRecord) -> SessionRecord:
        # Keep the existing record when one is already registered for the id.
        existing = self._records.get(record.instance_id)
        if existing is not None:
            return existing
        self._records[record.instance_id] = record
        return record

    def remove(self, instance_id: str) -> SessionRecord | None:
        return self._records.pop(instance_id, None)

    def all(self) -> list[SessionRecord]:
        return list(self._records.values())

    def for_tenant(self, tenant_id: str) -> list[SessionRecord]:
        return [record for record in self._records.values() if record.tenant_id == tenant_id]

    def __contains__(self, instance_id: object) -> bool:
        return instance_id in self._records

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[SessionRecord]:
        return iter(self.all())
