from __future__ import annotations

import asyncio
import gc
import weakref

import pytest

from relaygate.core.errors import NotInitializedError
from relaygate.providers.protocol.base import ConnectionUpdate
from relaygate.services.sessions.mailbox import InstanceMailbox
from relaygate.services.sessions.registry import SessionRecord, SessionRegistry


def test_registry_keeps_one_record_per_instance() -> None:
    registry = SessionRegistry()
    first = registry.register(SessionRecord(instance_id="i1", tenant_id="t1", name="A"))
    second = registry.register(SessionRecord(instance_id="i1", tenant_id="t1", name="B"))
    registry.register(SessionRecord(instance_id="i2", tenant_id="t2", name="C"))

    assert second is first
    assert len(registry) == 2
    assert "i1" in registry
    assert [record.instance_id for record in registry.for_tenant("t2")] == ["i2"]
    assert registry.lock_for("i1") is registry.lock_for("i1")

    registry.remove("i1")
    with pytest.raises(NotInitializedError):
        registry.require("i1")


@pytest.mark.asyncio
async def test_idle_instance_locks_are_released_after_removal() -> None:
    registry = SessionRegistry()
    registry.register(SessionRecord(instance_id="i1", tenant_id="t1", name="A"))

    held = registry.lock_for("i1")
    async with held:
        # A held lock is shared by everyone asking for the same instance.
        assert registry.lock_for("i1") is held
        registry.remove("i1")
    released = weakref.ref(held)
    del held
    gc.collect()

    assert released() is None
    assert not registry.lock_for("i1").locked()


def test_detach_handle_bumps_the_generation() -> None:
    record = SessionRecord(instance_id="i1", tenant_id="t1", name="A", handle=object())  # type: ignore[arg-type]
    assert record.live
    assert record.detach_handle() is not None
    assert record.generation == 1
    assert record.detach_handle() is None
    assert record.generation == 2


@pytest.mark.asyncio
async def test_mailbox_applies_events_in_arrival_order() -> None:
    seen: list[tuple[int, str | None]] = []

    async def handler(generation: int, event) -> None:
        await asyncio.sleep(0)
        seen.append((generation, event.pairing_code))

    mailbox = InstanceMailbox("i1", handler, maxsize=4)
    mailbox.start()
    listener = mailbox.listener_for(3)
    for index in range(10):
        await listener(ConnectionUpdate(pairing_code=f"c{index}"))
    await mailbox.join()

    assert seen == [(3, f"c{index}") for index in range(10)]
    await mailbox.stop()
    await listener(ConnectionUpdate(pairing_code="late"))
    assert mailbox.pending() == 0


@pytest.mark.asyncio
async def test_mailbox_survives_handler_failures(caplog) -> None:
    seen: list[str | None] = []

    async def handler(generation: int, event) -> None:
        if event.pairing_code == "bad":
            raise RuntimeError("handler exploded")
        seen.append(event.pairing_code)

    mailbox = InstanceMailbox("i1", handler)
    mailbox.start()
    listener = mailbox.listener_for(0)
    await listener(ConnectionUpdate(pairing_code="bad"))
    await listener(ConnectionUpdate(pairing_code="good"))
    await mailbox.join()

    assert seen == ["good"]
    assert "mailbox_event_failed instance_id=i1" in caplog.text
    await mailbox.stop()
