from __future__ import annotations

import asyncio
import json

import pytest

from relaygate.core.errors import NotFoundError, ValidationError
from relaygate.services.dispatch import (
    EventDispatcher,
    build_message_received_data,
    normalize_webhook_headers,
)
from relaygate.services.resilience import BoundedTaskPool
from relaygate.services.scheduler import DelayedTaskScheduler
from relaygate.services.signing import compute_signature
from relaygate.tests.utils.instances import (
    create_test_instance,
    create_test_subscription,
    wait_until,
)
from relaygate.tests.utils.webhooks import WebhookReceiver


def _dispatcher(session_factory, settings, receiver: WebhookReceiver) -> EventDispatcher:
    return EventDispatcher(
        session_factory=session_factory,
        scheduler=DelayedTaskScheduler(),
        pool=BoundedTaskPool("webhooks-test", 4),
        settings=settings,
        transport=receiver.transport,
    )


async def _settle(dispatcher: EventDispatcher, instance_id: str) -> None:
    # Wait for in-flight attempts and every scheduled retry to finish.
    async def _idle() -> bool:
        await dispatcher.pool.join()
        return not dispatcher.pending_retries(instance_id) and dispatcher.pool.outstanding == 0

    await wait_until(_idle, message="dispatcher did not settle")


def test_reserved_headers_are_rejected() -> None:
    assert normalize_webhook_headers({" X-Tenant-Trace ": " abc "}) == {"X-Tenant-Trace": "abc"}
    with pytest.raises(ValidationError):
        normalize_webhook_headers({"X-Webhook-Signature": "forged"})
    with pytest.raises(ValidationError):
        normalize_webhook_headers({"content-type": "text/plain"})
    with pytest.raises(ValidationError):
        normalize_webhook_headers({" ": "empty"})


def test_message_payloads_carry_metadata_only() -> None:
    data = build_message_received_data(
        {"from": "a", "to": "b", "messageType": "text", "timestamp": "t", "messageId": "m", "text": "secret"}
    )
    assert "text" not in data
    assert data["messageId"] == "m"


@pytest.mark.asyncio
async def test_successful_delivery_is_signed_over_the_exact_body(session_factory, settings) -> None:
    receiver = WebhookReceiver()
    instance_id = await create_test_instance(session_factory, name="Front desk")
    await create_test_subscription(
        session_factory, instance_id, secret="whsec-42", headers={"X-Tenant-Trace": "trace-1"}
    )
    dispatcher = _dispatcher(session_factory, settings, receiver)

    delivery_id = dispatcher.dispatch(instance_id, "instance.status", {"status": "CONNECTED"})
    assert delivery_id is not None
    await _settle(dispatcher, instance_id)

    assert len(receiver.requests) == 1
    request = receiver.requests[0]
    assert request.headers["X-Webhook-Signature"] == compute_signature("whsec-42", request.content)
    assert request.headers["X-Webhook-Event"] == "instance.status"
    assert request.headers["X-Webhook-Instance"] == instance_id
    assert request.headers["X-Tenant-Trace"] == "trace-1"
    assert request.headers["Content-Type"] == "application/json"
    envelope = json.loads(request.content)
    assert envelope["event"] == "instance.status"
    assert envelope["instance"] == {"id": instance_id, "name": "Front desk"}
    assert envelope["data"] == {"status": "CONNECTED"}
    assert "timestamp" in envelope

    stats = await dispatcher.delivery_stats(instance_id)
    assert stats["successful_deliveries"] == 1
    assert stats["failed_deliveries"] == 0
    assert stats["success_rate"] == 100.0


@pytest.mark.asyncio
async def test_always_failing_endpoint_gets_four_attempts_then_one_failure(session_factory, settings) -> None:
    receiver = WebhookReceiver(default_status=500)
    instance_id = await create_test_instance(session_factory)
    await create_test_subscription(session_factory, instance_id)
    dispatcher = _dispatcher(session_factory, settings, receiver)

    dispatcher.dispatch(instance_id, "message.sent", {"messageId": "m1"})
    await receiver.wait_for(4)
    await _settle(dispatcher, instance_id)
    await asyncio.sleep(0.05)

    assert len(receiver.requests) == 4
    # Every attempt carries identical bytes and therefore the same signature.
    assert len({request.content for request in receiver.requests}) == 1
    stats = await dispatcher.delivery_stats(instance_id)
    assert stats["failed_deliveries"] == 1
    assert stats["successful_deliveries"] == 0
    assert stats["last_error"] == "receiver responded with HTTP 500"


@pytest.mark.asyncio
async def test_retry_recovers_after_transport_errors(session_factory, settings) -> None:
    receiver = WebhookReceiver(statuses=[503, 502, 200])
    instance_id = await create_test_instance(session_factory)
    await create_test_subscription(session_factory, instance_id)
    dispatcher = _dispatcher(session_factory, settings, receiver)

    dispatcher.dispatch(instance_id, "connection.update", {"event": "pairing_code"})
    await receiver.wait_for(3)
    await _settle(dispatcher, instance_id)

    stats = await dispatcher.delivery_stats(instance_id)
    assert (stats["successful_deliveries"], stats["failed_deliveries"]) == (1, 0)


@pytest.mark.asyncio
async def test_connection_refused_counts_as_failure(session_factory, settings) -> None:
    receiver = WebhookReceiver()
    receiver.refuse_connections = True
    settings.webhook_max_retries = 1
    instance_id = await create_test_instance(session_factory)
    await create_test_subscription(session_factory, instance_id)
    dispatcher = _dispatcher(session_factory, settings, receiver)

    dispatcher.dispatch(instance_id, "message.received", {"messageId": "m1"})
    await receiver.wait_for(2)
    await _settle(dispatcher, instance_id)

    stats = await dispatcher.delivery_stats(instance_id)
    assert stats["failed_deliveries"] == 1
    assert stats["last_error"].startswith("ConnectError")


@pytest.mark.asyncio
async def test_unsubscribed_inactive_or_missing_subscriptions_are_noops(session_factory, settings) -> None:
    receiver = WebhookReceiver()
    filtered = await create_test_instance(session_factory)
    await create_test_subscription(session_factory, filtered, events=["message.received"])
    inactive = await create_test_instance(session_factory)
    await create_test_subscription(session_factory, inactive, is_active=False)
    missing = await create_test_instance(session_factory)
    dispatcher = _dispatcher(session_factory, settings, receiver)

    dispatcher.dispatch(filtered, "instance.status", {"status": "CONNECTED"})
    dispatcher.dispatch(inactive, "instance.status", {"status": "CONNECTED"})
    dispatcher.dispatch(missing, "instance.status", {"status": "CONNECTED"})
    assert dispatcher.dispatch(filtered, "made.up", {}) is None
    await dispatcher.pool.join()

    assert receiver.requests == []
    assert (await dispatcher.delivery_stats(inactive))["total_deliveries"] == 0


@pytest.mark.asyncio
async def test_deactivating_the_subscription_drops_pending_retries(session_factory, settings) -> None:
    receiver = WebhookReceiver(default_status=500)
    settings.webhook_retry_delays_s = [0.1, 0.1, 0.1]
    instance_id = await create_test_instance(session_factory)
    await create_test_subscription(session_factory, instance_id)
    dispatcher = _dispatcher(session_factory, settings, receiver)

    dispatcher.dispatch(instance_id, "instance.status", {"status": "ERROR"})
    await receiver.wait_for(1)
    await dispatcher.configure_subscription(
        instance_id,
        url="https://hooks.example.test/relaygate",
        events=["instance.status"],
        secret="whsec-test-secret",
        is_active=False,
    )
    await _settle(dispatcher, instance_id)

    assert len(receiver.requests) == 1
    assert (await dispatcher.delivery_stats(instance_id))["failed_deliveries"] == 0


@pytest.mark.asyncio
async def test_cancel_instance_clears_scheduled_retries(session_factory, settings) -> None:
    receiver = WebhookReceiver(default_status=500)
    settings.webhook_retry_delays_s = [1.0, 1.0, 1.0]
    instance_id = await create_test_instance(session_factory)
    await create_test_subscription(session_factory, instance_id)
    dispatcher = _dispatcher(session_factory, settings, receiver)

    dispatcher.dispatch(instance_id, "instance.status", {"status": "ERROR"})
    await wait_until(lambda: len(dispatcher.pending_retries(instance_id)) == 1)
    assert dispatcher.cancel_instance(instance_id) == 1
    assert dispatcher.pending_retries(instance_id) == []


@pytest.mark.asyncio
async def test_cancel_instance_stops_in_flight_and_queued_deliveries(session_factory, settings) -> None:
    receiver = WebhookReceiver(default_status=500)
    receiver.gate = asyncio.Event()
    instance_id = await create_test_instance(session_factory)
    await create_test_subscription(session_factory, instance_id)
    dispatcher = EventDispatcher(
        session_factory=session_factory,
        scheduler=DelayedTaskScheduler(),
        pool=BoundedTaskPool("webhooks-test", 1),
        settings=settings,
        transport=receiver.transport,
    )

    dispatcher.dispatch(instance_id, "instance.status", {"status": "ERROR"})
    # Waits behind the blocked POST for the single pool slot.
    dispatcher.dispatch(instance_id, "instance.status", {"status": "DISCONNECTED"})
    await receiver.wait_for(1)
    dispatcher.cancel_instance(instance_id)
    receiver.gate.set()
    await _settle(dispatcher, instance_id)
    await asyncio.sleep(0.05)

    assert len(receiver.requests) == 1
    assert dispatcher.pending_retries(instance_id) == []
    assert (await dispatcher.delivery_stats(instance_id))["failed_deliveries"] == 0

    # Events raised after the cancellation are delivered normally.
    receiver.default_status = 200
    dispatcher.dispatch(instance_id, "instance.status", {"status": "CONNECTING"})
    await _settle(dispatcher, instance_id)
    assert len(receiver.requests) == 2
    assert (await dispatcher.delivery_stats(instance_id))["successful_deliveries"] == 1


@pytest.mark.asyncio
async def test_send_test_reports_inline_without_retries(session_factory, settings) -> None:
    receiver = WebhookReceiver(statuses=[200, 404])
    instance_id = await create_test_instance(session_factory)
    # The test event bypasses the subscribed event filter.
    await create_test_subscription(session_factory, instance_id, events=["message.sent"])
    dispatcher = _dispatcher(session_factory, settings, receiver)

    ok = await dispatcher.send_test(instance_id)
    failed = await dispatcher.send_test(instance_id)

    assert ok.success and ok.status_code == 200
    assert not failed.success and failed.status_code == 404
    assert len(receiver.requests) == 2
    assert receiver.payloads("test")[0]["data"]["message"] == "This is a test webhook from RelayGate"
    stats = await dispatcher.delivery_stats(instance_id)
    assert (stats["successful_deliveries"], stats["failed_deliveries"], stats["success_rate"]) == (1, 1, 50.0)

    bare = await create_test_instance(session_factory)
    with pytest.raises(NotFoundError):
        await dispatcher.send_test(bare)


@pytest.mark.asyncio
async def test_configure_subscription_validates_input(session_factory, settings) -> None:
    dispatcher = _dispatcher(session_factory, settings, WebhookReceiver())
    instance_id = await create_test_instance(session_factory)

    with pytest.raises(ValidationError):
        await dispatcher.configure_subscription(instance_id, url="ftp://x", events=[], secret="s")
    with pytest.raises(ValidationError):
        await dispatcher.configure_subscription(
            instance_id, url="https://x.test", events=["bogus.event"], secret="s"
        )
    with pytest.raises(ValidationError):
        await dispatcher.configure_subscription(
            instance_id, url="https://x.test", events=[], secret="s", headers={"User-Agent": "x"}
        )
    with pytest.raises(NotFoundError):
        await dispatcher.configure_subscription("nope", url="https://x.test", events=[], secret="s")

    row = await dispatcher.configure_subscription(
        instance_id,
        url=" https://x.test/hook ",
        events=["message.sent", "message.sent", "instance.status"],
        secret="s3cret",
    )
    assert row.url == "https://x.test/hook"
    assert row.events == ["message.sent", "instance.status"]
