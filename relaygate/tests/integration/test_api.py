from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from relaygate.apps.api.main import create_app
from relaygate.apps.api.routes.events import _sse_message
from relaygate.tests.utils.instances import create_test_instance


HEADERS = {"X-Tenant-Id": "t1", "X-Credential-Id": "cred-1"}


def _client(runtime) -> AsyncClient:
    app = create_app(runtime=runtime)
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


@pytest.mark.asyncio
async def test_health_reports_runtime_state(runtime) -> None:
    async with _client(runtime) as client:
        unversioned = await client.get("/health")
        versioned = await client.get("/v1/health")
    assert unversioned.status_code == 200
    assert unversioned.json()["data"] == {"status": "ok", "sessions": 0, "pending_deliveries": 0}
    assert versioned.json()["meta"]["api_version"] == "v1"


@pytest.mark.asyncio
async def test_missing_identity_headers_are_rejected(runtime, session_factory) -> None:
    instance_id = await create_test_instance(session_factory)
    async with _client(runtime) as client:
        response = await client.post(f"/v1/instances/{instance_id}/connect")
    assert response.status_code == 401
    body = response.json()
    assert body["error"]["code"] == "AUTH_UNAUTHORIZED"
    assert "request_id" in body["meta"]


@pytest.mark.asyncio
async def test_connect_status_and_pairing_code_flow(runtime, protocol_client, session_factory) -> None:
    runtime.lifecycle.pairing.code_ttl_s = 30
    instance_id = await create_test_instance(session_factory)
    async with _client(runtime) as client:
        connected = await client.post(f"/v1/instances/{instance_id}/connect", headers=HEADERS)
        assert connected.status_code == 200
        assert connected.json()["data"]["state"] == "CONNECTING"
        assert connected.headers["X-RateLimit-Scope"] == "credential"

        no_code = await client.get(f"/v1/instances/{instance_id}/qr", headers=HEADERS)
        assert no_code.status_code == 404

        await protocol_client.latest(instance_id).present_code("pair-api")
        await runtime.lifecycle.wait_idle(instance_id)
        code = await client.get(f"/v1/instances/{instance_id}/qr", headers=HEADERS)
        assert code.status_code == 200
        assert code.json()["data"]["code"] == "pair-api"
        assert code.json()["data"]["attempt"] == 1

        status = await client.get(f"/v1/instances/{instance_id}/status", headers=HEADERS)
        assert status.json()["data"]["state"] == "QR_REQUIRED"
        assert status.json()["data"]["pairing_attempts"] == 1


@pytest.mark.asyncio
async def test_other_tenants_instances_are_hidden(runtime, session_factory) -> None:
    instance_id = await create_test_instance(session_factory, tenant_id="t-other")
    async with _client(runtime) as client:
        status = await client.get(f"/v1/instances/{instance_id}/status", headers=HEADERS)
        missing = await client.get("/v1/instances/does-not-exist/status", headers=HEADERS)
        stream = await client.get("/v1/tenants/t-other/events", headers=HEADERS)
    assert status.status_code == 404
    assert status.json()["error"]["code"] == "NOT_FOUND"
    assert missing.status_code == 404
    assert stream.status_code == 404


@pytest.mark.asyncio
async def test_disconnect_force_disconnect_and_restart(runtime, protocol_client, session_factory) -> None:
    instance_id = await create_test_instance(session_factory)
    async with _client(runtime) as client:
        await client.post(f"/v1/instances/{instance_id}/connect", headers=HEADERS)
        forced = await client.post(
            f"/v1/instances/{instance_id}/force-disconnect", headers=HEADERS, json={"reason": "abuse report"}
        )
        assert forced.json()["data"]["state"] == "FORCE_DISCONNECTED"
        assert forced.json()["data"]["last_error"] == "abuse report"

        invalid = await client.post(f"/v1/instances/{instance_id}/force-disconnect", headers=HEADERS, json={})
        assert invalid.status_code == 422
        assert invalid.json()["error"]["code"] == "REQUEST_VALIDATION_ERROR"

        restarted = await client.post(f"/v1/instances/{instance_id}/restart", headers=HEADERS)
        assert restarted.json()["data"]["state"] == "CONNECTING"

        disconnected = await client.post(f"/v1/instances/{instance_id}/disconnect", headers=HEADERS)
        assert disconnected.json()["data"]["state"] == "DISCONNECTED"
        assert disconnected.json()["data"]["manual_disconnect"] is True
    assert protocol_client.connect_calls[instance_id] == 2


@pytest.mark.asyncio
async def test_rejected_requests_do_not_spend_session_quota(runtime, session_factory, settings) -> None:
    instance_id = await create_test_instance(session_factory)
    other_tenant = await create_test_instance(session_factory, tenant_id="t-other")
    async with _client(runtime) as client:
        invalid_body = await client.post(f"/v1/instances/{instance_id}/force-disconnect", headers=HEADERS, json={})
        unknown = await client.post("/v1/instances/does-not-exist/connect", headers=HEADERS)
        foreign = await client.post(f"/v1/instances/{other_tenant}/restart", headers=HEADERS)
        reserved = await client.put(
            f"/v1/instances/{instance_id}/webhook",
            headers=HEADERS,
            json={
                "url": "https://hooks.example.test/in",
                "events": ["instance.status"],
                "secret": "whsec-long-enough",
                "headers": {"User-Agent": "spoofed"},
            },
        )
        connected = await client.post(f"/v1/instances/{instance_id}/connect", headers=HEADERS)
        listed = await client.get("/v1/instances", headers=HEADERS)

    assert [invalid_body.status_code, unknown.status_code, foreign.status_code, reserved.status_code] == [
        422,
        404,
        404,
        400,
    ]
    assert connected.status_code == 200
    assert connected.headers["X-RateLimit-Scope"] == "credential"
    assert connected.headers["X-RateLimit-Remaining"] == str(settings.credential_default_limit - 1)
    assert [item["instance_id"] for item in listed.json()["data"]] == [instance_id]


@pytest.mark.asyncio
async def test_logout_and_remove_session(runtime, protocol_client, session_factory) -> None:
    instance_id = await create_test_instance(session_factory)
    async with _client(runtime) as client:
        await client.post(f"/v1/instances/{instance_id}/connect", headers=HEADERS)
        logged_out = await client.post(f"/v1/instances/{instance_id}/logout", headers=HEADERS)
        assert logged_out.json()["data"]["state"] == "DISCONNECTED"
        removed = await client.delete(f"/v1/instances/{instance_id}/session", headers=HEADERS)
        assert removed.json()["data"] == {"instance_id": instance_id, "removed": True}
    assert protocol_client.erased == [instance_id, instance_id]
    assert instance_id not in runtime.lifecycle.registry


@pytest.mark.asyncio
async def test_send_message_endpoint_and_quota_rejection(runtime, protocol_client, session_factory, settings) -> None:
    settings.plan_basic_monthly_messages = 1
    instance_id = await create_test_instance(session_factory)
    await runtime.lifecycle.initialize(instance_id)
    await runtime.lifecycle.connect(instance_id)
    async with _client(runtime) as client:
        not_connected = await client.post(
            f"/v1/instances/{instance_id}/messages", headers=HEADERS, json={"to": "1555", "content": {"text": "x"}}
        )
        assert not_connected.status_code == 400
        assert not_connected.json()["error"]["code"] == "VALIDATION_ERROR"

        # The rejected send above already spent the single monthly message.
        await protocol_client.latest(instance_id).open()
        await runtime.lifecycle.wait_idle(instance_id)
        rejected = await client.post(
            f"/v1/instances/{instance_id}/messages", headers=HEADERS, json={"to": "1555", "content": {"text": "y"}}
        )
    assert rejected.status_code == 429
    body = rejected.json()
    assert body["error"]["code"] == "QUOTA_EXCEEDED"
    assert body["error"]["details"]["scope"] == "tenant"
    assert body["error"]["details"]["limit"] == 1
    assert rejected.headers["X-RateLimit-Remaining"] == "0"
    assert int(rejected.headers["Retry-After"]) >= 0
    assert protocol_client.latest(instance_id).sent == []


@pytest.mark.asyncio
async def test_send_message_endpoint_success(runtime, protocol_client, session_factory) -> None:
    instance_id = await create_test_instance(session_factory)
    await runtime.lifecycle.initialize(instance_id)
    await runtime.lifecycle.connect(instance_id)
    await protocol_client.latest(instance_id).open()
    await runtime.lifecycle.wait_idle(instance_id)
    async with _client(runtime) as client:
        response = await client.post(
            f"/v1/instances/{instance_id}/messages",
            headers=HEADERS,
            json={"to": "15551112222", "content": {"type": "image", "url": "https://cdn.example.test/a.png"}},
        )
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["to"] == "15551112222"
    assert data["message_type"] == "image"
    assert data["status"] == "sent"
    assert response.headers["X-RateLimit-Limit"]


@pytest.mark.asyncio
async def test_webhook_configuration_test_and_stats(runtime, session_factory, webhook_receiver) -> None:
    instance_id = await create_test_instance(session_factory)
    async with _client(runtime) as client:
        missing = await client.post(f"/v1/instances/{instance_id}/webhook/test", headers=HEADERS)
        assert missing.status_code == 404

        configured = await client.put(
            f"/v1/instances/{instance_id}/webhook",
            headers=HEADERS,
            json={
                "url": "https://hooks.example.test/in",
                "events": ["instance.status"],
                "secret": "whsec-long-enough",
                "headers": {"X-Team": "support"},
            },
        )
        assert configured.status_code == 200
        assert "secret" not in configured.json()["data"]
        assert configured.json()["data"]["headers"] == {"X-Team": "support"}

        reserved = await client.put(
            f"/v1/instances/{instance_id}/webhook",
            headers=HEADERS,
            json={
                "url": "https://hooks.example.test/in",
                "events": [],
                "secret": "whsec-long-enough",
                "headers": {"X-Webhook-Event": "spoofed"},
            },
        )
        assert reserved.status_code == 400

        tested = await client.post(f"/v1/instances/{instance_id}/webhook/test", headers=HEADERS)
        assert tested.json()["data"]["success"] is True
        assert tested.json()["data"]["status_code"] == 200

        stats = await client.get(f"/v1/instances/{instance_id}/webhook/stats", headers=HEADERS)
    data = stats.json()["data"]
    assert data["successful_deliveries"] == 1
    assert data["total_deliveries"] == 1
    assert data["success_rate"] == 100.0
    assert webhook_receiver.requests[0].headers["X-Team"] == "support"


def test_sse_message_framing() -> None:
    frame = _sse_message({"type": "status", "instance_id": "i1", "new_status": "CONNECTED"})
    assert frame.startswith("event: status\n")
    assert frame.endswith("\n\n")
    assert 'data: {"type":"status","instance_id":"i1","new_status":"CONNECTED"}' in frame
