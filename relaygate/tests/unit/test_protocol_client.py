from __future__ import annotations

import pytest

from relaygate.core.errors import ProtocolConnectionError, ProviderConfigError
from relaygate.domain.state import CloseReason
from relaygate.providers.protocol.base import ConnectionUpdate, SessionUser
from relaygate.providers.protocol.factory import get_protocol_client
from relaygate.providers.protocol.fake import FakeProtocolClient


def test_session_user_phone_strips_device_and_server() -> None:
    assert SessionUser(id="15551234567:3@s.example.net").phone == "15551234567"
    assert SessionUser(id="15551234567@s.example.net").phone == "15551234567"


def test_factory_resolves_fake_and_import_paths() -> None:
    assert isinstance(get_protocol_client("fake"), FakeProtocolClient)
    client = get_protocol_client("relaygate.providers.protocol.fake:FakeProtocolClient")
    assert isinstance(client, FakeProtocolClient)
    with pytest.raises(ProviderConfigError):
        get_protocol_client("carrier-pigeon")
    with pytest.raises(ProviderConfigError):
        get_protocol_client("relaygate.does_not_exist:factory")
    with pytest.raises(ProviderConfigError):
        get_protocol_client("relaygate.providers.protocol.fake:missing")


@pytest.mark.asyncio
async def test_fake_handle_routes_events_to_the_listener() -> None:
    client = FakeProtocolClient()
    events = []

    async def listener(event) -> None:
        events.append(event)

    handle = await client.connect("i1", {}, listener)
    code = await handle.present_code("pair-1")
    await handle.open()
    await handle.close(CloseReason.TIMED_OUT)

    assert code == "pair-1"
    assert events[0] == ConnectionUpdate(pairing_code="pair-1")
    assert events[1].state == "open"
    assert events[2].close_reason == CloseReason.TIMED_OUT
    assert "i1" in client.credentials


@pytest.mark.asyncio
async def test_fake_client_can_fail_connects_and_erase_credentials() -> None:
    client = FakeProtocolClient()
    client.fail_connects["i1"] = 1

    async def listener(event) -> None:
        return None

    with pytest.raises(ProtocolConnectionError):
        await client.connect("i1", {}, listener)
    handle = await client.connect("i1", {}, listener)
    assert client.connect_calls["i1"] == 2

    with pytest.raises(ProtocolConnectionError):
        await handle.send_message("15550001111", {"text": "hi"})
    await handle.open()
    result = await handle.send_message("15550001111", {"text": "hi"})
    assert result.target_id == "15550001111"

    await handle.end()
    assert client.live_handles("i1") == []
    await client.erase_credentials("i1")
    assert "i1" not in client.credentials
    assert client.erased == ["i1"]
