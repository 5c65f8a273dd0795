from __future__ import annotations

import os

# Keep the module-level engine off Postgres; tests build their own engines per test.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("QUOTA_BACKEND", "memory")
os.environ.setdefault("PROTOCOL_CLIENT", "fake")

import pytest

from relaygate.core.config import Settings, get_settings
from relaygate.domain.models import Base
from relaygate.persistence.db import build_engine, build_session_factory
from relaygate.providers.protocol.fake import FakeProtocolClient
from relaygate.services.runtime import build_runtime
from relaygate.tests.utils.webhooks import WebhookReceiver


@pytest.fixture(autouse=True)
def clear_settings_cache() -> None:
    # Settings are cached process-wide; keep env overrides from leaking between tests.
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
async def session_factory(tmp_path):
    # A file database per test gives every session its own connection.
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'relaygate.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield build_session_factory(engine)
    finally:
        await engine.dispose()


@pytest.fixture
def settings() -> Settings:
    # Shrink every delay so lifecycle and retry paths complete in milliseconds.
    return Settings(
        database_url="sqlite+aiosqlite://",
        reconnect_base_delay_s=0.01,
        reconnect_max_attempts=3,
        pairing_max_attempts=3,
        pairing_code_ttl_s=0.05,
        webhook_retry_delays_s=[0.01, 0.01, 0.01],
        webhook_max_retries=3,
        webhook_timeout_s=1.0,
        quota_backend="memory",
        quota_fail_mode="open",
        shutdown_grace_s=1.0,
        status_stream_heartbeat_s=1,
    )


@pytest.fixture
def protocol_client() -> FakeProtocolClient:
    return FakeProtocolClient()


@pytest.fixture
def webhook_receiver() -> WebhookReceiver:
    return WebhookReceiver()


@pytest.fixture
async def runtime(session_factory, settings, protocol_client, webhook_receiver):
    gateway = build_runtime(
        session_factory=session_factory,
        settings=settings,
        client=protocol_client,
        transport=webhook_receiver.transport,
    )
    try:
        yield gateway
    finally:
        await gateway.shutdown(0.5)
