from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from functools import partial
import logging
from typing import Any, Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from relaygate.core.config import Settings, get_settings
from relaygate.core.errors import (
    AlreadyExistsError,
    NotFoundError,
    ProtocolConnectionError,
    ServiceUnavailableError,
)
from relaygate.domain.state import LIVE_STATES, TERMINAL_STATES, CloseReason, InstanceStatus
from relaygate.persistence.repos import instances as instances_repo
from relaygate.providers.protocol.base import (
    ConnectionUpdate,
    ContactsUpdated,
    CredentialsUpdate,
    MessagesReceived,
    ProtocolClient,
    ProtocolEvent,
)
from relaygate.services.dispatch import EventDispatcher
from relaygate.services.scheduler import DelayedTaskScheduler
from relaygate.services.sessions.mailbox import InstanceMailbox
from relaygate.services.sessions.pairing import PAIRING_CEILING_REASON, PairingCode, PairingGovernor
from relaygate.services.sessions.reconnect import ReconnectionScheduler
from relaygate.services.sessions.registry import SessionRecord, SessionRegistry
from relaygate.services.status_publisher import StatusPublisher


logger = logging.getLogger(__name__)

MessageHandler = Callable[[SessionRecord, MessagesReceived], Awaitable[None]]

_CLEAR_PAIRING_FIELDS = {"qr_code": None, "qr_code_expires_at": None}

# Persisted statuses that restore leaves untouched.
_RESTING_STATUSES = frozenset({InstanceStatus.DISCONNECTED.value} | {state.value for state in TERMINAL_STATES})


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class SessionSnapshot:
    # Read-only view of a session for API responses and tests.
    instance_id: str
    tenant_id: str
    name: str
    state: str
    live: bool
    reconnect_attempts: int
    max_reconnect_attempts: int
    pairing_attempts: int
    max_pairing_attempts: int
    manual_disconnect: bool
    terminal: bool
    phone: str | None
    display_name: str | None
    last_error: str | None
    registered: bool = True

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class ConnectionLifecycleManager:
    """Per-instance session state machine.

    Every mutating operation and every protocol event for one instance runs
    under that instance's registry lock; protocol events arrive through the
    instance mailbox so they are applied in arrival order.
    """

    def __init__(
        self,
        *,
        client: ProtocolClient,
        session_factory: async_sessionmaker[AsyncSession],
        scheduler: DelayedTaskScheduler,
        publisher: StatusPublisher,
        dispatcher: EventDispatcher,
        settings: Settings | None = None,
        registry: SessionRegistry | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._client = client
        self._session_factory = session_factory
        self._scheduler = scheduler
        self._publisher = publisher
        self._dispatcher = dispatcher
        self._registry = registry or SessionRegistry()
        self._pairing = PairingGovernor(
            max_attempts=self._settings.pairing_max_attempts,
            code_ttl_s=self._settings.pairing_code_ttl_s,
            clock=clock,
        )
        self._reconnect = ReconnectionScheduler(
            scheduler,
            base_delay_s=self._settings.reconnect_base_delay_s,
            max_attempts=self._settings.reconnect_max_attempts,
        )
        self._message_handler: MessageHandler | None = None
        self._closing = False

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    @property
    def pairing(self) -> PairingGovernor:
        return self._pairing

    @property
    def reconnect(self) -> ReconnectionScheduler:
        return self._reconnect

    @property
    def closing(self) -> bool:
        return self._closing

    def set_message_handler(self, handler: MessageHandler | None) -> None:
        self._message_handler = handler

    # Snapshots

    def _snapshot(self, record: SessionRecord) -> SessionSnapshot:
        return SessionSnapshot(
            instance_id=record.instance_id,
            tenant_id=record.tenant_id,
            name=record.name,
            state=record.state.value,
            live=record.live,
            reconnect_attempts=record.reconnect_attempts,
            max_reconnect_attempts=self._reconnect.max_attempts,
            pairing_attempts=record.pairing_attempts,
            max_pairing_attempts=self._pairing.max_attempts,
            manual_disconnect=record.manual_disconnect,
            terminal=record.terminal,
            phone=record.phone,
            display_name=record.display_name,
            last_error=record.last_error,
        )

    def snapshot(self, instance_id: str) -> SessionSnapshot:
        return self._snapshot(self._registry.require(instance_id))

    def snapshots(self, tenant_id: str | None = None) -> list[SessionSnapshot]:
        records = self._registry.all() if tenant_id is None else self._registry.for_tenant(tenant_id)
        return [self._snapshot(record) for record in records]

    async def status(self, instance_id: str) -> SessionSnapshot:
        # Fall back to persisted state for instances without a registered session.
        record = self._registry.get(instance_id)
        if record is not None:
            return self._snapshot(record)
        async with self._session_factory() as session:
            row = await instances_repo.get_instance(session, instance_id)
        if row is None:
            raise NotFoundError(f"Instance {instance_id} not found")
        return SessionSnapshot(
            instance_id=row.id,
            tenant_id=row.tenant_id,
            name=row.name,
            state=row.status,
            live=False,
            reconnect_attempts=0,
            max_reconnect_attempts=self._reconnect.max_attempts,
            pairing_attempts=0,
            max_pairing_attempts=self._pairing.max_attempts,
            manual_disconnect=False,
            terminal=row.status in {state.value for state in TERMINAL_STATES},
            phone=row.phone,
            display_name=row.display_name,
            last_error=row.last_error,
            registered=False,
        )

    def get_pairing_code(self, instance_id: str) -> PairingCode | None:
        return self._pairing.current_code(self._registry.require(instance_id))

    async def wait_idle(self, instance_id: str) -> None:
        # Block until queued protocol events for the instance have been applied.
        record = self._registry.get(instance_id)
        if record is not None and record.mailbox is not None:
            await record.mailbox.join()

    # Persistence and fan-out

    async def _transition(
        self,
        record: SessionRecord,
        new_state: InstanceStatus,
        *,
        error: str | None = None,
        fields: dict[str, Any] | None = None,
    ) -> None:
        # Persist every transition; publish and dispatch only real state changes.
        old_state = record.state
        record.state = new_state
        if error:
            record.last_error = error
        elif new_state == InstanceStatus.CONNECTED:
            record.last_error = None
        async with self._session_factory() as session:
            await instances_repo.update_instance_status(
                session, record.instance_id, status=new_state, error=error, fields=fields
            )
        if old_state == new_state:
            return
        logger.info(
            "session_transition instance_id=%s old=%s new=%s error=%s",
            record.instance_id,
            old_state.value,
            new_state.value,
            error,
        )
        metadata: dict[str, Any] = {}
        if new_state == InstanceStatus.CONNECTED:
            metadata = {"phone": record.phone, "display_name": record.display_name}
        if error:
            metadata["error"] = error
        self._publisher.publish_status(
            instance_id=record.instance_id,
            tenant_id=record.tenant_id,
            old_status=old_state.value,
            new_status=new_state.value,
            metadata=metadata,
        )
        self._dispatcher.dispatch_status_change(
            record.instance_id,
            status=new_state.value,
            previous_status=old_state.value,
            phone=record.phone,
            display_name=record.display_name,
            error=error,
        )

    def _cancel_timers(self, record: SessionRecord) -> None:
        self._reconnect.cancel(record)
        self._scheduler.cancel(self._pairing.timer_key(record.instance_id))

    async def _detach(self, record: SessionRecord) -> None:
        # Drop the handle first so its late events are recognised as stale.
        handle = record.detach_handle()
        if handle is None:
            return
        try:
            await handle.end()
        except Exception:  # noqa: BLE001 - a failing end must not block state cleanup.
            logger.warning("session_end_failed instance_id=%s", record.instance_id, exc_info=True)

    # Operations

    async def initialize(self, instance_id: str, config: dict[str, Any] | None = None) -> SessionSnapshot:
        # Register configuration without opening a session.
        async with self._registry.lock_for(instance_id):
            async with self._session_factory() as session:
                row = await instances_repo.get_instance(session, instance_id)
            if row is None:
                raise NotFoundError(f"Instance {instance_id} not found")
            merged = dict(row.settings_json or {})
            merged.update(config or {})
            record = self._registry.get(instance_id)
            if record is not None:
                if record.live:
                    raise AlreadyExistsError(f"Instance {instance_id} already has a live session")
                record.config = merged
                record.name = row.name
                return self._snapshot(record)
            try:
                persisted = InstanceStatus(row.status)
            except ValueError:
                persisted = InstanceStatus.DISCONNECTED
            # Without a handle only resting states are meaningful in memory.
            if persisted not in TERMINAL_STATES:
                persisted = InstanceStatus.DISCONNECTED
            record = SessionRecord(
                instance_id=row.id,
                tenant_id=row.tenant_id,
                name=row.name,
                config=merged,
                state=persisted,
                terminal=persisted in TERMINAL_STATES,
                phone=row.phone,
                display_name=row.display_name,
                last_error=row.last_error,
            )
            record.mailbox = InstanceMailbox(
                instance_id,
                partial(self._handle_event, instance_id),
                maxsize=self._settings.session_event_queue_size,
            )
            record = self._registry.register(record)
            record.mailbox.start()
            logger.info("session_initialized instance_id=%s status=%s", instance_id, record.state.value)
            return self._snapshot(record)

    async def ensure_initialized(self, instance_id: str) -> SessionSnapshot:
        record = self._registry.get(instance_id)
        if record is not None:
            return self._snapshot(record)
        return await self.initialize(instance_id)

    async def connect(self, instance_id: str) -> SessionSnapshot:
        if self._closing:
            raise ServiceUnavailableError("Gateway is shutting down")
        async with self._registry.lock_for(instance_id):
            record = self._registry.require(instance_id)
            if record.live and record.state in LIVE_STATES:
                logger.debug("session_connect_noop instance_id=%s state=%s", instance_id, record.state.value)
                return self._snapshot(record)
            await self._open(record, fresh=True)
            return self._snapshot(record)

    async def _open(self, record: SessionRecord, *, fresh: bool) -> None:
        # Open a protocol session; failures are handed to the reconnect path, never raised.
        if fresh:
            record.manual_disconnect = False
            record.terminal = False
            record.reconnect_attempts = 0
            self._pairing.reset(record)
            self._cancel_timers(record)
        await self._detach(record)
        generation = record.generation
        assert record.mailbox is not None
        try:
            handle = await self._client.connect(
                record.instance_id, record.config, record.mailbox.listener_for(generation)
            )
        except Exception as exc:  # noqa: BLE001 - connection errors are absorbed by the reconnect path
            logger.warning("session_open_failed instance_id=%s error=%s", record.instance_id, exc)
            await self._schedule_reconnect(record, f"Failed to open session: {exc}")
            return
        if self._closing:
            await handle.end()
            return
        record.handle = handle
        async with self._session_factory() as session:
            await instances_repo.increment_connection_attempts(session, record.instance_id)
        await self._transition(record, InstanceStatus.CONNECTING)

    async def disconnect(self, instance_id: str) -> SessionSnapshot:
        # Manual disconnect keeps credentials and suppresses automatic reconnects.
        async with self._registry.lock_for(instance_id):
            record = self._registry.require(instance_id)
            record.manual_disconnect = True
            self._cancel_timers(record)
            await self._detach(record)
            record.clear_pairing()
            if record.state == InstanceStatus.FORCE_DISCONNECTED:
                return self._snapshot(record)
            record.reconnect_attempts = 0
            record.pairing_attempts = 0
            record.terminal = False
            await self._transition(record, InstanceStatus.DISCONNECTED, fields=dict(_CLEAR_PAIRING_FIELDS))
            return self._snapshot(record)

    async def logout(self, instance_id: str) -> SessionSnapshot:
        # End the session and erase stored credentials; re-pairing is required afterwards.
        async with self._registry.lock_for(instance_id):
            record = self._registry.require(instance_id)
            record.manual_disconnect = True
            self._cancel_timers(record)
            self._dispatcher.cancel_instance(instance_id)
            handle = record.detach_handle()
            try:
                if handle is not None:
                    await handle.logout()
                    await handle.end()
                await self._client.erase_credentials(instance_id)
            except Exception as exc:  # noqa: BLE001 - surface protocol failures as connection errors
                logger.exception("session_logout_failed instance_id=%s", instance_id)
                record.terminal = True
                await self._transition(record, InstanceStatus.ERROR, error=f"Failed to logout: {exc}")
                raise ProtocolConnectionError(f"Failed to logout: {exc}") from exc
            record.clear_pairing()
            record.reconnect_attempts = 0
            record.pairing_attempts = 0
            record.phone = None
            record.display_name = None
            fields = {"phone": None, "display_name": None, **_CLEAR_PAIRING_FIELDS}
            if record.state == InstanceStatus.FORCE_DISCONNECTED:
                await self._transition(record, InstanceStatus.FORCE_DISCONNECTED, fields=fields)
            else:
                record.terminal = False
                await self._transition(record, InstanceStatus.DISCONNECTED, fields=fields)
            logger.info("session_logged_out instance_id=%s", instance_id)
            return self._snapshot(record)

    async def restart(self, instance_id: str) -> SessionSnapshot:
        # End the current session without the manual flag and open a fresh one.
        if self._closing:
            raise ServiceUnavailableError("Gateway is shutting down")
        async with self._registry.lock_for(instance_id):
            record = self._registry.require(instance_id)
            self._cancel_timers(record)
            await self._detach(record)
            await self._open(record, fresh=True)
            logger.info("session_restarted instance_id=%s", instance_id)
            return self._snapshot(record)

    async def force_disconnect(self, instance_id: str, reason: str) -> SessionSnapshot:
        async with self._registry.lock_for(instance_id):
            record = self._registry.require(instance_id)
            await self._force_disconnect_locked(record, reason)
            return self._snapshot(record)

    async def _force_disconnect_locked(self, record: SessionRecord, reason: str) -> None:
        # Terminal until an explicit connect/restart; the attempt counter is left untouched.
        self._cancel_timers(record)
        await self._detach(record)
        record.clear_pairing()
        record.terminal = True
        await self._transition(
            record, InstanceStatus.FORCE_DISCONNECTED, error=reason, fields=dict(_CLEAR_PAIRING_FIELDS)
        )
        logger.warning("session_force_disconnected instance_id=%s reason=%s", record.instance_id, reason)

    async def remove(self, instance_id: str) -> bool:
        # Tear down everything the gateway holds for an instance that is being deleted.
        async with self._registry.lock_for(instance_id):
            self._scheduler.cancel_group(instance_id)
            self._dispatcher.cancel_instance(instance_id)
            record = self._registry.remove(instance_id)
            if record is None:
                return False
            self._cancel_timers(record)
            record.terminal = True
            handle = record.detach_handle()
            try:
                if handle is not None:
                    await handle.logout()
                    await handle.end()
                await self._client.erase_credentials(instance_id)
            except Exception:  # noqa: BLE001 - removal proceeds even if the protocol side fails.
                logger.warning("session_remove_cleanup_failed instance_id=%s", instance_id, exc_info=True)
        # Stop the worker outside the lock; it may be waiting for it.
        if record.mailbox is not None:
            await record.mailbox.stop()
        logger.info("session_removed instance_id=%s", instance_id)
        return True

    async def restore_sessions(self) -> int:
        # Rebuild sessions after a restart, reconnecting only instances that were connected.
        async with self._session_factory() as session:
            rows = await instances_repo.list_active_instances(session)
        restored = 0
        for row in rows:
            try:
                await self.initialize(row.id)
            except Exception:  # noqa: BLE001 - one broken instance must not block startup.
                logger.exception("session_restore_init_failed instance_id=%s", row.id)
                continue
            if row.status == InstanceStatus.CONNECTED.value:
                try:
                    await self.connect(row.id)
                    restored += 1
                except Exception as exc:  # noqa: BLE001 - record the failure and keep restoring
                    logger.exception("session_restore_connect_failed instance_id=%s", row.id)
                    async with self._registry.lock_for(row.id):
                        record = self._registry.require(row.id)
                        await self._transition(
                            record,
                            InstanceStatus.DISCONNECTED,
                            error=f"Failed to reconnect on startup: {exc}",
                        )
            elif row.status not in _RESTING_STATUSES:
                async with self._registry.lock_for(row.id):
                    record = self._registry.require(row.id)
                    await self._transition(record, InstanceStatus.DISCONNECTED, fields=dict(_CLEAR_PAIRING_FIELDS))
        logger.info("sessions_restored total=%s reconnected=%s", len(rows), restored)
        return restored

    async def shutdown(self, grace_s: float | None = None) -> None:
        # Stop intake, cancel timers, end sessions without touching persisted status, drain deliveries.
        grace = self._settings.shutdown_grace_s if grace_s is None else grace_s
        self._closing = True
        await self._scheduler.close()
        records = self._registry.all()
        for record in records:
            async with self._registry.lock_for(record.instance_id):
                self._cancel_timers(record)
                await self._detach(record)
        cancelled = await self._dispatcher.shutdown(grace)
        for record in records:
            if record.mailbox is not None:
                await record.mailbox.stop()
        logger.info("sessions_shutdown sessions=%s cancelled_deliveries=%s", len(records), cancelled)

    # Protocol events

    async def _handle_event(self, instance_id: str, generation: int, event: ProtocolEvent) -> None:
        async with self._registry.lock_for(instance_id):
            record = self._registry.get(instance_id)
            if record is None or generation != record.generation:
                logger.debug("session_stale_event instance_id=%s event=%s", instance_id, type(event).__name__)
                return
            try:
                if isinstance(event, ConnectionUpdate):
                    await self._on_connection_update(record, event)
                elif isinstance(event, MessagesReceived):
                    if self._message_handler is not None:
                        await self._message_handler(record, event)
                elif isinstance(event, CredentialsUpdate):
                    logger.debug("session_credentials_updated instance_id=%s", instance_id)
                elif isinstance(event, ContactsUpdated):
                    logger.debug("session_contacts_updated instance_id=%s count=%s", instance_id, len(event.contacts))
            except Exception as exc:  # noqa: BLE001 - unexpected failures become visible ERROR state
                logger.exception("session_event_failed instance_id=%s event=%s", instance_id, type(event).__name__)
                await self._mark_error(record, f"Unexpected error: {exc}")

    async def _mark_error(self, record: SessionRecord, message: str) -> None:
        self._cancel_timers(record)
        await self._detach(record)
        record.terminal = True
        try:
            await self._transition(record, InstanceStatus.ERROR, error=message)
        except Exception:  # noqa: BLE001 - keep the in-memory ERROR state even if persistence fails
            logger.exception("session_mark_error_failed instance_id=%s", record.instance_id)

    async def _on_connection_update(self, record: SessionRecord, update: ConnectionUpdate) -> None:
        if record.terminal:
            logger.debug("session_terminal_update_ignored instance_id=%s", record.instance_id)
            return
        if update.pairing_code:
            await self._on_pairing_code(record, update.pairing_code)
            if record.terminal:
                return
        if update.state == "connecting":
            target = InstanceStatus.RECONNECTING if record.reconnect_attempts > 0 else InstanceStatus.CONNECTING
            if record.state != target:
                await self._transition(record, target)
        elif update.state == "open":
            await self._on_open(record)
        elif update.state == "close":
            await self._on_close(record, update.close_reason or CloseReason.UNKNOWN, update.error)

    async def _on_pairing_code(self, record: SessionRecord, code: str) -> None:
        decision = self._pairing.register_code(record, code)
        if not decision.accepted:
            logger.warning(
                "pairing_ceiling_reached instance_id=%s attempt=%s max=%s",
                record.instance_id,
                decision.attempt,
                decision.max_attempts,
            )
            await self._force_disconnect_locked(record, PAIRING_CEILING_REASON)
            return
        assert decision.code is not None and decision.expires_at is not None
        async with self._session_factory() as session:
            await instances_repo.store_pairing_code(
                session, record.instance_id, code=decision.code, expires_at=decision.expires_at
            )
        await self._transition(record, InstanceStatus.QR_REQUIRED)
        self._publisher.publish_pairing_code(
            instance_id=record.instance_id,
            code=decision.code,
            expires_at=decision.expires_at,
            attempt=decision.attempt,
            max_attempts=decision.max_attempts,
        )
        # Codes never leave through webhooks; receivers only learn that one was issued.
        self._dispatcher.dispatch_connection_update(
            record.instance_id,
            "pairing_code",
            {
                "attempt": decision.attempt,
                "maxAttempts": decision.max_attempts,
                "expiresAt": decision.expires_at.isoformat(),
            },
        )
        logger.info(
            "pairing_code_issued instance_id=%s attempt=%s max=%s",
            record.instance_id,
            decision.attempt,
            decision.max_attempts,
        )
        if self._pairing.at_ceiling(record):
            generation = record.generation
            instance_id = record.instance_id

            async def _expire() -> None:
                await self._expire_last_code(instance_id, generation)

            self._scheduler.schedule(
                self._pairing.timer_key(instance_id),
                self._pairing.code_ttl_s,
                _expire,
                group=instance_id,
            )

    async def _expire_last_code(self, instance_id: str, generation: int) -> None:
        # The final permitted code lapsed without pairing.
        async with self._registry.lock_for(instance_id):
            record = self._registry.get(instance_id)
            if record is None or record.generation != generation or record.terminal:
                return
            if record.state != InstanceStatus.QR_REQUIRED or not self._pairing.at_ceiling(record):
                return
            await self._force_disconnect_locked(record, PAIRING_CEILING_REASON)

    async def _on_open(self, record: SessionRecord) -> None:
        if record.handle is None:
            return
        user = record.handle.user
        self._cancel_timers(record)
        record.reconnect_attempts = 0
        record.clear_pairing()
        record.phone = user.phone if user is not None else None
        record.display_name = user.name if user is not None else None
        await self._transition(
            record,
            InstanceStatus.CONNECTED,
            fields={
                "phone": record.phone,
                "display_name": record.display_name,
                "last_connected_at": _utc_now(),
                "connection_attempts": 0,
                **_CLEAR_PAIRING_FIELDS,
            },
        )

    async def _on_close(self, record: SessionRecord, reason: CloseReason, error: str | None) -> None:
        await self._detach(record)
        record.clear_pairing()
        if record.manual_disconnect:
            await self._transition(record, InstanceStatus.DISCONNECTED, fields=dict(_CLEAR_PAIRING_FIELDS))
            return
        if reason == CloseReason.LOGGED_OUT:
            # The account revoked this device; stored credentials are useless now.
            await self._client.erase_credentials(record.instance_id)
            self._dispatcher.cancel_instance(record.instance_id)
            record.reconnect_attempts = 0
            record.phone = None
            record.display_name = None
            await self._transition(
                record,
                InstanceStatus.DISCONNECTED,
                error="Logged out from device",
                fields={"phone": None, "display_name": None, **_CLEAR_PAIRING_FIELDS},
            )
            return
        if reason == CloseReason.TIMED_OUT and self._pairing.at_ceiling(record):
            await self._force_disconnect_locked(record, PAIRING_CEILING_REASON)
            return
        await self._schedule_reconnect(record, error or reason.value)

    async def _schedule_reconnect(self, record: SessionRecord, error: str) -> None:
        delay = self._reconnect.next_delay(record)
        if delay is None:
            record.terminal = True
            logger.warning(
                "reconnect_ceiling_reached instance_id=%s attempts=%s", record.instance_id, record.reconnect_attempts
            )
            await self._transition(record, InstanceStatus.ERROR, error=f"Max reconnect attempts reached: {error}")
            return
        self._reconnect.arm(record, delay, self._fire_reconnect)
        await self._transition(record, InstanceStatus.RECONNECTING, error=error)

    async def _fire_reconnect(self, instance_id: str, epoch: int) -> None:
        async with self._registry.lock_for(instance_id):
            record = self._registry.get(instance_id)
            if self._closing or record is None or not self._reconnect.is_current(record, epoch):
                logger.info("reconnect_aborted instance_id=%s epoch=%s", instance_id, epoch)
                return
            # The attempt counts when it fires, not when it was scheduled.
            record.reconnect_attempts += 1
            logger.info("reconnect_firing instance_id=%s attempt=%s", instance_id, record.reconnect_attempts)
            await self._open(record, fresh=False)
