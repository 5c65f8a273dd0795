from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import json
import logging
from typing import Any
from uuid import uuid4

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from relaygate.core.config import Settings, get_settings
from relaygate.core.errors import DispatchError, NotFoundError, ValidationError
from relaygate.domain.events import (
    EVENT_CONNECTION_UPDATE,
    EVENT_INSTANCE_STATUS,
    EVENT_MESSAGE_RECEIVED,
    EVENT_MESSAGE_SENT,
    EVENT_TEST,
    SUPPORTED_EVENT_TYPES,
    MessageMetadata,
    StatusChangeData,
    WebhookEnvelope,
)
from relaygate.domain.models import EventSubscription
from relaygate.persistence.repos import instances as instances_repo
from relaygate.persistence.repos import subscriptions as subscriptions_repo
from relaygate.services.resilience import BoundedTaskPool
from relaygate.services.scheduler import DelayedTaskScheduler
from relaygate.services.signing import SIGNATURE_HEADER, compute_signature


logger = logging.getLogger(__name__)

# Receivers rely on these; tenant headers may never replace them.
_RESERVED_WEBHOOK_HEADERS = {
    "content-type",
    "user-agent",
    "x-webhook-signature",
    "x-webhook-event",
    "x-webhook-instance",
}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _validate_url(url: str) -> str:
    normalized = url.strip()
    if normalized.startswith(("http://", "https://")):
        return normalized
    raise ValidationError("webhook url must start with http:// or https://")


def normalize_webhook_headers(headers: dict[str, Any] | None) -> dict[str, str]:
    # Normalize tenant headers and reject reserved delivery contract headers.
    if headers is None:
        return {}
    if not isinstance(headers, dict):
        raise ValidationError("headers must be an object")
    normalized: dict[str, str] = {}
    for raw_key, raw_value in headers.items():
        key = str(raw_key).strip()
        if not key:
            raise ValidationError("header names must be non-empty")
        if key.lower() in _RESERVED_WEBHOOK_HEADERS:
            raise ValidationError(f"header '{key}' is reserved")
        normalized[key] = str(raw_value).strip()
    return normalized


def _serialize_envelope(envelope: WebhookEnvelope) -> bytes:
    # Serialize once; the signature covers exactly these bytes on every attempt.
    return json.dumps(envelope, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def build_message_received_data(message: dict[str, Any]) -> MessageMetadata:
    # Message bodies stay on the gateway; only routing metadata leaves it.
    return {
        "from": message.get("from", ""),
        "to": message.get("to", ""),
        "messageType": message.get("messageType", ""),
        "timestamp": message.get("timestamp", ""),
        "messageId": message.get("messageId", ""),
    }


def build_message_sent_data(message: dict[str, Any]) -> MessageMetadata:
    return {
        "to": message.get("to", ""),
        "messageType": message.get("messageType", ""),
        "timestamp": message.get("timestamp", ""),
        "messageId": message.get("messageId", ""),
        "status": "sent",
    }


def build_status_data(
    *,
    status: str,
    previous_status: str | None,
    phone: str | None = None,
    display_name: str | None = None,
    error: str | None = None,
) -> StatusChangeData:
    data: StatusChangeData = {
        "status": status,
        "previousStatus": previous_status,
        "timestamp": _utc_now().isoformat(),
        "phone": phone,
        "displayName": display_name,
    }
    if error:
        data["error"] = error
    return data


def build_connection_data(event: str, data: dict[str, Any]) -> dict[str, Any]:
    return {"event": event, "timestamp": _utc_now().isoformat(), "data": data}


@dataclass(frozen=True)
class DeliveryResult:
    # Outcome of one delivery, returned by synchronous test sends.
    success: bool
    status_code: int | None
    attempts: int
    error: str | None = None


@dataclass
class _Delivery:
    delivery_id: str
    instance_id: str
    event_type: str
    data: dict[str, Any]
    timestamp: str
    # Cancellation epoch of the instance when the event was dispatched.
    epoch: int = 0
    body: bytes | None = None
    attempts: int = 0
    history: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class _Contract:
    url: str
    secret: str
    headers: dict[str, str]
    instance_name: str


class EventDispatcher:
    """Fire-and-forget webhook delivery with fixed-schedule retries.

    Each attempt re-reads the subscription so URL, secret and header changes
    apply to pending retries, and a deactivated subscription drops them.
    """

    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        scheduler: DelayedTaskScheduler,
        pool: BoundedTaskPool | None = None,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._scheduler = scheduler
        self._settings = settings or get_settings()
        self._pool = pool or BoundedTaskPool("webhooks", self._settings.webhook_max_concurrency)
        self._transport = transport
        self._epochs: dict[str, int] = {}

    @property
    def pool(self) -> BoundedTaskPool:
        return self._pool

    @property
    def max_attempts(self) -> int:
        return self._settings.webhook_max_retries + 1

    def _retry_delay(self, attempt: int) -> float:
        # attempt is the number of attempts already made (1-based).
        delays = self._settings.webhook_retry_delays_s or [1.0]
        return float(delays[min(attempt - 1, len(delays) - 1)])

    def dispatch(self, instance_id: str, event_type: str, data: dict[str, Any]) -> str | None:
        # Queue a delivery and return its id immediately; failures never reach the caller.
        if event_type not in SUPPORTED_EVENT_TYPES:
            logger.warning("webhook_unknown_event instance_id=%s event=%s", instance_id, event_type)
            return None
        delivery = _Delivery(
            delivery_id=uuid4().hex,
            instance_id=instance_id,
            event_type=event_type,
            data=dict(data),
            timestamp=_utc_now().isoformat(),
            epoch=self._epochs.get(instance_id, 0),
        )
        if not self._submit(delivery):
            return None
        return delivery.delivery_id

    def _submit(self, delivery: _Delivery) -> bool:
        task = self._pool.submit(lambda: self._attempt(delivery), label=f"webhook:{delivery.delivery_id}")
        return task is not None

    def _cancelled(self, delivery: _Delivery) -> bool:
        # cancel_instance bumps the epoch; anything dispatched before it is dropped.
        if self._epochs.get(delivery.instance_id, 0) == delivery.epoch:
            return False
        logger.info(
            "webhook_delivery_cancelled instance_id=%s event=%s delivery_id=%s attempts=%s",
            delivery.instance_id,
            delivery.event_type,
            delivery.delivery_id,
            delivery.attempts,
        )
        return True

    async def _resolve(self, instance_id: str, event_type: str) -> _Contract | None:
        # Resolve the destination lazily so retries always use the latest subscription.
        async with self._session_factory() as session:
            found = await subscriptions_repo.get_subscription(session, instance_id)
        if found is None:
            return None
        subscription, instance = found
        if not subscription.is_active:
            return None
        if event_type != EVENT_TEST and event_type not in (subscription.events or []):
            return None
        headers = subscription.headers_json if isinstance(subscription.headers_json, dict) else {}
        return _Contract(
            url=subscription.url,
            secret=subscription.secret,
            headers={k: v for k, v in headers.items() if str(k).lower() not in _RESERVED_WEBHOOK_HEADERS},
            instance_name=instance.name,
        )

    def _request_headers(self, contract: _Contract, delivery: _Delivery, body: bytes) -> dict[str, str]:
        request_headers = dict(contract.headers)
        request_headers.update(
            {
                "Content-Type": "application/json",
                "User-Agent": self._settings.webhook_user_agent,
                SIGNATURE_HEADER: compute_signature(contract.secret, body),
                "X-Webhook-Event": delivery.event_type,
                "X-Webhook-Instance": delivery.instance_id,
            }
        )
        return request_headers

    async def _post(self, contract: _Contract, delivery: _Delivery) -> int:
        if delivery.body is None:
            envelope: WebhookEnvelope = {
                "event": delivery.event_type,
                "instance": {"id": delivery.instance_id, "name": contract.instance_name},
                "data": delivery.data,
                "timestamp": delivery.timestamp,
            }
            delivery.body = _serialize_envelope(envelope)
        headers = self._request_headers(contract, delivery, delivery.body)
        try:
            async with httpx.AsyncClient(
                timeout=self._settings.webhook_timeout_s, transport=self._transport
            ) as client:
                response = await client.post(contract.url, content=delivery.body, headers=headers)
        except httpx.HTTPError as exc:
            raise DispatchError(f"{type(exc).__name__}: {exc}") from exc
        if not 200 <= response.status_code < 300:
            raise DispatchError(
                f"receiver responded with HTTP {response.status_code}", status_code=response.status_code
            )
        return int(response.status_code)

    async def _attempt(self, delivery: _Delivery) -> None:
        if self._cancelled(delivery):
            return
        contract = await self._resolve(delivery.instance_id, delivery.event_type)
        if contract is None:
            logger.debug(
                "webhook_skipped instance_id=%s event=%s delivery_id=%s",
                delivery.instance_id,
                delivery.event_type,
                delivery.delivery_id,
            )
            return
        if self._cancelled(delivery):
            return
        delivery.attempts += 1
        try:
            status_code = await self._post(contract, delivery)
        except DispatchError as exc:
            delivery.history.append(str(exc))
            await self._handle_failure(delivery, str(exc))
            return
        logger.info(
            "webhook_delivered instance_id=%s event=%s status=%s attempts=%s",
            delivery.instance_id,
            delivery.event_type,
            status_code,
            delivery.attempts,
        )
        await self._record(delivery.instance_id, success=True)

    async def _handle_failure(self, delivery: _Delivery, error: str) -> None:
        if self._cancelled(delivery):
            return
        if delivery.attempts < self.max_attempts:
            delay = self._retry_delay(delivery.attempts)
            logger.warning(
                "webhook_delivery_failed instance_id=%s event=%s attempt=%s retry_in_s=%s error=%s",
                delivery.instance_id,
                delivery.event_type,
                delivery.attempts,
                delay,
                error,
            )

            async def _retry() -> None:
                if not self._cancelled(delivery):
                    self._submit(delivery)

            self._scheduler.schedule(
                f"webhook:{delivery.delivery_id}",
                delay,
                _retry,
                group=f"webhook:{delivery.instance_id}",
            )
            return
        logger.error(
            "webhook_delivery_exhausted instance_id=%s event=%s attempts=%s error=%s",
            delivery.instance_id,
            delivery.event_type,
            delivery.attempts,
            error,
        )
        await self._record(delivery.instance_id, success=False, error=error)

    async def _record(self, instance_id: str, *, success: bool, error: str | None = None) -> None:
        try:
            async with self._session_factory() as session:
                await subscriptions_repo.record_delivery_outcome(
                    session, instance_id, success=success, error=error
                )
        except Exception:  # noqa: BLE001 - stats bookkeeping must not fail deliveries.
            logger.exception("webhook_stats_update_failed instance_id=%s", instance_id)

    def cancel_instance(self, instance_id: str) -> int:
        # Stop every delivery dispatched so far: queued, in flight or waiting on a retry timer.
        self._epochs[instance_id] = self._epochs.get(instance_id, 0) + 1
        cancelled = self._scheduler.cancel_group(f"webhook:{instance_id}")
        if cancelled:
            logger.info("webhook_retries_cancelled instance_id=%s count=%s", instance_id, cancelled)
        return cancelled

    def pending_retries(self, instance_id: str) -> list[str]:
        return self._scheduler.pending_keys(f"webhook:{instance_id}")

    async def send_test(self, instance_id: str) -> DeliveryResult:
        # Deliver a single test event inline without retries and report the outcome.
        delivery = _Delivery(
            delivery_id=uuid4().hex,
            instance_id=instance_id,
            event_type=EVENT_TEST,
            data={
                "message": "This is a test webhook from RelayGate",
                "timestamp": _utc_now().isoformat(),
            },
            timestamp=_utc_now().isoformat(),
        )
        contract = await self._resolve(instance_id, EVENT_TEST)
        if contract is None:
            raise NotFoundError(f"No active webhook subscription for instance {instance_id}")
        delivery.attempts = 1
        try:
            status_code = await self._post(contract, delivery)
        except DispatchError as exc:
            await self._record(instance_id, success=False, error=str(exc))
            return DeliveryResult(success=False, status_code=exc.status_code, attempts=1, error=str(exc))
        await self._record(instance_id, success=True)
        return DeliveryResult(success=True, status_code=status_code, attempts=1)

    def validate_subscription(
        self,
        *,
        url: str,
        events: list[str],
        secret: str,
        headers: dict[str, Any] | None = None,
    ) -> tuple[str, dict[str, str]]:
        # Pure input checks; returns the normalized URL and custom headers.
        normalized_url = _validate_url(url)
        unknown = sorted(set(events) - SUPPORTED_EVENT_TYPES)
        if unknown:
            raise ValidationError(f"unsupported event types: {', '.join(unknown)}")
        if not secret:
            raise ValidationError("secret must be non-empty")
        return normalized_url, normalize_webhook_headers(headers)

    async def configure_subscription(
        self,
        instance_id: str,
        *,
        url: str,
        events: list[str],
        secret: str,
        headers: dict[str, Any] | None = None,
        is_active: bool = True,
    ) -> EventSubscription:
        normalized_url, normalized_headers = self.validate_subscription(
            url=url, events=events, secret=secret, headers=headers
        )
        async with self._session_factory() as session:
            if await instances_repo.get_instance(session, instance_id) is None:
                raise NotFoundError(f"Instance {instance_id} not found")
            return await subscriptions_repo.upsert_subscription(
                session,
                instance_id=instance_id,
                url=normalized_url,
                events=list(dict.fromkeys(events)),
                secret=secret,
                headers=normalized_headers,
                is_active=is_active,
            )

    async def delivery_stats(self, instance_id: str) -> dict[str, Any]:
        async with self._session_factory() as session:
            found = await subscriptions_repo.get_subscription(session, instance_id)
        if found is None:
            return {
                "successful_deliveries": 0,
                "failed_deliveries": 0,
                "total_deliveries": 0,
                "success_rate": 0.0,
                "last_delivery_at": None,
                "last_success_at": None,
                "last_failure_at": None,
                "last_error": None,
            }
        subscription, _ = found
        total = subscription.successful_deliveries + subscription.failed_deliveries
        rate = (subscription.successful_deliveries / total) * 100 if total else 0.0
        return {
            "successful_deliveries": subscription.successful_deliveries,
            "failed_deliveries": subscription.failed_deliveries,
            "total_deliveries": total,
            "success_rate": round(rate, 2),
            "last_delivery_at": subscription.last_delivery_at,
            "last_success_at": subscription.last_success_at,
            "last_failure_at": subscription.last_failure_at,
            "last_error": subscription.last_error,
        }

    def dispatch_status_change(
        self,
        instance_id: str,
        *,
        status: str,
        previous_status: str | None,
        phone: str | None = None,
        display_name: str | None = None,
        error: str | None = None,
    ) -> str | None:
        return self.dispatch(
            instance_id,
            EVENT_INSTANCE_STATUS,
            dict(
                build_status_data(
                    status=status,
                    previous_status=previous_status,
                    phone=phone,
                    display_name=display_name,
                    error=error,
                )
            ),
        )

    def dispatch_connection_update(self, instance_id: str, event: str, data: dict[str, Any]) -> str | None:
        return self.dispatch(instance_id, EVENT_CONNECTION_UPDATE, build_connection_data(event, data))

    def dispatch_message_received(self, instance_id: str, message: dict[str, Any]) -> str | None:
        return self.dispatch(instance_id, EVENT_MESSAGE_RECEIVED, dict(build_message_received_data(message)))

    def dispatch_message_sent(self, instance_id: str, message: dict[str, Any]) -> str | None:
        return self.dispatch(instance_id, EVENT_MESSAGE_SENT, dict(build_message_sent_data(message)))

    async def shutdown(self, grace_s: float) -> int:
        # Drain in-flight deliveries; scheduled retries are owned by the scheduler and closed there.
        return await self._pool.drain(grace_s)
