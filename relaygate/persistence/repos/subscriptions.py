from __future__ import annotations

from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from relaygate.domain.models import EventSubscription, Instance


async def get_subscription(
    session: AsyncSession, instance_id: str
) -> tuple[EventSubscription, Instance] | None:
    # Load the subscription together with the instance so envelopes can embed its name.
    result = await session.execute(
        select(EventSubscription, Instance)
        .join(Instance, Instance.id == EventSubscription.instance_id)
        .where(EventSubscription.instance_id == instance_id)
    )
    row = result.first()
    if row is None:
        return None
    return row[0], row[1]


async def upsert_subscription(
    session: AsyncSession,
    *,
    instance_id: str,
    url: str,
    events: list[str],
    secret: str,
    headers: dict[str, str],
    is_active: bool,
) -> EventSubscription:
    # Keep one subscription per instance; updates preserve delivery counters.
    row = (
        await session.execute(select(EventSubscription).where(EventSubscription.instance_id == instance_id))
    ).scalar_one_or_none()
    if row is None:
        row = EventSubscription(
            id=uuid4().hex,
            instance_id=instance_id,
            url=url,
            events=events,
            secret=secret,
            headers_json=headers,
            is_active=is_active,
            successful_deliveries=0,
            failed_deliveries=0,
        )
        session.add(row)
    else:
        row.url = url
        row.events = events
        row.secret = secret
        row.headers_json = headers
        row.is_active = is_active
    await session.commit()
    await session.refresh(row)
    return row


async def record_delivery_outcome(
    session: AsyncSession,
    instance_id: str,
    *,
    success: bool,
    error: str | None = None,
) -> None:
    # Increment counters in SQL so concurrent deliveries never lose updates.
    now = datetime.now(timezone.utc)
    if success:
        values = {
            "successful_deliveries": EventSubscription.successful_deliveries + 1,
            "last_delivery_at": now,
            "last_success_at": now,
        }
    else:
        values = {
            "failed_deliveries": EventSubscription.failed_deliveries + 1,
            "last_delivery_at": now,
            "last_failure_at": now,
            "last_error": error,
        }
    await session.execute(
        update(EventSubscription).where(EventSubscription.instance_id == instance_id).values(**values)
    )
    await session.commit()
