from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from relaygate.domain.models import CredentialLimit, MessageStat, TenantPlan, UsageWindow


_MESSAGE_STAT_FIELDS = {"messages_sent", "messages_received", "messages_failed", "api_calls"}


async def increment_message_stat(
    session: AsyncSession,
    *,
    instance_id: str,
    day: date,
    field: str,
    count: int = 1,
) -> None:
    # Upsert daily counters portably: update first, insert on miss, retry on a racing insert.
    if field not in _MESSAGE_STAT_FIELDS:
        raise ValueError(f"Unsupported message stat field: {field}")
    column = getattr(MessageStat, field)
    stmt = (
        update(MessageStat)
        .where(MessageStat.instance_id == instance_id, MessageStat.day == day)
        .values({field: column + count})
    )
    result = await session.execute(stmt)
    if result.rowcount:
        await session.commit()
        return
    session.add(MessageStat(instance_id=instance_id, day=day, **{field: count}))
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        await session.execute(stmt)
        await session.commit()


async def get_message_stat(session: AsyncSession, *, instance_id: str, day: date) -> MessageStat | None:
    return await session.get(MessageStat, (instance_id, day))


async def get_tenant_tier(session: AsyncSession, tenant_id: str) -> str | None:
    row = await session.get(TenantPlan, tenant_id)
    return row.tier if row is not None else None


async def get_credential_limit(session: AsyncSession, credential_id: str) -> int | None:
    row = await session.get(CredentialLimit, credential_id)
    return int(row.hourly_limit) if row is not None else None


async def try_increment_window(
    session: AsyncSession,
    *,
    scope_key: str,
    window_start: datetime,
    reset_at: datetime,
    limit: int,
) -> tuple[bool, int]:
    # Conditionally increment inside the caller's transaction; return (allowed, count after the attempt).
    result = await session.execute(
        update(UsageWindow)
        .where(
            UsageWindow.scope_key == scope_key,
            UsageWindow.window_start == window_start,
            UsageWindow.count < limit,
        )
        .values(count=UsageWindow.count + 1)
    )
    if result.rowcount:
        count = await session.scalar(
            select(UsageWindow.count).where(
                UsageWindow.scope_key == scope_key, UsageWindow.window_start == window_start
            )
        )
        return True, int(count or 0)
    existing = await session.scalar(
        select(UsageWindow.count).where(
            UsageWindow.scope_key == scope_key, UsageWindow.window_start == window_start
        )
    )
    if existing is not None:
        return False, int(existing)
    if limit <= 0:
        return False, 0
    # A racing insert surfaces as IntegrityError on flush; callers retry the whole transaction.
    session.add(UsageWindow(scope_key=scope_key, window_start=window_start, count=1, reset_at=reset_at))
    await session.flush()
    return True, 1


async def prune_usage_windows(session: AsyncSession, *, before: datetime) -> int:
    # Remove windows whose reset boundary is older than the retention cutoff.
    result = await session.execute(delete(UsageWindow).where(UsageWindow.reset_at < before))
    await session.commit()
    return int(result.rowcount or 0)
