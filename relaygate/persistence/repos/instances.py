from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from relaygate.domain.models import Instance
from relaygate.domain.state import InstanceStatus


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def get_instance(session: AsyncSession, instance_id: str) -> Instance | None:
    return await session.get(Instance, instance_id)


async def list_active_instances(session: AsyncSession) -> list[Instance]:
    # Return instances eligible for startup session recovery in a stable order.
    result = await session.execute(
        select(Instance).where(Instance.is_active.is_(True)).order_by(Instance.created_at.asc(), Instance.id.asc())
    )
    return list(result.scalars().all())


async def update_instance_status(
    session: AsyncSession,
    instance_id: str,
    *,
    status: InstanceStatus,
    error: str | None = None,
    fields: dict[str, Any] | None = None,
) -> str | None:
    # Persist a status transition and return the previous persisted status (None when missing).
    row = await session.get(Instance, instance_id)
    if row is None:
        return None
    previous = row.status
    now = _utc_now()
    row.status = status.value
    if status == InstanceStatus.DISCONNECTED:
        row.last_disconnected_at = now
    if error:
        row.last_error = error
        row.last_error_at = now
    elif status == InstanceStatus.CONNECTED:
        # Clear stale errors once a session is healthy again.
        row.last_error = None
        row.last_error_at = None
    for key, value in (fields or {}).items():
        setattr(row, key, value)
    await session.commit()
    return previous


async def store_pairing_code(
    session: AsyncSession,
    instance_id: str,
    *,
    code: str | None,
    expires_at: datetime | None,
) -> None:
    await session.execute(
        update(Instance)
        .where(Instance.id == instance_id)
        .values(qr_code=code, qr_code_expires_at=expires_at)
    )
    await session.commit()


async def increment_connection_attempts(session: AsyncSession, instance_id: str) -> None:
    # Count attempts atomically in SQL so concurrent writers cannot lose increments.
    await session.execute(
        update(Instance)
        .where(Instance.id == instance_id)
        .values(connection_attempts=Instance.connection_attempts + 1)
    )
    await session.commit()
