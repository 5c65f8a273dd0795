from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

from relaygate.core.config import get_settings
from relaygate.core.logging import configure_logging
from relaygate.persistence.db import SessionLocal
from relaygate.persistence.repos.usage import prune_usage_windows


async def prune() -> None:
    configure_logging()
    cutoff = datetime.now(timezone.utc) - timedelta(days=get_settings().usage_window_retention_days)
    async with SessionLocal() as session:
        deleted = await prune_usage_windows(session, before=cutoff)
        print(f"pruned_usage_windows={deleted}")


if __name__ == "__main__":
    asyncio.run(prune())
