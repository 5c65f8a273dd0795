from __future__ import annotations

import asyncio

import pytest

from relaygate.services.resilience import BoundedTaskPool


@pytest.mark.asyncio
async def test_pool_caps_concurrency() -> None:
    pool = BoundedTaskPool("test", 2)
    state = {"running": 0, "peak": 0}

    async def job() -> None:
        state["running"] += 1
        state["peak"] = max(state["peak"], state["running"])
        await asyncio.sleep(0.01)
        state["running"] -= 1

    for _ in range(6):
        pool.submit(job)
    await pool.join()
    assert state["peak"] == 2
    assert pool.outstanding == 0


@pytest.mark.asyncio
async def test_pool_swallows_job_failures(caplog) -> None:
    pool = BoundedTaskPool("test", 1)

    async def boom() -> None:
        raise ValueError("bad job")

    task = pool.submit(boom, label="boom")
    assert task is not None
    assert await task is None
    assert "pool_job_failed pool=test label=boom" in caplog.text


@pytest.mark.asyncio
async def test_drain_waits_then_cancels_stragglers() -> None:
    pool = BoundedTaskPool("test", 4)
    finished: list[str] = []

    async def quick() -> None:
        await asyncio.sleep(0.01)
        finished.append("quick")

    async def slow() -> None:
        await asyncio.sleep(5)
        finished.append("slow")

    pool.submit(quick)
    pool.submit(slow)
    cancelled = await pool.drain(0.1)
    assert cancelled == 1
    assert finished == ["quick"]
    assert pool.closed
    assert pool.submit(quick) is None
