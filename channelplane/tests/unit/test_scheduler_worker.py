from __future__ import annotations

import asyncio

import pytest

from channelplane.services.scheduling import run_batched
from channelplane.workers.scheduler_worker import _shutdown


@pytest.mark.asyncio
async def test_shutdown_waits_for_in_flight_tenants() -> None:
    finished: list[int] = []

    async def handler(item: int) -> int:
        await asyncio.sleep(0.05)
        finished.append(item)
        return item

    tick = asyncio.create_task(run_batched([1, 2], handler, max_concurrency=2))
    await asyncio.sleep(0.01)

    await _shutdown({"scheduler_tasks": [tick]})

    assert tick.done()
    assert tick.cancelled()
    assert sorted(finished) == [1, 2]


@pytest.mark.asyncio
async def test_shutdown_without_tasks_is_a_noop() -> None:
    await _shutdown({})
