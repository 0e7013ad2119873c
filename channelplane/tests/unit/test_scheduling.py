from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest

from channelplane.services.scheduling import (
    get_task_status,
    parse_hours,
    run_batched,
    run_scheduled_task,
    seconds_until_next_hour,
)


@pytest.mark.asyncio
async def test_overlapping_tick_is_skipped_and_status_tracked() -> None:
    started = asyncio.Event()
    release = asyncio.Event()

    async def slow_tick() -> dict:
        started.set()
        await release.wait()
        return {"status": "ok", "failed": 2}

    first = asyncio.create_task(run_scheduled_task("reconciliation", slow_tick))
    await started.wait()
    running = await get_task_status("reconciliation")
    assert running.is_running is True
    assert running.last_run_time is not None

    second = await run_scheduled_task("reconciliation", slow_tick)
    assert second == {"status": "skipped_running"}

    release.set()
    assert (await first)["failed"] == 2
    status = await get_task_status("reconciliation")
    assert status.is_running is False
    assert status.failure_count == 2
    assert status.last_finished_at is not None


@pytest.mark.asyncio
async def test_raising_tick_records_failure_and_releases_lock() -> None:
    async def broken_tick() -> dict:
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        await run_scheduled_task("credential_refresh", broken_tick)
    status = await get_task_status("credential_refresh")
    assert status.failure_count == 1
    assert status.is_running is False

    async def ok_tick() -> dict:
        return {"status": "ok", "failed": 0}

    assert (await run_scheduled_task("credential_refresh", ok_tick))["status"] == "ok"
    assert (await get_task_status("credential_refresh")).failure_count == 0


@pytest.mark.asyncio
async def test_unknown_task_reads_as_never_ran() -> None:
    status = await get_task_status("event_reaper")
    assert status.is_running is False
    assert status.last_run_time is None
    assert status.failure_count == 0


@pytest.mark.asyncio
async def test_run_batched_bounds_concurrency_and_isolates_failures() -> None:
    active = {"now": 0, "peak": 0}

    async def handler(item: int) -> int:
        active["now"] += 1
        active["peak"] = max(active["peak"], active["now"])
        await asyncio.sleep(0.01)
        active["now"] -= 1
        if item == 3:
            raise ValueError("bad item")
        return item * 10

    results = await run_batched(range(8), handler, max_concurrency=2)
    assert active["peak"] <= 2
    assert isinstance(results[3], ValueError)
    assert [r for i, r in enumerate(results) if i != 3] == [0, 10, 20, 40, 50, 60, 70]


@pytest.mark.asyncio
async def test_run_batched_spaces_item_starts() -> None:
    delays: list[float] = []

    async def fake_sleep(seconds: float) -> None:
        delays.append(seconds)

    async def handler(item: int) -> int:
        return item

    await run_batched([1, 2, 3], handler, max_concurrency=5, inter_item_delay_s=0.2, sleep=fake_sleep)
    assert delays == [0.2, 0.2]


def test_seconds_until_next_refresh_hour() -> None:
    hours = parse_hours("0,6,12,18")
    assert seconds_until_next_hour(hours, datetime(2026, 10, 19, 5, 30, tzinfo=timezone.utc)) == 1800.0
    assert seconds_until_next_hour(hours, datetime(2026, 10, 19, 18, 0, tzinfo=timezone.utc)) == 6 * 3600.0
    assert seconds_until_next_hour([3], datetime(2026, 10, 19, 23, 0, tzinfo=timezone.utc)) == 4 * 3600.0


def test_parse_hours_rejects_out_of_range() -> None:
    assert parse_hours("18, 0,6") == [0, 6, 18]
    with pytest.raises(ValueError):
        parse_hours("24")
    with pytest.raises(ValueError):
        parse_hours("")
