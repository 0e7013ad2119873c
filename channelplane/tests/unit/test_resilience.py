from __future__ import annotations

import pytest

from channelplane.services.resilience import TokenBucket
from channelplane.services.telemetry import counters_snapshot


def test_try_acquire_reports_wait_when_empty() -> None:
    now = {"t": 0.0}
    bucket = TokenBucket(rate=2.0, burst=2, clock=lambda: now["t"])
    assert bucket.try_acquire() == 0.0
    assert bucket.try_acquire() == 0.0
    assert bucket.try_acquire() == pytest.approx(0.5)
    now["t"] = 0.5
    assert bucket.try_acquire() == 0.0


def test_refill_never_exceeds_burst() -> None:
    now = {"t": 0.0}
    bucket = TokenBucket(rate=10.0, burst=3, clock=lambda: now["t"])
    now["t"] = 100.0
    assert [bucket.try_acquire() for _ in range(3)] == [0.0, 0.0, 0.0]
    assert bucket.try_acquire() > 0


@pytest.mark.asyncio
async def test_acquire_sleeps_until_refilled() -> None:
    now = {"t": 0.0}
    sleeps: list[float] = []

    async def fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)
        now["t"] += seconds

    bucket = TokenBucket(rate=4.0, burst=1, clock=lambda: now["t"], sleep=fake_sleep, name="test_bucket")
    for _ in range(3):
        await bucket.acquire()
    assert sleeps == [pytest.approx(0.25), pytest.approx(0.25)]
    assert counters_snapshot()["test_bucket_throttled_total"] == 2
