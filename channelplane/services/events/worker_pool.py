from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

from channelplane.core.config import get_settings
from channelplane.services.events.processing import EventProcessor, ProcessOutcome
from channelplane.services.resilience import TokenBucket
from channelplane.services.telemetry import set_gauge


logger = logging.getLogger(__name__)


class EventWorkerPool:
    """Fixed number of asyncio workers draining the event queue.

    All workers share one token bucket, so combined throughput never exceeds
    ``rate_limit_per_s`` no matter how many workers run. The bucket belongs to
    this pool alone and is independent of reconciliation pacing.
    """

    def __init__(
        self,
        *,
        processor: EventProcessor | None = None,
        concurrency: int | None = None,
        rate_limit_per_s: float | None = None,
        burst: int | None = None,
        poll_interval_s: float | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        settings = get_settings()
        self.processor = processor or EventProcessor()
        self.concurrency = max(1, int(concurrency or settings.event_worker_concurrency))
        self._sleep = sleep or asyncio.sleep
        self.limiter = TokenBucket(
            rate=rate_limit_per_s if rate_limit_per_s is not None else settings.event_rate_limit_per_s,
            burst=burst or settings.event_rate_limit_burst,
            sleep=self._sleep,
            name="event_worker",
        )
        self.poll_interval_s = (
            poll_interval_s if poll_interval_s is not None else max(10, int(settings.event_poll_interval_ms)) / 1000.0
        )
        self._stopping = asyncio.Event()
        self._tasks: list[asyncio.Task[None]] = []
        self._in_flight = 0

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    @property
    def in_flight(self) -> int:
        return self._in_flight

    async def _run_one(self) -> ProcessOutcome | None:
        # Throttle before claiming; a claim starts the lease and spends an attempt.
        await self.limiter.acquire()
        job = await self.processor.claim_next()
        if job is None:
            return None
        self._in_flight += 1
        set_gauge("event_workers_busy", float(self._in_flight))
        try:
            return await self.processor.process_claimed(job)
        finally:
            self._in_flight -= 1
            set_gauge("event_workers_busy", float(self._in_flight))

    async def _worker_loop(self, index: int) -> None:
        logger.info("event_worker_started worker=%s", index)
        while not self._stopping.is_set():
            try:
                outcome = await self._run_one()
            except Exception:  # noqa: BLE001 - keep worker alive; the job stays leased and the reaper requeues it
                logger.exception("event_worker_loop_failed worker=%s", index)
                outcome = None
            if outcome is None:
                await self._sleep(self.poll_interval_s)
        logger.info("event_worker_stopped worker=%s", index)

    def start(self) -> None:
        if self.running:
            return
        self._stopping.clear()
        self._tasks = [asyncio.create_task(self._worker_loop(index)) for index in range(self.concurrency)]

    async def stop(self, *, timeout_s: float = 30.0) -> None:
        # Let in-flight jobs finish; cancel only what is still running after the grace period.
        self._stopping.set()
        if not self._tasks:
            return
        _, pending = await asyncio.wait(self._tasks, timeout=timeout_s)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._tasks = []

    async def drain(self) -> list[ProcessOutcome]:
        """Process due jobs with the pool's concurrency until none are claimable."""
        outcomes: list[ProcessOutcome] = []

        async def _drain_worker() -> None:
            while True:
                outcome = await self._run_one()
                if outcome is None:
                    return
                outcomes.append(outcome)

        await asyncio.gather(*(_drain_worker() for _ in range(self.concurrency)))
        return outcomes
