from __future__ import annotations

import asyncio
import logging

from arq.connections import RedisSettings

from channelplane.core.config import get_settings
from channelplane.services.events import EventWorkerPool, run_event_reaper_tick

logger = logging.getLogger(__name__)

_REAPER_INTERVAL_S = 60


async def reap_event_jobs(ctx) -> dict:
    return await run_event_reaper_tick()


async def _reaper_loop() -> None:
    # Requeue jobs whose worker died mid-flight and prune expired processed markers.
    while True:
        try:
            await run_event_reaper_tick()
        except Exception:  # noqa: BLE001 - keep reaper alive while surfacing failures in worker logs.
            logger.exception("event reaper tick failed")
        await asyncio.sleep(_REAPER_INTERVAL_S)


async def _startup(ctx) -> None:
    # The pool lives with the worker process so API intake never waits on processing.
    pool = EventWorkerPool()
    pool.start()
    ctx["event_pool"] = pool
    ctx["reaper_task"] = asyncio.create_task(_reaper_loop())
    logger.info("event_worker_pool_started concurrency=%s", pool.concurrency)


async def _shutdown(ctx) -> None:
    task = ctx.get("reaper_task")
    if task:
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
    pool = ctx.get("event_pool")
    if pool is not None:
        await pool.stop()


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = "channelplane:events"
    functions = [reap_event_jobs]
    on_startup = _startup
    on_shutdown = _shutdown
