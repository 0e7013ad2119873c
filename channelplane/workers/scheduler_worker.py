from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

from arq.connections import RedisSettings

from channelplane.core.config import get_settings
from channelplane.services.credential_refresh import run_credential_expiry_tick, run_credential_refresh_tick
from channelplane.services.reconciliation import run_reconciliation_tick, sync_tenant
from channelplane.services.scheduling import parse_hours, seconds_until_next_hour

logger = logging.getLogger(__name__)

_EXPIRY_INTERVAL_S = 3600


async def sync_tenant_job(ctx, tenant_id: str) -> dict[str, Any]:
    # On-demand single-tenant sync, bypassing backoff windows.
    result = await sync_tenant(tenant_id)
    return result.as_dict()


async def _periodic(name: str, tick: Callable[[], Awaitable[dict[str, Any]]], delay: Callable[[], float]) -> None:
    # Each task type runs on its own cadence; one failing tick never stops the next.
    while True:
        await asyncio.sleep(delay())
        try:
            summary = await tick()
            logger.info("scheduled_tick_finished task=%s status=%s", name, summary.get("status"))
        except Exception:  # noqa: BLE001 - keep scheduler alive while surfacing failures in worker logs.
            logger.exception("scheduled_tick_failed task=%s", name)


async def _startup(ctx) -> None:
    settings = get_settings()
    reconcile_interval_s = max(60, int(settings.reconcile_interval_minutes) * 60)
    refresh_hours = parse_hours(settings.credential_refresh_hours)
    ctx["scheduler_tasks"] = [
        asyncio.create_task(_periodic("reconciliation", run_reconciliation_tick, lambda: reconcile_interval_s)),
        asyncio.create_task(
            _periodic(
                "credential_refresh",
                run_credential_refresh_tick,
                lambda: seconds_until_next_hour(refresh_hours),
            )
        ),
        asyncio.create_task(_periodic("credential_expiry", run_credential_expiry_tick, lambda: _EXPIRY_INTERVAL_S)),
    ]


async def _shutdown(ctx) -> None:
    # Cancelled ticks stop starting tenants but finish the ones in flight; wait for them before arq exits.
    tasks = ctx.get("scheduler_tasks") or []
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)


class WorkerSettings:
    # Keep worker settings as class attributes for ARQ CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = "channelplane:scheduler"
    functions = [sync_tenant_job]
    on_startup = _startup
    on_shutdown = _shutdown
