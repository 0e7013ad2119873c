from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
import json
import logging
from typing import Any, Awaitable, Callable, Iterable, TypeVar
from uuid import uuid4

from channelplane.core.config import get_settings
from channelplane.services.resilience import get_coordination_redis
from channelplane.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

TASK_RECONCILIATION = "reconciliation"
TASK_CREDENTIAL_REFRESH = "credential_refresh"
TASK_CREDENTIAL_EXPIRY = "credential_expiry"
TASK_EVENT_REAPER = "event_reaper"
KNOWN_TASKS = (TASK_RECONCILIATION, TASK_CREDENTIAL_REFRESH, TASK_CREDENTIAL_EXPIRY, TASK_EVENT_REAPER)

T = TypeVar("T")
R = TypeVar("R")

_local_locks: dict[str, asyncio.Lock] = {}
_local_lock_owners: dict[str, str] = {}
_local_status: dict[str, dict[str, Any]] = {}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _lock_key(name: str) -> str:
    return f"{get_settings().task_redis_prefix}:lock:{name}"


def _status_key(name: str) -> str:
    return f"{get_settings().task_redis_prefix}:status:{name}"


@dataclass(slots=True)
class TaskLock:
    name: str
    token: str
    redis: Any | None
    local: bool


@dataclass
class TaskStatus:
    name: str
    is_running: bool = False
    last_run_time: datetime | None = None
    failure_count: int = 0
    last_finished_at: datetime | None = None
    last_summary: dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["last_run_time"] = self.last_run_time.isoformat() if self.last_run_time else None
        payload["last_finished_at"] = self.last_finished_at.isoformat() if self.last_finished_at else None
        return payload


async def acquire_task_lock(name: str) -> TaskLock | None:
    # One running tick per task type across all workers; a second tick is skipped, not queued.
    settings = get_settings()
    token = uuid4().hex
    redis = await get_coordination_redis()
    ttl_s = max(5, int(settings.task_lock_ttl_s))
    if redis is not None:
        acquired = await redis.set(_lock_key(name), token, nx=True, ex=ttl_s)
        if not acquired:
            return None
        return TaskLock(name=name, token=token, redis=redis, local=False)

    # Fall back to an in-process lock for deterministic local and test environments.
    lock = _local_locks.setdefault(name, asyncio.Lock())
    if lock.locked():
        return None
    await lock.acquire()
    _local_lock_owners[name] = token
    return TaskLock(name=name, token=token, redis=None, local=True)


async def release_task_lock(lock: TaskLock) -> None:
    # Release only if this worker still owns the token to avoid clobbering a newer lock holder.
    if lock.local:
        local = _local_locks.get(lock.name)
        if local is not None and local.locked() and _local_lock_owners.get(lock.name) == lock.token:
            _local_lock_owners.pop(lock.name, None)
            local.release()
        return
    if lock.redis is None:
        return
    current = await lock.redis.get(_lock_key(lock.name))
    value = current.decode("utf-8") if isinstance(current, (bytes, bytearray)) else str(current or "")
    if value == lock.token:
        await lock.redis.delete(_lock_key(lock.name))


async def _write_status(status: TaskStatus) -> None:
    redis = await get_coordination_redis()
    payload = status.as_dict()
    if redis is None:
        _local_status[status.name] = payload
        return
    await redis.set(_status_key(status.name), json.dumps(payload, default=str))


def _parse_dt(value: Any) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value))
    except ValueError:
        return None


async def get_task_status(name: str) -> TaskStatus:
    # Missing or unreadable status reads as "never ran" so ops endpoints degrade gracefully.
    redis = await get_coordination_redis()
    if redis is None:
        raw: Any = _local_status.get(name)
    else:
        stored = await redis.get(_status_key(name))
        try:
            raw = json.loads(stored) if stored else None
        except ValueError:
            raw = None
    if not isinstance(raw, dict):
        return TaskStatus(name=name)
    return TaskStatus(
        name=name,
        is_running=bool(raw.get("is_running")),
        last_run_time=_parse_dt(raw.get("last_run_time")),
        failure_count=int(raw.get("failure_count") or 0),
        last_finished_at=_parse_dt(raw.get("last_finished_at")),
        last_summary=raw.get("last_summary") or {},
    )


async def list_task_statuses() -> list[TaskStatus]:
    return [await get_task_status(name) for name in KNOWN_TASKS]


async def run_scheduled_task(name: str, func: Callable[[], Awaitable[dict[str, Any]]]) -> dict[str, Any]:
    """Run one tick of a periodic task under per-task-type mutual exclusion.

    ``func`` returns a summary dict; its ``failed`` entry becomes the task's
    ``failure_count``. A tick that raises records one failure and re-raises so
    the worker loop can log it.
    """
    lock = await acquire_task_lock(name)
    if lock is None:
        increment_counter(f"task_{name}_skipped_total")
        logger.info("scheduled_task_skipped task=%s reason=already_running", name)
        return {"status": "skipped_running"}
    previous = await get_task_status(name)
    status = TaskStatus(
        name=name,
        is_running=True,
        last_run_time=_utc_now(),
        failure_count=previous.failure_count,
        last_finished_at=previous.last_finished_at,
        last_summary=previous.last_summary,
    )
    try:
        await _write_status(status)
        try:
            summary = await func()
        except Exception:
            status.failure_count = 1
            status.last_summary = {"status": "error"}
            raise
        status.failure_count = int(summary.get("failed", 0) or 0)
        status.last_summary = summary
        return summary
    finally:
        status.is_running = False
        status.last_finished_at = _utc_now()
        try:
            await _write_status(status)
        finally:
            await release_task_lock(lock)


async def run_batched(
    items: Iterable[T],
    handler: Callable[[T], Awaitable[R]],
    *,
    max_concurrency: int,
    inter_item_delay_s: float = 0.0,
    sleep: Callable[[float], Awaitable[None]] | None = None,
) -> list[R | BaseException]:
    """Process items with a bounded pool and a fixed delay between starts.

    Failures are returned in place of results so one item never aborts the
    batch. If the caller is cancelled, no new items start but items already
    in flight are allowed to finish.
    """
    sleeper = sleep or asyncio.sleep
    semaphore = asyncio.Semaphore(max(1, int(max_concurrency)))

    async def _run(item: T) -> R:
        async with semaphore:
            return await handler(item)

    tasks: list[asyncio.Task[R]] = []
    try:
        for index, item in enumerate(items):
            if index and inter_item_delay_s > 0:
                await sleeper(inter_item_delay_s)
            tasks.append(asyncio.create_task(_run(item)))
    except asyncio.CancelledError:
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        raise
    pending = asyncio.gather(*tasks, return_exceptions=True)
    try:
        return list(await asyncio.shield(pending))
    except asyncio.CancelledError:
        await pending
        raise


def reset_local_coordination() -> None:
    # Clear in-process locks and status between tests.
    _local_locks.clear()
    _local_lock_owners.clear()
    _local_status.clear()


def parse_hours(value: str) -> list[int]:
    hours = sorted({int(part) for part in str(value).split(",") if part.strip()})
    if not hours or any(hour < 0 or hour > 23 for hour in hours):
        raise ValueError(f"invalid hour list: {value!r}")
    return hours


def seconds_until_next_hour(hours: list[int], now: datetime | None = None) -> float:
    # Seconds until the next top of an hour in ``hours`` (UTC), strictly in the future.
    current = now or _utc_now()
    base = current.replace(minute=0, second=0, microsecond=0)
    for day_offset in (0, 1):
        for hour in hours:
            candidate = base.replace(hour=hour) + timedelta(days=day_offset)
            if candidate > current:
                return (candidate - current).total_seconds()
    return 24 * 3600.0
