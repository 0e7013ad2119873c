from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import hashlib
import logging
from typing import Any, Awaitable, Callable
from uuid import uuid4

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from channelplane.core.config import get_settings
from channelplane.core.errors import EventPayloadError, NotFoundError
from channelplane.domain.events import (
    DEAD_LETTER_MAX_ATTEMPTS,
    DEAD_LETTER_NON_RETRYABLE,
    JOB_COMPLETED,
    JOB_DEAD_LETTER,
    JOB_PROCESSING,
    JOB_QUEUED,
)
from channelplane.domain.models import EventDeadLetter, EventJob, ProcessedEvent
from channelplane.persistence.db import SessionLocal
from channelplane.persistence.repos import events as events_repo
from channelplane.services.alerts import SEVERITY_WARNING, raise_operator_alert
from channelplane.services.audit import record_event
from channelplane.services.events.effects import apply_event_effects
from channelplane.services.scheduling import TASK_EVENT_REAPER, run_scheduled_task
from channelplane.services.telemetry import increment_counter, set_gauge


logger = logging.getLogger(__name__)

EffectsHandler = Callable[[AsyncSession, dict[str, Any]], Awaitable["str | None"]]

# Claim scans a few candidates so a lost compare-and-set race does not idle the worker.
_CLAIM_CANDIDATES = 5


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _describe(exc: Exception) -> str:
    return f"{type(exc).__name__}: {exc}"[:500]


def retry_backoff_ms(attempt: int, job_id: str) -> int:
    # Exponential from event_backoff_ms, capped, plus up to 10% jitter derived from the job id.
    settings = get_settings()
    base = max(0, int(settings.event_backoff_ms))
    cap = max(base, int(settings.event_backoff_max_ms))
    delay = min(cap, base * (2 ** max(0, attempt - 1)))
    digest = hashlib.sha256(f"{job_id}:{attempt}".encode("utf-8")).hexdigest()
    jitter = int(delay * 0.1 * (int(digest[:8], 16) / 0xFFFFFFFF))
    return min(cap, delay + jitter)


@dataclass(frozen=True)
class ClaimedJob:
    id: str
    idempotency_key: str
    event_type: str
    payload: dict[str, Any]
    attempt_count: int
    max_attempts: int


@dataclass(frozen=True)
class ProcessOutcome:
    job_id: str
    # completed | duplicate | retry_scheduled | dead_letter
    status: str
    attempt_count: int
    tenant_id: str | None = None
    error: str | None = None
    next_attempt_at: datetime | None = None


class EventProcessor:
    """Claims queued event jobs and applies them exactly once per idempotency key.

    Each attempt runs the effects and the processed marker in one
    transaction. A failed attempt is re-queued with backoff until
    ``max_attempts`` is reached, then dead-lettered; payload errors are
    dead-lettered on the first attempt.
    """

    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        handler: EffectsHandler | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.session_factory = session_factory or SessionLocal
        self.handler = handler or apply_event_effects
        self._clock = clock or _utc_now

    async def claim_next(self) -> ClaimedJob | None:
        now = self._clock()
        async with self.session_factory() as session:
            candidates = list(
                (
                    await session.execute(
                        select(EventJob.id)
                        .where(EventJob.status == JOB_QUEUED, EventJob.next_attempt_at <= now)
                        .order_by(EventJob.priority_rank.asc(), EventJob.enqueued_at.asc())
                        .limit(_CLAIM_CANDIDATES)
                        .with_for_update(skip_locked=True)
                    )
                ).scalars().all()
            )
            for job_id in candidates:
                result = await session.execute(
                    update(EventJob)
                    .where(EventJob.id == job_id, EventJob.status == JOB_QUEUED)
                    .values(
                        status=JOB_PROCESSING,
                        locked_at=now,
                        attempt_count=EventJob.attempt_count + 1,
                    )
                )
                if result.rowcount == 0:
                    continue
                await session.commit()
                job = await session.get(EventJob, job_id)
                if job is None:
                    return None
                return ClaimedJob(
                    id=job.id,
                    idempotency_key=job.idempotency_key,
                    event_type=job.event_type,
                    payload=dict(job.payload_json or {}),
                    attempt_count=int(job.attempt_count),
                    max_attempts=int(job.max_attempts),
                )
            await session.rollback()
        return None

    async def process_next(self) -> ProcessOutcome | None:
        job = await self.claim_next()
        if job is None:
            return None
        return await self.process_claimed(job)

    async def process_claimed(self, job: ClaimedJob) -> ProcessOutcome:
        now = self._clock()
        try:
            async with self.session_factory() as session:
                duplicate = await session.get(ProcessedEvent, job.idempotency_key) is not None
                tenant_id: str | None = None
                if not duplicate:
                    session.add(ProcessedEvent(idempotency_key=job.idempotency_key, job_id=job.id, processed_at=now))
                    tenant_id = await self.handler(session, job.payload)
                await session.execute(
                    update(EventJob)
                    .where(EventJob.id == job.id, EventJob.status == JOB_PROCESSING)
                    .values(
                        status=JOB_COMPLETED,
                        completed_at=now,
                        duplicate=duplicate,
                        tenant_id=tenant_id,
                        last_error=None,
                    )
                )
                await session.commit()
        except IntegrityError as exc:
            # Another worker committed the same key between our check and our commit.
            if await self._marker_exists(job.idempotency_key):
                return await self._complete_duplicate(job, now)
            return await self._record_failure(job, exc)
        except EventPayloadError as exc:
            return await self.dead_letter(job, exc, reason=DEAD_LETTER_NON_RETRYABLE)
        except Exception as exc:  # noqa: BLE001 - a failing job is retried or dead-lettered, never dropped
            logger.exception("event_job_failed job_id=%s attempt=%s", job.id, job.attempt_count)
            return await self._record_failure(job, exc)

        if duplicate:
            increment_counter("event_duplicates_total")
            logger.info("event_job_duplicate job_id=%s key=%s", job.id, job.idempotency_key)
            return ProcessOutcome(job_id=job.id, status="duplicate", attempt_count=job.attempt_count)
        increment_counter("event_processed_total")
        return ProcessOutcome(job_id=job.id, status=JOB_COMPLETED, attempt_count=job.attempt_count, tenant_id=tenant_id)

    async def _marker_exists(self, key: str) -> bool:
        async with self.session_factory() as session:
            return await session.get(ProcessedEvent, key) is not None

    async def _complete_duplicate(self, job: ClaimedJob, now: datetime) -> ProcessOutcome:
        async with self.session_factory() as session:
            await session.execute(
                update(EventJob)
                .where(EventJob.id == job.id, EventJob.status == JOB_PROCESSING)
                .values(status=JOB_COMPLETED, completed_at=now, duplicate=True, last_error=None)
            )
            await session.commit()
        increment_counter("event_duplicates_total")
        return ProcessOutcome(job_id=job.id, status="duplicate", attempt_count=job.attempt_count)

    async def _record_failure(self, job: ClaimedJob, exc: Exception) -> ProcessOutcome:
        # attempt_count was incremented at claim time, so it already counts this attempt.
        if job.attempt_count >= job.max_attempts:
            return await self.dead_letter(job, exc, reason=DEAD_LETTER_MAX_ATTEMPTS)
        message = _describe(exc)
        next_attempt_at = self._clock() + timedelta(milliseconds=retry_backoff_ms(job.attempt_count, job.id))
        async with self.session_factory() as session:
            await session.execute(
                update(EventJob)
                .where(EventJob.id == job.id, EventJob.status == JOB_PROCESSING)
                .values(status=JOB_QUEUED, next_attempt_at=next_attempt_at, locked_at=None, last_error=message)
            )
            await session.commit()
        increment_counter("event_retries_total")
        logger.warning(
            "event_job_retry_scheduled job_id=%s attempt=%s max_attempts=%s error=%s",
            job.id,
            job.attempt_count,
            job.max_attempts,
            message,
        )
        return ProcessOutcome(
            job_id=job.id,
            status="retry_scheduled",
            attempt_count=job.attempt_count,
            error=message,
            next_attempt_at=next_attempt_at,
        )

    async def dead_letter(self, job: ClaimedJob, exc: Exception, *, reason: str) -> ProcessOutcome:
        message = _describe(exc)
        async with self.session_factory() as session:
            await session.execute(
                update(EventJob)
                .where(EventJob.id == job.id)
                .values(status=JOB_DEAD_LETTER, locked_at=None, last_error=message)
            )
            session.add(
                EventDeadLetter(
                    id=uuid4().hex,
                    job_id=job.id,
                    reason=reason,
                    last_error=message,
                    attempt_count=job.attempt_count,
                    payload_json=job.payload,
                )
            )
            await record_event(
                session=session,
                tenant_id=None,
                event_type="event.dead_lettered",
                outcome="failure",
                resource_type="event_job",
                resource_id=job.id,
                metadata={"reason": reason, "attempts": job.attempt_count, "event_type": job.event_type},
                error_code=type(exc).__name__,
            )
            await session.commit()
        increment_counter("event_dead_letter_total")
        logger.error(
            "event_job_dead_lettered job_id=%s reason=%s attempts=%s error=%s",
            job.id,
            reason,
            job.attempt_count,
            message,
        )
        await raise_operator_alert(
            alert_type="event_dead_lettered",
            severity=SEVERITY_WARNING,
            message=f"event job dead-lettered after {job.attempt_count} attempt(s): {reason}",
            tenant_id=None,
            resource_type="event_job",
            resource_id=job.id,
            metadata={"event_type": job.event_type},
        )
        return ProcessOutcome(job_id=job.id, status=JOB_DEAD_LETTER, attempt_count=job.attempt_count, error=message)


async def requeue_stale_jobs(
    *,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    now: datetime | None = None,
) -> dict[str, int]:
    # A worker that died mid-job leaves it in processing; past the lease it goes back to the queue.
    factory = session_factory or SessionLocal
    current = now or _utc_now()
    cutoff = current - timedelta(seconds=max(1, int(get_settings().event_lease_s)))
    requeued = 0
    exhausted: list[EventJob] = []
    async with factory() as session:
        stale = list(
            (
                await session.execute(
                    select(EventJob).where(EventJob.status == JOB_PROCESSING, EventJob.locked_at < cutoff)
                )
            ).scalars().all()
        )
        for job in stale:
            if job.attempt_count >= job.max_attempts:
                exhausted.append(job)
                continue
            job.status = JOB_QUEUED
            job.locked_at = None
            job.next_attempt_at = current
            job.last_error = "lease expired"
            requeued += 1
        await session.commit()
    processor = EventProcessor(session_factory=factory)
    for job in exhausted:
        claimed = ClaimedJob(
            id=job.id,
            idempotency_key=job.idempotency_key,
            event_type=job.event_type,
            payload=dict(job.payload_json or {}),
            attempt_count=int(job.attempt_count),
            max_attempts=int(job.max_attempts),
        )
        await processor.dead_letter(claimed, TimeoutError("lease expired"), reason=DEAD_LETTER_MAX_ATTEMPTS)
    if requeued:
        logger.warning("event_jobs_requeued count=%s", requeued)
    return {"requeued": requeued, "dead_lettered": len(exhausted)}


async def prune_processed_markers(
    *,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    now: datetime | None = None,
) -> int:
    factory = session_factory or SessionLocal
    cutoff = (now or _utc_now()) - timedelta(hours=max(1, int(get_settings().event_idempotency_ttl_hours)))
    async with factory() as session:
        result = await session.execute(delete(ProcessedEvent).where(ProcessedEvent.processed_at < cutoff))
        await session.commit()
    return int(result.rowcount or 0)


async def replay_dead_letter(
    session: AsyncSession,
    *,
    dead_letter_id: str,
    actor_id: str | None = None,
    request_id: str | None = None,
) -> str:
    """Re-enqueue a dead-lettered payload as a fresh job and return its id.

    Replaying the same dead letter twice returns the first replay's job.
    """
    letter = await session.get(EventDeadLetter, dead_letter_id)
    if letter is None:
        raise NotFoundError(f"dead letter {dead_letter_id} not found")
    if letter.replayed_job_id:
        return letter.replayed_job_id
    original = await session.get(EventJob, letter.job_id)
    if original is None:
        raise NotFoundError(f"event job {letter.job_id} not found")
    now = _utc_now()
    replay = EventJob(
        id=uuid4().hex,
        idempotency_key=original.idempotency_key,
        event_type=original.event_type,
        priority=original.priority,
        priority_rank=original.priority_rank,
        payload_json=letter.payload_json,
        signature=original.signature,
        status=JOB_QUEUED,
        attempt_count=0,
        max_attempts=max(1, int(get_settings().event_max_attempts)),
        next_attempt_at=now,
        enqueued_at=now,
    )
    session.add(replay)
    letter.replayed_at = now
    letter.replayed_job_id = replay.id
    await record_event(
        session=session,
        tenant_id=original.tenant_id,
        actor_type="operator",
        actor_id=actor_id,
        event_type="event.dead_letter.replayed",
        outcome="success",
        resource_type="event_job",
        resource_id=original.id,
        request_id=request_id,
        metadata={"replay_job_id": replay.id},
    )
    await session.commit()
    logger.info("event_dead_letter_replayed dead_letter_id=%s job_id=%s", dead_letter_id, replay.id)
    return replay.id


async def queue_stats(session: AsyncSession) -> dict[str, Any]:
    counts = await events_repo.count_jobs_by_status(session)
    oldest = await events_repo.oldest_queued_at(session)
    lag_s = max(0.0, (_utc_now() - oldest).total_seconds()) if oldest is not None else 0.0
    set_gauge("event_queue_depth", float(counts.get(JOB_QUEUED, 0)))
    set_gauge("event_queue_lag_s", lag_s)
    return {
        "counts": counts,
        "pending_dead_letters": await events_repo.count_pending_dead_letters(session),
        "oldest_queued_at": oldest.isoformat() if oldest is not None else None,
        "lag_s": round(lag_s, 3),
    }


async def _reaper_tick() -> dict[str, Any]:
    stale = await requeue_stale_jobs()
    pruned = await prune_processed_markers()
    return {"status": "ok", "failed": 0, "pruned_markers": pruned, **stale}


async def run_event_reaper_tick() -> dict[str, Any]:
    return await run_scheduled_task(TASK_EVENT_REAPER, _reaper_tick)
