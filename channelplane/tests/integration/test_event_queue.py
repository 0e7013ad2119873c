from __future__ import annotations

from datetime import timedelta
import json

import pytest
from sqlalchemy import func, select

from channelplane.core.errors import WebhookSignatureError
from channelplane.domain.models import (
    AuditEvent,
    Campaign,
    EventDeadLetter,
    EventJob,
    InboundMessage,
    KillSwitchEvent,
    ProcessedEvent,
)
from channelplane.persistence.db import SessionLocal
from channelplane.persistence.repos.channels import get_channel
from channelplane.services.events import (
    EventProcessor,
    EventWorkerPool,
    accept_event,
    queue_stats,
    replay_dead_letter,
    requeue_stale_jobs,
)
from channelplane.services.events.intake import compute_signature
from channelplane.services.events.processing import prune_processed_markers
from channelplane.services.resilience import TokenBucket
from channelplane.tests.utils.fakes import FakeClock, seed_campaigns, seed_channel


def _message_payload(message_id: str = "wamid.1") -> dict:
    return {
        "object": "whatsapp_business_account",
        "entry": [
            {
                "id": "waba-1",
                "changes": [
                    {
                        "field": "messages",
                        "value": {
                            "metadata": {"phone_number_id": "phone-1"},
                            "messages": [
                                {"id": message_id, "from": "15550001", "type": "text", "text": {"body": "hi"}, "timestamp": "1760000000"}
                            ],
                        },
                    }
                ],
            }
        ],
    }


def _status_payload() -> dict:
    return {
        "entry": [
            {
                "id": "waba-1",
                "changes": [
                    {"field": "messages", "value": {"statuses": [{"id": "wamid.9", "status": "delivered"}]}}
                ],
            }
        ]
    }


def _quality_payload(event: str = "FLAGGED") -> dict:
    return {"entry": [{"id": "waba-1", "changes": [{"field": "phone_number_quality_update", "value": {"event": event}}]}]}


async def _enqueue(payload: dict) -> str:
    body = json.dumps(payload).encode("utf-8")
    async with SessionLocal() as session:
        accepted = await accept_event(session, body=body, signature=compute_signature("app-test-secret", body))
    return accepted.job_id


async def _job(job_id: str) -> EventJob:
    async with SessionLocal() as session:
        return await session.get(EventJob, job_id)


async def _count(model, *criteria) -> int:
    async with SessionLocal() as session:
        return await session.scalar(select(func.count()).select_from(model).where(*criteria))


@pytest.mark.asyncio
async def test_intake_rejects_bad_signature_without_enqueueing() -> None:
    async with SessionLocal() as session:
        with pytest.raises(WebhookSignatureError):
            await accept_event(session, body=b'{"entry": []}', signature="sha256=00")
    assert await _count(EventJob) == 0
    assert await _count(AuditEvent, AuditEvent.event_type == "webhook.signature.rejected") == 1


@pytest.mark.asyncio
async def test_duplicate_delivery_applies_effects_once() -> None:
    await seed_channel("tenant-a", binding_status="bound", external_channel_id="phone-1")
    first = await _enqueue(_message_payload())
    second = await _enqueue(_message_payload())
    processor = EventProcessor()

    outcomes = [await processor.process_next(), await processor.process_next()]

    assert [o.status for o in outcomes] == ["completed", "duplicate"]
    assert outcomes[0].tenant_id == "tenant-a"
    assert await _count(InboundMessage) == 1
    assert (await _job(first)).duplicate is False
    assert (await _job(second)).duplicate is True
    assert (await _job(second)).status == "completed"
    assert await processor.process_next() is None


@pytest.mark.asyncio
async def test_higher_priority_jobs_are_claimed_first() -> None:
    low = await _enqueue({"entry": [{"id": "waba-1", "changes": [{"field": "message_template_status_update", "value": {}}]}]})
    normal = await _enqueue(_status_payload())
    high = await _enqueue(_message_payload())
    processor = EventProcessor()

    claimed = [(await processor.claim_next()).id for _ in range(3)]

    assert claimed == [high, normal, low]


@pytest.mark.asyncio
async def test_failing_job_is_dead_lettered_after_exactly_max_attempts() -> None:
    job_id = await _enqueue(_message_payload())
    clock = FakeClock()
    calls = {"count": 0}

    async def failing_handler(session, payload):
        calls["count"] += 1
        raise RuntimeError("downstream unavailable")

    processor = EventProcessor(handler=failing_handler, clock=clock)
    statuses = []
    for _ in range(5):
        outcome = await processor.process_next()
        statuses.append(outcome.status)
        clock.advance(120)

    assert statuses == ["retry_scheduled"] * 4 + ["dead_letter"]
    assert calls["count"] == 5
    assert await processor.process_next() is None
    job = await _job(job_id)
    assert job.status == "dead_letter"
    assert job.attempt_count == 5
    async with SessionLocal() as session:
        letters = list((await session.execute(select(EventDeadLetter))).scalars().all())
    assert len(letters) == 1
    assert letters[0].reason == "max_attempts_exceeded"
    assert letters[0].attempt_count == 5
    assert "downstream unavailable" in letters[0].last_error
    # Failed attempts roll back their idempotency marker.
    assert await _count(ProcessedEvent) == 0


@pytest.mark.asyncio
async def test_retry_waits_for_backoff() -> None:
    await _enqueue(_message_payload())
    clock = FakeClock()

    async def failing_handler(session, payload):
        raise RuntimeError("boom")

    processor = EventProcessor(handler=failing_handler, clock=clock)
    first = await processor.process_next()
    assert first.next_attempt_at >= clock.now + timedelta(seconds=1)
    assert await processor.claim_next() is None
    clock.advance(2)
    assert (await processor.claim_next()).attempt_count == 2


@pytest.mark.asyncio
async def test_malformed_payload_is_dead_lettered_without_retry() -> None:
    job_id = await _enqueue({"object": "whatsapp_business_account"})
    outcome = await EventProcessor().process_next()
    assert outcome.status == "dead_letter"
    assert outcome.attempt_count == 1
    async with SessionLocal() as session:
        letter = (await session.execute(select(EventDeadLetter))).scalar_one()
    assert letter.job_id == job_id
    assert letter.reason == "non_retryable"


@pytest.mark.asyncio
async def test_replay_requeues_dead_letter_once() -> None:
    await seed_channel("tenant-a", binding_status="bound", external_channel_id="phone-1")
    await _enqueue(_message_payload())
    clock = FakeClock()

    async def failing_handler(session, payload):
        raise RuntimeError("boom")

    failing = EventProcessor(handler=failing_handler, clock=clock)
    while (outcome := await failing.process_next()) is not None and outcome.status != "dead_letter":
        clock.advance(120)
    async with SessionLocal() as session:
        letter = (await session.execute(select(EventDeadLetter))).scalar_one()
        replay_id = await replay_dead_letter(session, dead_letter_id=letter.id, actor_id="ops")
        again = await replay_dead_letter(session, dead_letter_id=letter.id, actor_id="ops")
    assert replay_id == again

    outcome = await EventProcessor().process_next()
    assert outcome.job_id == replay_id
    assert outcome.status == "completed"
    assert await _count(InboundMessage) == 1


@pytest.mark.asyncio
async def test_quality_event_trips_kill_switch_between_ticks() -> None:
    await seed_channel(
        "tenant-a",
        binding_status="bound",
        external_channel_id="phone-1",
        quality_rating="GREEN",
        sync_status="ACTIVE",
    )
    await seed_campaigns("tenant-a", 2)
    await _enqueue(_quality_payload("FLAGGED"))

    outcome = await EventProcessor().process_next()

    assert outcome.status == "completed"
    async with SessionLocal() as session:
        record = await get_channel(session, tenant_id="tenant-a")
        event = (await session.execute(select(KillSwitchEvent))).scalar_one()
        paused = await session.scalar(
            select(func.count()).select_from(Campaign).where(Campaign.status == "paused")
        )
    assert record.quality_rating == "RED"
    assert event.source == "event"
    assert event.reason == "QUALITY_DEGRADED"
    assert paused == 2


@pytest.mark.asyncio
async def test_account_ban_event_blocks_and_reinstate_clears() -> None:
    await seed_channel("tenant-a", binding_status="bound", external_channel_id="phone-1", sync_status="ACTIVE")
    ban = {
        "entry": [
            {
                "id": "waba-1",
                "changes": [{"field": "account_update", "value": {"event": "DISABLED_UPDATE", "ban_info": {"waba_ban_state": "DISABLE"}}}],
            }
        ]
    }
    reinstate = {"entry": [{"id": "waba-1", "changes": [{"field": "account_update", "value": {"event": "ACCOUNT_REINSTATED"}}]}]}
    await _enqueue(ban)
    processor = EventProcessor()
    await processor.process_next()
    async with SessionLocal() as session:
        record = await get_channel(session, tenant_id="tenant-a")
    assert record.account_blocked is True
    assert record.decision_status == "DISABLED"

    await _enqueue(reinstate)
    await processor.process_next()
    async with SessionLocal() as session:
        record = await get_channel(session, tenant_id="tenant-a")
    assert record.account_blocked is False
    assert record.decision_status is None


@pytest.mark.asyncio
async def test_worker_pool_drains_queue_concurrently() -> None:
    await seed_channel("tenant-a", binding_status="bound", external_channel_id="phone-1")
    for index in range(6):
        await _enqueue(_message_payload(f"wamid.{index}"))
    pool = EventWorkerPool(concurrency=3, rate_limit_per_s=1000.0, burst=100)

    outcomes = await pool.drain()

    assert sorted(o.status for o in outcomes) == ["completed"] * 6
    assert await _count(InboundMessage) == 6
    assert pool.in_flight == 0


@pytest.mark.asyncio
async def test_stale_lease_is_requeued_and_markers_pruned() -> None:
    job_id = await _enqueue(_message_payload())
    processor = EventProcessor()
    claimed = await processor.claim_next()
    assert claimed.id == job_id

    clock = FakeClock()
    clock.advance(3600)
    summary = await requeue_stale_jobs(now=clock.now)
    assert summary == {"requeued": 1, "dead_lettered": 0}
    assert (await _job(job_id)).status == "queued"

    await EventProcessor(clock=clock).process_next()
    assert await _count(ProcessedEvent) == 1
    clock.advance(25 * 3600)
    assert await prune_processed_markers(now=clock.now) == 1


@pytest.mark.asyncio
async def test_queue_stats_report_depth_and_dead_letters() -> None:
    await _enqueue(_message_payload())
    await _enqueue({"object": "broken"})
    processor = EventProcessor()
    await processor.process_next()
    await processor.process_next()
    async with SessionLocal() as session:
        stats = await queue_stats(session)
    assert stats["counts"]["completed"] == 1
    assert stats["counts"]["dead_letter"] == 1
    assert stats["pending_dead_letters"] == 1
    assert stats["oldest_queued_at"] is None


@pytest.mark.asyncio
async def test_throttled_worker_waits_before_claiming() -> None:
    await seed_channel("tenant-a", binding_status="bound", external_channel_id="phone-1")
    await _enqueue(_message_payload("wamid.a"))
    await _enqueue(_message_payload("wamid.b"))
    now = {"t": 0.0}
    seen_while_throttled: list[list[tuple[str, int]]] = []

    async def throttled_sleep(seconds: float) -> None:
        async with SessionLocal() as session:
            rows = (await session.execute(select(EventJob.status, EventJob.attempt_count))).all()
        seen_while_throttled.append(sorted((str(status), int(attempts)) for status, attempts in rows))
        now["t"] += seconds

    pool = EventWorkerPool(concurrency=1)
    pool.limiter = TokenBucket(rate=1.0, burst=1, clock=lambda: now["t"], sleep=throttled_sleep)

    outcomes = await pool.drain()

    assert [o.status for o in outcomes] == ["completed", "completed"]
    # While waiting for a token the next job is still queued and has spent no attempt.
    assert seen_while_throttled[0] == [("completed", 1), ("queued", 0)]
    assert all(status != "processing" for snapshot in seen_while_throttled for status, _ in snapshot)
