from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import func, select

from channelplane.core.config import get_settings
from channelplane.core.errors import UpstreamError, UpstreamTimeoutError
from channelplane.domain.models import AuditEvent, Campaign, KillSwitchEvent
from channelplane.persistence.db import SessionLocal
from channelplane.persistence.repos.channels import get_channel
from channelplane.services.backoff import BackoffConfig, BackoffEngine, tenant_key
from channelplane.services.reconciliation import (
    SKIP_CONFLICT,
    SKIP_FAILED_COOLDOWN,
    SKIP_IN_BACKOFF,
    SKIP_UNBOUND,
    ChannelReconciler,
)
from channelplane.services.vault import ChannelSecret, InMemoryVault
from channelplane.tests.utils.fakes import FakeClock, FakeUpstream, channel_state, seed_campaigns, seed_channel


async def _reconciler(upstream: FakeUpstream, clock: FakeClock, *, max_retries: int = 3) -> ChannelReconciler:
    vault = InMemoryVault()
    for tenant_id in ("tenant-a", "tenant-b"):
        await vault.store(tenant_id, ChannelSecret(access_token=f"token-{tenant_id}").dumps())
    backoff = BackoffEngine(
        BackoffConfig(initial_delay_s=30.0, max_delay_s=600.0, max_retries=max_retries, jitter_factor=0.0),
        clock=clock.monotonic,
    )
    return ChannelReconciler(backoff=backoff, upstream=upstream, vault=vault, clock=clock)


async def _load(tenant_id: str):
    async with SessionLocal() as session:
        return await get_channel(session, tenant_id=tenant_id)


@pytest.mark.asyncio
async def test_pending_channel_becomes_active_and_bound() -> None:
    await seed_channel("tenant-a")
    clock = FakeClock()
    reconciler = await _reconciler(FakeUpstream(channel_state()), clock)

    result = await reconciler.sync_channel("tenant-a")

    assert result.outcome == "synced"
    assert result.sync_status == "ACTIVE"
    record = await _load("tenant-a")
    assert record.binding_status == "bound"
    assert record.external_channel_id == "phone-1"
    assert record.phone_status == "CONNECTED"
    assert record.quality_rating == "GREEN"
    assert record.messaging_tier == "TIER_1K"
    assert record.last_synced_at == clock.now


@pytest.mark.asyncio
async def test_escalates_to_failed_after_exactly_max_retries() -> None:
    await seed_channel("tenant-a", sync_status="ACTIVE")
    clock = FakeClock()
    upstream = FakeUpstream()
    upstream.fetch_error = UpstreamTimeoutError("fetch_account timed out after 15.0s")
    reconciler = await _reconciler(upstream, clock, max_retries=3)

    outcomes = []
    for _ in range(3):
        outcomes.append(await reconciler.sync_channel("tenant-a"))
        # Step past the backoff window so every attempt reaches upstream.
        clock.advance(601)

    assert [r.escalated for r in outcomes] == [False, False, True]
    assert [r.sync_status for r in outcomes] == ["ACTIVE", "ACTIVE", "FAILED"]
    record = await _load("tenant-a")
    assert record.sync_status == "FAILED"
    assert record.sync_failed_at is not None
    assert "UpstreamTimeoutError" in record.last_sync_error
    async with SessionLocal() as session:
        alerts = await session.scalar(
            select(func.count()).select_from(AuditEvent).where(AuditEvent.event_type == "alert.channel_sync_failed")
        )
    assert alerts == 1


@pytest.mark.asyncio
async def test_backoff_window_suppresses_sync_and_force_bypasses_it() -> None:
    await seed_channel("tenant-a", sync_status="ACTIVE")
    clock = FakeClock()
    upstream = FakeUpstream()
    upstream.fetch_error = UpstreamError("fetch_account failed status=500", status_code=500)
    reconciler = await _reconciler(upstream, clock)

    await reconciler.sync_channel("tenant-a")
    skipped = await reconciler.sync_channel("tenant-a")
    assert skipped.skipped_reason == SKIP_IN_BACKOFF
    assert upstream.fetch_calls == 1

    upstream.fetch_error = None
    upstream.state = channel_state()
    forced = await reconciler.sync_channel("tenant-a", force=True)
    assert forced.outcome == "synced"
    assert upstream.fetch_calls == 2
    assert reconciler.backoff.failure_count(tenant_key("tenant-a")) == 0


@pytest.mark.asyncio
async def test_failed_channel_waits_out_cooldown_then_recovers() -> None:
    await seed_channel("tenant-a", sync_status="ACTIVE")
    clock = FakeClock()
    upstream = FakeUpstream()
    upstream.fetch_error = UpstreamError("fetch_account failed status=503", status_code=503)
    reconciler = await _reconciler(upstream, clock, max_retries=2)
    await reconciler.sync_channel("tenant-a")
    clock.advance(601)
    await reconciler.sync_channel("tenant-a")
    assert (await _load("tenant-a")).sync_status == "FAILED"
    calls_at_failure = upstream.fetch_calls

    clock.advance(60)
    skipped = await reconciler.sync_channel("tenant-a")
    assert skipped.skipped_reason == SKIP_FAILED_COOLDOWN
    assert upstream.fetch_calls == calls_at_failure

    clock.advance(reconciler.failed_cooldown_s)
    upstream.fetch_error = None
    upstream.state = channel_state()
    recovered = await reconciler.sync_channel("tenant-a")

    assert recovered.outcome == "synced"
    assert recovered.recovered is True
    assert recovered.sync_status == "ACTIVE"
    record = await _load("tenant-a")
    assert record.sync_failed_at is None
    assert record.sync_recovered_at == clock.now
    assert reconciler.backoff.failure_count(tenant_key("tenant-a")) == 0


@pytest.mark.asyncio
async def test_failed_attempt_after_cooldown_restarts_cooldown() -> None:
    await seed_channel("tenant-a", sync_status="ACTIVE")
    clock = FakeClock()
    upstream = FakeUpstream()
    upstream.fetch_error = UpstreamError("fetch_account failed status=503", status_code=503)
    reconciler = await _reconciler(upstream, clock, max_retries=1)
    await reconciler.sync_channel("tenant-a")
    first_failed_at = (await _load("tenant-a")).sync_failed_at

    clock.advance(reconciler.failed_cooldown_s + 1)
    again = await reconciler.sync_channel("tenant-a")
    assert again.outcome == "failed"
    assert again.sync_status == "FAILED"
    assert (await _load("tenant-a")).sync_failed_at > first_failed_at


@pytest.mark.asyncio
async def test_quality_drop_pauses_every_active_campaign_once() -> None:
    await seed_channel(
        "tenant-a",
        sync_status="ACTIVE",
        binding_status="bound",
        external_channel_id="phone-1",
        quality_rating="GREEN",
        messaging_tier="TIER_1K",
    )
    campaign_ids = await seed_campaigns("tenant-a", 3)
    await seed_campaigns("tenant-b", 1)
    clock = FakeClock()
    upstream = FakeUpstream(channel_state(quality="RED"))
    reconciler = await _reconciler(upstream, clock)

    result = await reconciler.sync_channel("tenant-a")
    assert result.kill_switch.triggered is True
    assert result.kill_switch.reason == "QUALITY_DEGRADED"
    assert result.kill_switch.paused_count == 3

    # Still RED on the next pass: no second trigger.
    clock.advance(60)
    again = await reconciler.sync_channel("tenant-a")
    assert again.kill_switch.triggered is False

    async with SessionLocal() as session:
        events = list((await session.execute(select(KillSwitchEvent))).scalars().all())
        campaigns = {c.id: c for c in (await session.execute(select(Campaign))).scalars().all()}
    assert len(events) == 1
    assert events[0].paused_campaign_ids == sorted(campaign_ids)
    assert events[0].transitions_json == [
        {"field": "quality_rating", "before": "GREEN", "after": "RED", "reason": "QUALITY_DEGRADED"}
    ]
    assert all(campaigns[cid].status == "paused" for cid in campaign_ids)
    assert all(campaigns[cid].paused_reason == "QUALITY_DEGRADED" for cid in campaign_ids)
    assert campaigns["camp-tenant-b-0"].status == "active"


@pytest.mark.asyncio
async def test_identifier_held_by_other_tenant_parks_channel_in_conflict() -> None:
    await seed_channel("tenant-b", binding_status="bound", external_channel_id="phone-1", sync_status="ACTIVE")
    await seed_channel("tenant-a")
    clock = FakeClock()
    upstream = FakeUpstream(channel_state(phone_id="phone-1", quality="RED"))
    reconciler = await _reconciler(upstream, clock)

    result = await reconciler.sync_channel("tenant-a")

    assert result.outcome == "conflict"
    loser = await _load("tenant-a")
    owner = await _load("tenant-b")
    assert loser.sync_status == "CONFLICT"
    assert loser.binding_status == "unassigned"
    assert loser.quality_rating == "UNKNOWN"
    assert owner.external_channel_id == "phone-1"
    assert owner.sync_status == "ACTIVE"

    held = await reconciler.sync_channel("tenant-a", force=True)
    assert held.skipped_reason == SKIP_CONFLICT

    resolved = await reconciler.resolve_conflict("tenant-a", actor_id="ops")
    assert resolved.sync_status == "PENDING"


@pytest.mark.asyncio
async def test_unbound_channel_is_never_reconciled() -> None:
    await seed_channel("tenant-a", binding_status="unbound", external_channel_id="phone-1")
    upstream = FakeUpstream(channel_state())
    reconciler = await _reconciler(upstream, FakeClock())
    result = await reconciler.sync_channel("tenant-a", force=True)
    assert result.skipped_reason == SKIP_UNBOUND
    assert upstream.fetch_calls == 0


@pytest.mark.asyncio
async def test_missing_credential_counts_as_failure() -> None:
    await seed_channel("tenant-c", sync_status="ACTIVE")
    upstream = FakeUpstream(channel_state())
    reconciler = await _reconciler(upstream, FakeClock())
    result = await reconciler.sync_channel("tenant-c")
    assert result.outcome == "failed"
    assert "CredentialUnavailableError" in result.error
    assert upstream.fetch_calls == 0


@pytest.mark.asyncio
async def test_tick_isolates_failing_tenants() -> None:
    await seed_channel("tenant-a", business_account_id="waba-1")
    await seed_channel("tenant-b", business_account_id="waba-2")
    await seed_channel("tenant-d", business_account_id=None)
    clock = FakeClock()

    class SplitUpstream(FakeUpstream):
        async def fetch_channel_state(self, business_account_id: str, access_token: str):
            self.fetch_calls += 1
            if business_account_id == "waba-2":
                raise UpstreamError("fetch_account failed status=500", status_code=500)
            return channel_state(business_account_id=business_account_id)

    reconciler = await _reconciler(SplitUpstream(), clock)
    summary = await reconciler.run_tick()

    assert summary["candidates"] == 2
    assert summary["synced"] == 1
    assert summary["failed"] == 1
    assert (await _load("tenant-a")).sync_status == "ACTIVE"
    assert (await _load("tenant-b")).last_sync_error is not None


@pytest.mark.asyncio
async def test_cooling_and_backed_off_tenants_do_not_starve_healthy_ones(monkeypatch) -> None:
    monkeypatch.setenv("RECONCILE_BATCH_SIZE", "2")
    get_settings.cache_clear()
    clock = FakeClock()
    for tenant_id in ("tenant-x", "tenant-y"):
        await seed_channel(
            tenant_id,
            binding_status="bound",
            external_channel_id=f"phone-{tenant_id}",
            sync_status="FAILED",
            sync_failed_at=clock.now - timedelta(minutes=1),
        )
    await seed_channel("tenant-b", sync_status="ACTIVE", last_synced_at=clock.now - timedelta(hours=2))
    await seed_channel("tenant-c", sync_status="ACTIVE", last_synced_at=clock.now - timedelta(hours=1))
    await seed_channel("tenant-a", sync_status="ACTIVE", last_synced_at=clock.now - timedelta(minutes=1))
    upstream = FakeUpstream(channel_state())
    reconciler = await _reconciler(upstream, clock)
    reconciler.backoff.record_failure(tenant_key("tenant-b"))
    reconciler.backoff.record_failure(tenant_key("tenant-c"))

    summary = await reconciler.run_tick()

    assert summary["synced"] == 1
    assert summary["skipped"] == 2
    assert upstream.fetch_calls == 1
    assert (await _load("tenant-a")).last_synced_at == clock.now
    assert (await _load("tenant-x")).sync_status == "FAILED"
