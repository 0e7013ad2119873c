from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
from typing import Any, Callable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from channelplane.core.config import get_settings
from channelplane.core.errors import (
    CredentialUnavailableError,
    NotFoundError,
    UpstreamError,
    VaultConfigError,
)
from channelplane.domain.channels import (
    BINDING_BOUND,
    BINDING_UNBOUND,
    PHONE_CONNECTED,
    SYNC_ACTIVE,
    SYNC_CONFLICT,
    SYNC_FAILED,
    SYNC_PENDING,
    ChannelSnapshot,
    map_phone_status,
    normalize_quality,
)
from channelplane.domain.models import TenantChannel
from channelplane.persistence.db import SessionLocal
from channelplane.persistence.repos.channels import get_channel, list_reconcile_candidates
from channelplane.services.alerts import SEVERITY_CRITICAL, SEVERITY_ERROR, raise_operator_alert
from channelplane.services.audit import record_event
from channelplane.services.backoff import BackoffEngine, RetryDecision, get_backoff_engine, tenant_key
from channelplane.services.identity_registry import IdentityRegistry
from channelplane.services.kill_switch import (
    CampaignStore,
    KillSwitchResult,
    SqlCampaignStore,
    apply_kill_switch,
    evaluate_kill_switch,
)
from channelplane.services.scheduling import TASK_RECONCILIATION, run_batched, run_scheduled_task
from channelplane.services.telemetry import increment_counter
from channelplane.services.upstream import ChannelState, PhoneState, UpstreamClient, get_upstream_client
from channelplane.services.vault import ChannelSecret, CredentialVault, get_vault


logger = logging.getLogger(__name__)

SKIP_UNBOUND = "unbound"
SKIP_NOT_ONBOARDED = "not_onboarded"
SKIP_CONFLICT = "identity_conflict"
SKIP_FAILED_COOLDOWN = "failed_cooldown"
SKIP_IN_BACKOFF = "in_backoff"

_MAX_ERROR_LENGTH = 500


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _describe_error(exc: Exception) -> str:
    # Our upstream errors carry status/code only; anything else is reduced to its type.
    if isinstance(exc, (UpstreamError, CredentialUnavailableError)):
        text = f"{type(exc).__name__}: {exc}"
    else:
        text = type(exc).__name__
    return text[:_MAX_ERROR_LENGTH]


@dataclass(frozen=True)
class SyncResult:
    tenant_id: str
    # synced | skipped | failed | conflict | not_found
    outcome: str
    sync_status: str | None = None
    skipped_reason: str | None = None
    error: str | None = None
    retry: RetryDecision | None = None
    escalated: bool = False
    recovered: bool = False
    kill_switch: KillSwitchResult | None = None
    subscription_restored: bool = False

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "tenant_id": self.tenant_id,
            "outcome": self.outcome,
            "sync_status": self.sync_status,
            "skipped_reason": self.skipped_reason,
            "error": self.error,
            "escalated": self.escalated,
            "recovered": self.recovered,
            "subscription_restored": self.subscription_restored,
        }
        if self.retry is not None:
            payload["retry"] = {
                "should_retry": self.retry.should_retry,
                "next_delay_s": self.retry.next_delay,
                "total_retries": self.retry.total_retries,
            }
        if self.kill_switch is not None:
            payload["kill_switch"] = {
                "triggered": self.kill_switch.triggered,
                "reason": self.kill_switch.reason,
                "paused_count": self.kill_switch.paused_count,
            }
        return payload


async def _load_for_update(session: AsyncSession, tenant_id: str) -> TenantChannel:
    # Row lock in Postgres keeps event-driven updates and reconciliation from interleaving.
    record = (
        await session.execute(
            select(TenantChannel).where(TenantChannel.tenant_id == tenant_id).with_for_update()
        )
    ).scalar_one_or_none()
    if record is None:
        raise NotFoundError(f"tenant channel {tenant_id} not found")
    return record


class ChannelReconciler:
    """Per-tenant reconciliation of local channel state against upstream.

    State machine: ``PENDING -> ACTIVE`` once the number is provisioned,
    ``ACTIVE -> ACTIVE`` on routine refreshes, ``* -> FAILED`` once the
    backoff engine stops allowing retries, ``FAILED -> ACTIVE`` on the first
    successful fetch after the cooldown, and ``* -> CONFLICT`` when upstream
    reports an identifier another tenant holds.

    Suppression has two tiers. ``FAILED`` records are gated only by the
    cooldown (always longer than the backoff cap); every other record is gated
    by the in-memory backoff window. A record is never subject to both, so a
    restart or a stale backoff entry cannot keep a FAILED tenant parked.
    """

    def __init__(
        self,
        *,
        backoff: BackoffEngine | None = None,
        upstream: UpstreamClient | None = None,
        vault: CredentialVault | None = None,
        registry: IdentityRegistry | None = None,
        campaign_store: CampaignStore | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.backoff = backoff or get_backoff_engine()
        self.upstream = upstream or get_upstream_client()
        self.vault = vault or get_vault()
        self.session_factory = session_factory or SessionLocal
        self.registry = registry or IdentityRegistry(self.session_factory)
        self.campaign_store = campaign_store or SqlCampaignStore()
        self._clock = clock or _utc_now

    @property
    def failed_cooldown_s(self) -> float:
        configured = float(get_settings().reconcile_failed_cooldown_s)
        return max(configured, self.backoff.config.max_delay_s + 1.0)

    def skip_reason(self, record: TenantChannel, now: datetime | None = None) -> str | None:
        now = now or self._clock()
        if record.binding_status == BINDING_UNBOUND:
            return SKIP_UNBOUND
        if not record.business_account_id:
            return SKIP_NOT_ONBOARDED
        if record.sync_status == SYNC_CONFLICT:
            return SKIP_CONFLICT
        if record.sync_status == SYNC_FAILED:
            if record.sync_failed_at is not None:
                elapsed = (now - record.sync_failed_at).total_seconds()
                if elapsed < self.failed_cooldown_s:
                    return SKIP_FAILED_COOLDOWN
            return None
        if self.backoff.is_in_backoff(tenant_key(record.tenant_id)):
            return SKIP_IN_BACKOFF
        return None

    async def _resolve_access_token(self, tenant_id: str) -> str:
        secret = ChannelSecret.loads(await self.vault.retrieve(tenant_id))
        if secret is not None:
            return secret.access_token
        system_token = get_settings().upstream_system_token
        if system_token:
            return system_token
        raise CredentialUnavailableError(f"no credential stored for tenant {tenant_id}")

    async def sync_channel(self, tenant_id: str, *, force: bool = False) -> SyncResult:
        async with self.session_factory() as session:
            record = await get_channel(session, tenant_id=tenant_id)
        if record is None:
            return SyncResult(tenant_id=tenant_id, outcome="not_found")
        reason = self.skip_reason(record)
        # Operators may bypass backoff and cooldown, never the structural skips.
        if reason is not None and not (force and reason in {SKIP_IN_BACKOFF, SKIP_FAILED_COOLDOWN}):
            increment_counter(f"reconcile_skipped_{reason}_total")
            return SyncResult(
                tenant_id=tenant_id, outcome="skipped", sync_status=record.sync_status, skipped_reason=reason
            )

        access_token: str | None = None
        try:
            access_token = await self._resolve_access_token(tenant_id)
            state = await self.upstream.fetch_channel_state(str(record.business_account_id), access_token)
        except (UpstreamError, CredentialUnavailableError, VaultConfigError) as exc:
            return await self._handle_failure(tenant_id, exc)

        return await self._apply_success(tenant_id, record, state, access_token)

    async def _handle_failure(self, tenant_id: str, exc: Exception) -> SyncResult:
        decision = self.backoff.record_failure(tenant_key(tenant_id))
        message = _describe_error(exc)
        now = self._clock()
        escalated = False
        async with self.session_factory() as session:
            record = await _load_for_update(session, tenant_id)
            record.last_sync_error = message
            if record.sync_status == SYNC_FAILED:
                # A failed post-cooldown attempt restarts the cooldown.
                record.sync_failed_at = now
            elif not decision.should_retry:
                record.sync_status = SYNC_FAILED
                record.sync_failed_at = now
                escalated = True
            sync_status = record.sync_status
            await session.commit()
        increment_counter("reconcile_failures_total")
        logger.warning(
            "reconcile_failed tenant_id=%s retries=%s should_retry=%s next_delay_s=%.1f error=%s",
            tenant_id,
            decision.total_retries,
            decision.should_retry,
            decision.next_delay,
            message,
        )
        if escalated:
            increment_counter("reconcile_escalations_total")
            await raise_operator_alert(
                alert_type="channel_sync_failed",
                severity=SEVERITY_ERROR,
                message=f"channel sync failed after {decision.total_retries} consecutive attempts",
                tenant_id=tenant_id,
                resource_type="tenant_channel",
                resource_id=tenant_id,
                metadata={"last_error": message, "cooldown_s": self.failed_cooldown_s},
            )
        return SyncResult(
            tenant_id=tenant_id,
            outcome="failed",
            sync_status=sync_status,
            error=message,
            retry=decision,
            escalated=escalated,
        )

    async def _handle_conflict(self, tenant_id: str, external_id: str, owner_tenant_id: str | None) -> SyncResult:
        # Never overwrite: park the tenant for manual resolution and leave the fetched signals unapplied.
        async with self.session_factory() as session:
            record = await _load_for_update(session, tenant_id)
            record.sync_status = SYNC_CONFLICT
            record.last_sync_error = f"identity conflict: external channel {external_id} bound to another tenant"
            await session.commit()
        await raise_operator_alert(
            alert_type="identity_conflict",
            severity=SEVERITY_CRITICAL,
            message="external channel identifier already bound to another tenant",
            tenant_id=tenant_id,
            resource_type="tenant_channel",
            resource_id=tenant_id,
            metadata={"external_channel_id": external_id, "owner_tenant_id": owner_tenant_id},
        )
        return SyncResult(tenant_id=tenant_id, outcome="conflict", sync_status=SYNC_CONFLICT, error="identity conflict")

    def _apply_phone(self, record: TenantChannel, phone: PhoneState, now: datetime) -> None:
        mapped = map_phone_status(
            phone.status,
            account_mode=phone.account_mode,
            code_verification_status=phone.code_verification_status,
        )
        record.phone_status = mapped
        if phone.quality_rating:
            record.quality_rating = normalize_quality(phone.quality_rating)
        if phone.messaging_limit_tier:
            record.messaging_tier = phone.messaging_limit_tier
        if phone.verified_name:
            record.verified_name = phone.verified_name
        if phone.display_phone_number:
            record.display_phone_number = phone.display_phone_number
        if mapped == PHONE_CONNECTED and record.connected_at is None:
            record.connected_at = now

    async def _apply_success(
        self,
        tenant_id: str,
        loaded: TenantChannel,
        state: ChannelState,
        access_token: str,
    ) -> SyncResult:
        phone = state.select_phone(loaded.external_channel_id)
        if phone is not None and (
            phone.id != loaded.external_channel_id or loaded.binding_status != BINDING_BOUND
        ):
            # Bind commits on its own before the update transaction opens.
            bind = await self.registry.bind(tenant_id, phone.id)
            if not bind.ok:
                return await self._handle_conflict(tenant_id, phone.id, bind.owner_tenant_id)

        now = self._clock()
        recovered = False
        async with self.session_factory() as session:
            record = await _load_for_update(session, tenant_id)
            before = ChannelSnapshot.from_record(record)
            previous_status = record.sync_status
            was_connected = record.connected_at is not None
            if phone is not None:
                self._apply_phone(record, phone, now)
            if state.capability_blocked is not None:
                record.capability_blocked = state.capability_blocked
                record.capability_block_reason = state.capability_block_reason if state.capability_blocked else None
            if state.account_blocked:
                record.account_blocked = True
                record.account_block_reason = state.account_block_reason
            provisioned = phone is not None and record.phone_status == PHONE_CONNECTED
            if previous_status == SYNC_PENDING and provisioned:
                record.sync_status = SYNC_ACTIVE
            elif previous_status == SYNC_FAILED:
                record.sync_status = SYNC_ACTIVE if (provisioned or was_connected) else SYNC_PENDING
                record.sync_failed_at = None
                record.sync_recovered_at = now
                recovered = True
            record.last_synced_at = now
            record.last_sync_error = None

            after = ChannelSnapshot.from_record(record)
            kill_switch = await apply_kill_switch(
                session,
                tenant_id=tenant_id,
                decision=evaluate_kill_switch(before, after),
                campaign_store=self.campaign_store,
                source="reconciliation",
            )
            if recovered:
                await record_event(
                    session=session,
                    tenant_id=tenant_id,
                    event_type="channel.sync.recovered",
                    outcome="success",
                    resource_type="tenant_channel",
                    resource_id=tenant_id,
                    metadata={"sync_status": record.sync_status},
                )
            sync_status = record.sync_status
            await session.commit()

        self.backoff.reset(tenant_key(tenant_id))
        increment_counter("reconcile_success_total")
        if recovered:
            logger.info("reconcile_recovered tenant_id=%s sync_status=%s", tenant_id, sync_status)

        subscription_restored = await self._check_subscription(tenant_id, state.business_account_id, access_token)
        return SyncResult(
            tenant_id=tenant_id,
            outcome="synced",
            sync_status=sync_status,
            recovered=recovered,
            kill_switch=kill_switch,
            subscription_restored=subscription_restored,
        )

    async def _check_subscription(self, tenant_id: str, business_account_id: str, access_token: str) -> bool:
        # Best effort: a lost event subscription is repaired here but never counts as a sync failure.
        if not get_settings().reconcile_subscription_check_enabled:
            return False
        try:
            return await self.upstream.ensure_event_subscription(business_account_id, access_token)
        except UpstreamError as exc:
            logger.warning("reconcile_subscription_check_failed tenant_id=%s error=%s", tenant_id, _describe_error(exc))
            return False

    async def _select_eligible(self, batch_size: int) -> tuple[list[str], int]:
        # Page past tenants still in backoff so they cannot crowd healthy ones out of the batch.
        now = self._clock()
        failed_before = now - timedelta(seconds=self.failed_cooldown_s)
        offset = 0
        skipped = 0
        eligible: list[str] = []
        async with self.session_factory() as session:
            while len(eligible) < batch_size:
                page = await list_reconcile_candidates(
                    session, failed_before=failed_before, limit=batch_size, offset=offset
                )
                offset += len(page)
                for record in page:
                    if len(eligible) >= batch_size:
                        break
                    if self.skip_reason(record, now) is None:
                        eligible.append(record.tenant_id)
                    else:
                        skipped += 1
                if len(page) < batch_size:
                    break
        return eligible, skipped

    async def run_tick(self) -> dict[str, Any]:
        settings = get_settings()
        eligible, skipped = await self._select_eligible(max(1, int(settings.reconcile_batch_size)))
        results = await run_batched(
            eligible,
            self.sync_channel,
            max_concurrency=settings.reconcile_max_concurrency,
            inter_item_delay_s=max(0, int(settings.reconcile_inter_item_delay_ms)) / 1000.0,
        )
        summary: dict[str, Any] = {
            "status": "ok",
            "candidates": len(eligible) + skipped,
            "skipped": skipped,
            "synced": 0,
            "failed": 0,
            "escalated": 0,
            "recovered": 0,
            "conflicts": 0,
            "kill_switch_triggered": 0,
        }
        for tenant_id, result in zip(eligible, results):
            if isinstance(result, BaseException):
                # Unexpected errors stay isolated to their tenant.
                summary["failed"] += 1
                logger.error("reconcile_unexpected_error tenant_id=%s", tenant_id, exc_info=result)
                continue
            if result.outcome == "synced":
                summary["synced"] += 1
            elif result.outcome == "failed":
                summary["failed"] += 1
            elif result.outcome == "conflict":
                summary["conflicts"] += 1
            elif result.outcome == "skipped":
                summary["skipped"] += 1
            summary["escalated"] += int(result.escalated)
            summary["recovered"] += int(result.recovered)
            if result.kill_switch is not None and result.kill_switch.triggered:
                summary["kill_switch_triggered"] += 1
        logger.info(
            "reconcile_tick_complete candidates=%s synced=%s failed=%s skipped=%s",
            summary["candidates"],
            summary["synced"],
            summary["failed"],
            summary["skipped"],
        )
        return summary

    async def resolve_conflict(self, tenant_id: str, *, actor_id: str | None = None) -> TenantChannel:
        # Operator confirms the identifier dispute is settled; the next tick re-attempts the bind.
        async with self.session_factory() as session:
            record = await _load_for_update(session, tenant_id)
            if record.sync_status == SYNC_CONFLICT:
                record.sync_status = SYNC_PENDING
                record.last_sync_error = None
                await record_event(
                    session=session,
                    tenant_id=tenant_id,
                    actor_type="operator",
                    actor_id=actor_id,
                    event_type="channel.conflict.resolved",
                    outcome="success",
                    resource_type="tenant_channel",
                    resource_id=tenant_id,
                )
            await session.commit()
        self.backoff.reset(tenant_key(tenant_id))
        return record


_reconciler: ChannelReconciler | None = None


def get_reconciler() -> ChannelReconciler:
    global _reconciler
    if _reconciler is None:
        _reconciler = ChannelReconciler()
    return _reconciler


def reset_reconciler() -> None:
    global _reconciler
    _reconciler = None


async def sync_tenant(tenant_id: str) -> SyncResult:
    # Operator-initiated reconciliation; bypasses backoff and cooldown windows.
    return await get_reconciler().sync_channel(tenant_id, force=True)


async def run_reconciliation_tick() -> dict[str, Any]:
    return await run_scheduled_task(TASK_RECONCILIATION, get_reconciler().run_tick)
