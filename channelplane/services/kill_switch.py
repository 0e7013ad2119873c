from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
from typing import Any, Protocol
from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from channelplane.core.errors import KillSwitchActiveError, NotFoundError
from channelplane.domain.channels import (
    CAMPAIGN_ACTIVE,
    CAMPAIGN_PAUSED,
    ENFORCEMENT_DECISIONS,
    QUALITY_RED,
    TIER_ORDER,
    ChannelSnapshot,
)
from channelplane.domain.models import Campaign, KillSwitchEvent, TenantChannel
from channelplane.services.audit import record_event
from channelplane.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

REASON_ACCOUNT_BLOCKED = "ACCOUNT_BLOCKED"
REASON_ENFORCEMENT_DETECTED = "ENFORCEMENT_DETECTED"
REASON_CAPABILITY_REVOKED = "CAPABILITY_REVOKED"
REASON_QUALITY_DEGRADED = "QUALITY_DEGRADED"
REASON_TIER_DOWNGRADED = "TIER_DOWNGRADED"

# Most severe first; the recorded reason is the first one that fired.
_REASON_PRIORITY = (
    REASON_ACCOUNT_BLOCKED,
    REASON_ENFORCEMENT_DETECTED,
    REASON_CAPABILITY_REVOKED,
    REASON_QUALITY_DEGRADED,
    REASON_TIER_DOWNGRADED,
)
KILL_SWITCH_REASONS = frozenset(_REASON_PRIORITY)


@dataclass(frozen=True)
class KillSwitchTransition:
    field: str
    before: Any
    after: Any
    reason: str

    def as_dict(self) -> dict[str, Any]:
        return {"field": self.field, "before": self.before, "after": self.after, "reason": self.reason}


@dataclass(frozen=True)
class KillSwitchDecision:
    triggered: bool
    reason: str | None = None
    transitions: tuple[KillSwitchTransition, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class KillSwitchResult:
    triggered: bool
    reason: str | None = None
    paused_count: int = 0
    event_id: str | None = None


def _tier_rank(tier: str | None) -> int | None:
    if tier is None:
        return None
    return TIER_ORDER.get(str(tier).upper())


def evaluate_kill_switch(before: ChannelSnapshot, after: ChannelSnapshot) -> KillSwitchDecision:
    """Compare two channel snapshots and decide whether campaigns must stop.

    Only transitions into a risky state fire: a tenant that is already RED,
    blocked or under enforcement does not re-trigger on every pass.
    """
    transitions: list[KillSwitchTransition] = []
    if after.account_blocked and not before.account_blocked:
        transitions.append(
            KillSwitchTransition("account_blocked", before.account_blocked, after.account_blocked, REASON_ACCOUNT_BLOCKED)
        )
    elif after.account_block_reason and not before.account_block_reason:
        transitions.append(
            KillSwitchTransition(
                "account_block_reason", before.account_block_reason, after.account_block_reason, REASON_ACCOUNT_BLOCKED
            )
        )
    if after.decision_status in ENFORCEMENT_DECISIONS and before.decision_status not in ENFORCEMENT_DECISIONS:
        transitions.append(
            KillSwitchTransition(
                "decision_status", before.decision_status, after.decision_status, REASON_ENFORCEMENT_DETECTED
            )
        )
    if after.capability_blocked and not before.capability_blocked:
        transitions.append(
            KillSwitchTransition(
                "capability_blocked", before.capability_blocked, after.capability_blocked, REASON_CAPABILITY_REVOKED
            )
        )
    if after.quality_rating == QUALITY_RED and before.quality_rating != QUALITY_RED:
        transitions.append(
            KillSwitchTransition("quality_rating", before.quality_rating, after.quality_rating, REASON_QUALITY_DEGRADED)
        )
    before_tier = _tier_rank(before.messaging_tier)
    after_tier = _tier_rank(after.messaging_tier)
    if before_tier is not None and after_tier is not None and after_tier < before_tier:
        transitions.append(
            KillSwitchTransition("messaging_tier", before.messaging_tier, after.messaging_tier, REASON_TIER_DOWNGRADED)
        )
    if not transitions:
        return KillSwitchDecision(triggered=False)
    fired = {item.reason for item in transitions}
    reason = next(candidate for candidate in _REASON_PRIORITY if candidate in fired)
    return KillSwitchDecision(triggered=True, reason=reason, transitions=tuple(transitions))


def active_trigger_conditions(snapshot: ChannelSnapshot) -> list[str]:
    # Conditions that still hold on the current state; a campaign cannot resume while any remain.
    conditions: list[str] = []
    if snapshot.account_blocked:
        conditions.append(REASON_ACCOUNT_BLOCKED)
    if snapshot.decision_status in ENFORCEMENT_DECISIONS:
        conditions.append(REASON_ENFORCEMENT_DETECTED)
    if snapshot.capability_blocked:
        conditions.append(REASON_CAPABILITY_REVOKED)
    if snapshot.quality_rating == QUALITY_RED:
        conditions.append(REASON_QUALITY_DEGRADED)
    return conditions


class CampaignStore(Protocol):
    async def pause_active_campaigns(self, session: AsyncSession, tenant_id: str, reason: str) -> list[str]: ...


class SqlCampaignStore:
    # Single conditional UPDATE so campaigns activated concurrently are either paused here or not touched.

    async def pause_active_campaigns(self, session: AsyncSession, tenant_id: str, reason: str) -> list[str]:
        now = datetime.now(timezone.utc)
        result = await session.execute(
            update(Campaign)
            .where(Campaign.tenant_id == tenant_id, Campaign.status == CAMPAIGN_ACTIVE)
            .values(status=CAMPAIGN_PAUSED, paused_reason=reason, paused_at=now, updated_at=now)
            .returning(Campaign.id)
        )
        return sorted(str(row[0]) for row in result.all())


async def apply_kill_switch(
    session: AsyncSession,
    *,
    tenant_id: str,
    decision: KillSwitchDecision,
    campaign_store: CampaignStore | None = None,
    source: str = "reconciliation",
) -> KillSwitchResult:
    # Runs inside the caller's transaction; pauses and the event row commit together or not at all.
    if not decision.triggered or decision.reason is None:
        return KillSwitchResult(triggered=False)
    store = campaign_store or SqlCampaignStore()
    paused_ids = await store.pause_active_campaigns(session, tenant_id, decision.reason)
    event = KillSwitchEvent(
        id=uuid4().hex,
        tenant_id=tenant_id,
        reason=decision.reason,
        transitions_json=[item.as_dict() for item in decision.transitions],
        paused_campaign_ids=paused_ids,
        paused_count=len(paused_ids),
        source=source,
    )
    session.add(event)
    await record_event(
        session=session,
        tenant_id=tenant_id,
        event_type="kill_switch.triggered",
        outcome="success",
        resource_type="tenant_channel",
        resource_id=tenant_id,
        metadata={
            "reason": decision.reason,
            "source": source,
            "paused_count": len(paused_ids),
            "transitions": [item.as_dict() for item in decision.transitions],
        },
    )
    increment_counter("kill_switch_triggered_total")
    logger.warning(
        "kill_switch_triggered tenant_id=%s reason=%s paused=%s source=%s",
        tenant_id,
        decision.reason,
        len(paused_ids),
        source,
    )
    return KillSwitchResult(triggered=True, reason=decision.reason, paused_count=len(paused_ids), event_id=event.id)


async def resume_campaign(
    session: AsyncSession,
    *,
    campaign_id: str,
    actor_id: str | None = None,
    request_id: str | None = None,
) -> Campaign:
    # Explicit re-check against current channel state; nothing in this module resumes on its own.
    campaign = await session.get(Campaign, campaign_id)
    if campaign is None:
        raise NotFoundError(f"campaign {campaign_id} not found")
    if campaign.status != CAMPAIGN_PAUSED:
        return campaign
    channel = (
        await session.execute(select(TenantChannel).where(TenantChannel.tenant_id == campaign.tenant_id))
    ).scalar_one_or_none()
    if channel is not None and campaign.paused_reason in KILL_SWITCH_REASONS:
        holding = active_trigger_conditions(ChannelSnapshot.from_record(channel))
        if holding:
            raise KillSwitchActiveError(f"kill-switch conditions still active: {','.join(holding)}")
    previous_reason = campaign.paused_reason
    campaign.status = CAMPAIGN_ACTIVE
    campaign.paused_reason = None
    campaign.paused_at = None
    campaign.updated_at = datetime.now(timezone.utc)
    await record_event(
        session=session,
        tenant_id=campaign.tenant_id,
        actor_type="operator",
        actor_id=actor_id,
        event_type="campaign.resumed",
        outcome="success",
        resource_type="campaign",
        resource_id=campaign.id,
        request_id=request_id,
        metadata={"previous_reason": previous_reason},
    )
    await session.commit()
    return campaign


async def list_kill_switch_events(session: AsyncSession, *, tenant_id: str, limit: int = 50) -> list[KillSwitchEvent]:
    result = await session.execute(
        select(KillSwitchEvent)
        .where(KillSwitchEvent.tenant_id == tenant_id)
        .order_by(KillSwitchEvent.triggered_at.desc())
        .limit(limit)
    )
    return list(result.scalars().all())
