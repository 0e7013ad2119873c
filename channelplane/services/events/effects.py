from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from channelplane.core.errors import EventPayloadError
from channelplane.domain.channels import (
    BINDING_BOUND,
    BINDING_UNBOUND,
    ENFORCEMENT_DECISIONS,
    QUALITY_GREEN,
    QUALITY_RED,
    TIER_ORDER,
    ChannelSnapshot,
    normalize_quality,
)
from channelplane.domain.events import (
    FIELD_ACCOUNT_UPDATE,
    FIELD_CAPABILITY_UPDATE,
    FIELD_MESSAGES,
    FIELD_QUALITY_UPDATE,
)
from channelplane.domain.models import InboundMessage, MessageStatusUpdate, TenantChannel
from channelplane.services.events.intake import iter_changes
from channelplane.services.kill_switch import CampaignStore, apply_kill_switch, evaluate_kill_switch


logger = logging.getLogger(__name__)

_BAN_STATE_DECISIONS = {"DISABLE": "DISABLED", "SCHEDULE_FOR_DISABLE": "PENDING_DELETION"}
_REINSTATE_EVENTS = frozenset({"ACCOUNT_REINSTATED", "ACTIVE", "REINSTATE"})
_QUALITY_EVENTS = {"FLAGGED": QUALITY_RED, "UNFLAGGED": QUALITY_GREEN}
# Daily conversation limit -> messaging tier.
_CONVERSATION_TIERS = {
    50: "TIER_50",
    250: "TIER_250",
    1000: "TIER_1K",
    10000: "TIER_10K",
    100000: "TIER_100K",
}


def _parse_unix(value: Any) -> datetime | None:
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


async def _channel_for_phone(session: AsyncSession, phone_number_id: str | None) -> TenantChannel | None:
    if not phone_number_id:
        return None
    return (
        await session.execute(
            select(TenantChannel).where(
                TenantChannel.external_channel_id == phone_number_id,
                TenantChannel.binding_status == BINDING_BOUND,
            )
        )
    ).scalar_one_or_none()


async def _channel_for_account(session: AsyncSession, business_account_id: str | None) -> TenantChannel | None:
    if not business_account_id:
        return None
    return (
        await session.execute(
            select(TenantChannel)
            .where(
                TenantChannel.business_account_id == business_account_id,
                TenantChannel.binding_status != BINDING_UNBOUND,
            )
            .order_by(TenantChannel.created_at.asc())
            .limit(1)
            .with_for_update()
        )
    ).scalar_one_or_none()


async def _apply_messages(session: AsyncSession, entry_id: str | None, value: dict[str, Any]) -> str | None:
    metadata = value.get("metadata") if isinstance(value.get("metadata"), dict) else {}
    phone_number_id = metadata.get("phone_number_id")
    channel = await _channel_for_phone(session, phone_number_id)
    if channel is None:
        channel = await _channel_for_account(session, entry_id)
    tenant_id = channel.tenant_id if channel is not None else None

    for message in value.get("messages") or []:
        if not isinstance(message, dict) or not message.get("id"):
            continue
        message_id = str(message["id"])
        exists = await session.scalar(
            select(InboundMessage.id).where(InboundMessage.external_message_id == message_id)
        )
        if exists is not None:
            continue
        message_type = message.get("type")
        session.add(
            InboundMessage(
                external_message_id=message_id,
                tenant_id=tenant_id,
                external_channel_id=phone_number_id,
                from_address=message.get("from"),
                message_type=message_type,
                body_json=message.get(message_type) if isinstance(message.get(message_type), dict) else {},
                sent_at=_parse_unix(message.get("timestamp")),
            )
        )

    for status in value.get("statuses") or []:
        if not isinstance(status, dict) or not status.get("id") or not status.get("status"):
            continue
        message_id = str(status["id"])
        status_value = str(status["status"])
        exists = await session.scalar(
            select(MessageStatusUpdate.id).where(
                MessageStatusUpdate.external_message_id == message_id,
                MessageStatusUpdate.status == status_value,
            )
        )
        if exists is not None:
            continue
        errors = status.get("errors") or []
        error_code = errors[0].get("code") if errors and isinstance(errors[0], dict) else None
        session.add(
            MessageStatusUpdate(
                external_message_id=message_id,
                status=status_value,
                tenant_id=tenant_id,
                recipient=status.get("recipient_id"),
                error_code=str(error_code) if error_code is not None else None,
                occurred_at=_parse_unix(status.get("timestamp")),
            )
        )
    # Session autoflush surfaces unique violations before the job is marked complete.
    await session.flush()
    if tenant_id is None:
        logger.info("event_unrouted field=messages phone_number_id=%s", phone_number_id)
    return tenant_id


def _apply_account_update(record: TenantChannel, value: dict[str, Any]) -> None:
    event = str(value.get("event") or "").upper()
    ban_info = value.get("ban_info") if isinstance(value.get("ban_info"), dict) else {}
    ban_state = str(ban_info.get("waba_ban_state") or "").upper()
    if event in _REINSTATE_EVENTS or ban_state == "REINSTATE":
        record.account_blocked = False
        record.account_block_reason = None
        record.decision_status = None
        return
    if ban_state in _BAN_STATE_DECISIONS:
        record.account_blocked = True
        record.account_block_reason = ban_state
        record.decision_status = _BAN_STATE_DECISIONS[ban_state]
    elif event == "ACCOUNT_RESTRICTION":
        restrictions = value.get("restriction_info") or []
        first = restrictions[0] if restrictions and isinstance(restrictions[0], dict) else {}
        record.account_blocked = True
        record.account_block_reason = str(first.get("restriction_type") or event)
    elif event == "ACCOUNT_VIOLATION":
        violation = value.get("violation_info") if isinstance(value.get("violation_info"), dict) else {}
        record.account_block_reason = str(violation.get("violation_type") or event)
        record.decision_status = "UNDER_REVIEW"
    decision = value.get("decision")
    if decision:
        normalized = str(decision).upper()
        record.decision_status = normalized if normalized in ENFORCEMENT_DECISIONS else None


def _apply_capability_update(record: TenantChannel, value: dict[str, Any]) -> None:
    can_send = str(value.get("can_send_message") or "").upper()
    limit = value.get("max_daily_conversation_per_phone")
    if can_send == "BLOCKED" or limit == 0:
        record.capability_blocked = True
        record.capability_block_reason = "MESSAGING blocked"
    elif can_send in {"AVAILABLE", "LIMITED"}:
        record.capability_blocked = False
        record.capability_block_reason = None
    if isinstance(limit, int) and limit in _CONVERSATION_TIERS:
        record.messaging_tier = _CONVERSATION_TIERS[limit]


def _apply_quality_update(record: TenantChannel, value: dict[str, Any]) -> None:
    event = str(value.get("event") or "").upper()
    quality = value.get("quality_rating") or value.get("current_quality_rating") or _QUALITY_EVENTS.get(event)
    if quality:
        record.quality_rating = normalize_quality(quality)
    tier = str(value.get("current_limit") or "").upper()
    if tier in TIER_ORDER:
        record.messaging_tier = tier


_RISK_APPLIERS = {
    FIELD_ACCOUNT_UPDATE: _apply_account_update,
    FIELD_CAPABILITY_UPDATE: _apply_capability_update,
    FIELD_QUALITY_UPDATE: _apply_quality_update,
}


async def _apply_risk_update(
    session: AsyncSession,
    field: str,
    entry_id: str | None,
    value: dict[str, Any],
    *,
    now: datetime,
    campaign_store: CampaignStore | None,
) -> str | None:
    # Same before/after comparison as reconciliation, so an event can trip the kill-switch between ticks.
    record = await _channel_for_account(session, entry_id)
    if record is None:
        record = await _channel_for_phone(session, value.get("phone_number_id"))
    if record is None:
        logger.warning("event_unrouted field=%s business_account_id=%s", field, entry_id)
        return None
    before = ChannelSnapshot.from_record(record)
    _RISK_APPLIERS[field](record, value)
    record.updated_at = now
    await apply_kill_switch(
        session,
        tenant_id=record.tenant_id,
        decision=evaluate_kill_switch(before, ChannelSnapshot.from_record(record)),
        campaign_store=campaign_store,
        source="event",
    )
    return record.tenant_id


async def apply_event_effects(
    session: AsyncSession,
    payload: dict[str, Any],
    *,
    now: datetime | None = None,
    campaign_store: CampaignStore | None = None,
) -> str | None:
    """Apply every change in one delivery inside the caller's transaction.

    Returns the first tenant the delivery was routed to, if any. Nothing is
    committed here.
    """
    changes = iter_changes(payload)
    if not changes:
        raise EventPayloadError("event payload has no entry changes")
    applied_at = now or datetime.now(timezone.utc)
    tenant_id: str | None = None
    for entry_id, change in changes:
        field = change.get("field")
        value = change.get("value")
        if not isinstance(value, dict):
            raise EventPayloadError(f"change value for field={field} is not an object")
        routed: str | None = None
        if field == FIELD_MESSAGES:
            routed = await _apply_messages(session, entry_id, value)
        elif field in _RISK_APPLIERS:
            routed = await _apply_risk_update(
                session, field, entry_id, value, now=applied_at, campaign_store=campaign_store
            )
        else:
            logger.debug("event_field_ignored field=%s", field)
        tenant_id = tenant_id or routed
    return tenant_id
