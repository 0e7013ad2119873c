from __future__ import annotations

from dataclasses import dataclass
from typing import Any


SYNC_PENDING = "PENDING"
SYNC_ACTIVE = "ACTIVE"
SYNC_FAILED = "FAILED"
# Identity conflict observed during reconciliation; held until an operator resolves it.
SYNC_CONFLICT = "CONFLICT"

BINDING_UNASSIGNED = "unassigned"
BINDING_BOUND = "bound"
BINDING_UNBOUND = "unbound"

PHONE_CONNECTED = "CONNECTED"
PHONE_PENDING = "PENDING"
PHONE_DISCONNECTED = "DISCONNECTED"

QUALITY_GREEN = "GREEN"
QUALITY_YELLOW = "YELLOW"
QUALITY_RED = "RED"
QUALITY_UNKNOWN = "UNKNOWN"
# Higher is healthier; RED is the worst tier and the kill-switch threshold.
QUALITY_ORDER: dict[str, int] = {QUALITY_RED: 0, QUALITY_YELLOW: 1, QUALITY_GREEN: 2}

TIER_ORDER: dict[str, int] = {
    "TIER_NOT_SET": 0,
    "TIER_50": 1,
    "TIER_250": 2,
    "TIER_1K": 3,
    "TIER_10K": 4,
    "TIER_100K": 5,
    "TIER_UNLIMITED": 6,
}

ENFORCEMENT_DECISIONS = frozenset({"DISABLED", "PENDING_DELETION", "UNDER_REVIEW"})

CAMPAIGN_ACTIVE = "active"
CAMPAIGN_PAUSED = "paused"

CREDENTIAL_VALID = "VALID"
CREDENTIAL_EXPIRING_SOON = "EXPIRING_SOON"
CREDENTIAL_REFRESHING = "REFRESHING"
CREDENTIAL_REFRESH_FAILED = "REFRESH_FAILED"

REASON_CREDENTIAL_EXPIRED = "credential expired"

_PHONE_STATUS_MAP = {
    "CONNECTED": PHONE_CONNECTED,
    "PENDING": PHONE_PENDING,
    "OFFLINE": PHONE_DISCONNECTED,
    "DELETED": PHONE_DISCONNECTED,
    "FLAGGED": "FLAGGED",
    "RATE_LIMITED": "RATE_LIMITED",
    "RESTRICTED": "RESTRICTED",
    "BANNED": "BANNED",
}


def map_phone_status(
    upstream_status: str | None,
    *,
    account_mode: str | None = None,
    code_verification_status: str | None = None,
) -> str:
    # Sandbox numbers are never live, whatever the upstream status claims.
    if account_mode == "SANDBOX":
        return PHONE_PENDING
    if code_verification_status == "VERIFIED" and account_mode == "LIVE":
        return PHONE_CONNECTED
    return _PHONE_STATUS_MAP.get(str(upstream_status or "").upper(), PHONE_PENDING)


def normalize_quality(value: str | None) -> str:
    normalized = str(value or "").upper()
    return normalized if normalized in QUALITY_ORDER else QUALITY_UNKNOWN


@dataclass(frozen=True)
class ChannelSnapshot:
    # The fixed set of risk fields the kill-switch compares; anything else is ignored.
    quality_rating: str = QUALITY_UNKNOWN
    capability_blocked: bool = False
    capability_block_reason: str | None = None
    account_blocked: bool = False
    account_block_reason: str | None = None
    messaging_tier: str | None = None
    decision_status: str | None = None

    @classmethod
    def from_record(cls, record: Any) -> "ChannelSnapshot":
        return cls(
            quality_rating=record.quality_rating or QUALITY_UNKNOWN,
            capability_blocked=bool(record.capability_blocked),
            capability_block_reason=record.capability_block_reason,
            account_blocked=bool(record.account_blocked),
            account_block_reason=record.account_block_reason,
            messaging_tier=record.messaging_tier,
            decision_status=record.decision_status,
        )


def channel_status_reason(record: Any) -> str | None:
    # Tenant-facing reason string; derived from local state only, never from upstream error bodies.
    if record.sync_status == SYNC_CONFLICT:
        return "identity conflict"
    if record.account_blocked:
        return "account blocked upstream"
    if record.send_blocked:
        return record.send_blocked_reason or REASON_CREDENTIAL_EXPIRED
    if record.capability_blocked:
        return "messaging capability blocked"
    if record.decision_status in ENFORCEMENT_DECISIONS:
        return "account under enforcement review"
    if record.sync_status == SYNC_FAILED:
        return "sync failing"
    if record.quality_rating == QUALITY_RED:
        return "quality rating low"
    return None
