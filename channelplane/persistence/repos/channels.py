from __future__ import annotations

from datetime import datetime
from uuid import uuid4

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from channelplane.domain.channels import BINDING_BOUND, BINDING_UNBOUND, SYNC_CONFLICT, SYNC_FAILED
from channelplane.domain.models import TenantChannel


async def get_channel(session: AsyncSession, *, tenant_id: str) -> TenantChannel | None:
    result = await session.execute(select(TenantChannel).where(TenantChannel.tenant_id == tenant_id))
    return result.scalar_one_or_none()


async def get_channel_by_external_id(session: AsyncSession, *, external_channel_id: str) -> TenantChannel | None:
    # Only the bound holder counts; tombstoned rows keep the identifier for history.
    result = await session.execute(
        select(TenantChannel).where(
            TenantChannel.external_channel_id == external_channel_id,
            TenantChannel.binding_status == BINDING_BOUND,
        )
    )
    return result.scalar_one_or_none()


async def create_channel(
    session: AsyncSession,
    *,
    tenant_id: str,
    business_account_id: str | None = None,
) -> TenantChannel:
    # Onboarding creates the record unbound; the identifier arrives through bind or reconciliation.
    row = TenantChannel(id=uuid4().hex, tenant_id=tenant_id, business_account_id=business_account_id)
    session.add(row)
    await session.flush()
    return row


async def list_reconcile_candidates(
    session: AsyncSession,
    *,
    failed_before: datetime,
    limit: int,
    offset: int = 0,
) -> list[TenantChannel]:
    # Least recently synced first so a bounded batch still rotates through every tenant.
    # FAILED rows that failed after failed_before are still cooling down and never take a batch slot.
    stmt = (
        select(TenantChannel)
        .where(
            TenantChannel.business_account_id.is_not(None),
            TenantChannel.binding_status != BINDING_UNBOUND,
            TenantChannel.sync_status != SYNC_CONFLICT,
            or_(
                TenantChannel.sync_status != SYNC_FAILED,
                TenantChannel.sync_failed_at.is_(None),
                TenantChannel.sync_failed_at <= failed_before,
            ),
        )
        .order_by(TenantChannel.last_synced_at.asc().nulls_first(), TenantChannel.tenant_id.asc())
        .offset(offset)
        .limit(limit)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def list_channels(
    session: AsyncSession,
    *,
    sync_status: str | None = None,
    degraded_only: bool = False,
    updated_since: datetime | None = None,
    offset: int = 0,
    limit: int = 50,
) -> list[TenantChannel]:
    stmt = select(TenantChannel)
    if sync_status:
        stmt = stmt.where(TenantChannel.sync_status == sync_status)
    if degraded_only:
        stmt = stmt.where(
            or_(
                TenantChannel.account_blocked.is_(True),
                TenantChannel.capability_blocked.is_(True),
                TenantChannel.send_blocked.is_(True),
                TenantChannel.sync_status.in_((SYNC_FAILED, SYNC_CONFLICT)),
            )
        )
    if updated_since:
        stmt = stmt.where(TenantChannel.updated_at >= updated_since)
    stmt = stmt.order_by(TenantChannel.tenant_id.asc()).offset(offset).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())
