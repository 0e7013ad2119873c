from __future__ import annotations

from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from channelplane.domain.events import JOB_QUEUED, JOB_STATUSES
from channelplane.domain.models import EventDeadLetter, EventJob


async def count_jobs_by_status(session: AsyncSession) -> dict[str, int]:
    rows = (await session.execute(select(EventJob.status, func.count()).group_by(EventJob.status))).all()
    counts = {status: 0 for status in JOB_STATUSES}
    for status, count in rows:
        counts[str(status)] = int(count)
    return counts


async def oldest_queued_at(session: AsyncSession) -> datetime | None:
    return await session.scalar(select(func.min(EventJob.enqueued_at)).where(EventJob.status == JOB_QUEUED))


async def count_pending_dead_letters(session: AsyncSession) -> int:
    count = await session.scalar(
        select(func.count()).select_from(EventDeadLetter).where(EventDeadLetter.replayed_at.is_(None))
    )
    return int(count or 0)


async def list_dead_letters(
    session: AsyncSession,
    *,
    include_replayed: bool = False,
    limit: int = 50,
) -> list[EventDeadLetter]:
    stmt = select(EventDeadLetter)
    if not include_replayed:
        stmt = stmt.where(EventDeadLetter.replayed_at.is_(None))
    stmt = stmt.order_by(EventDeadLetter.created_at.desc()).limit(limit)
    return list((await session.execute(stmt)).scalars().all())
