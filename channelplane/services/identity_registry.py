from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from channelplane.core.errors import IdentityConflictError, NotFoundError
from channelplane.domain.channels import BINDING_BOUND, BINDING_UNBOUND
from channelplane.domain.models import TenantChannel
from channelplane.persistence.db import SessionLocal
from channelplane.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

ALREADY_BOUND = "ALREADY_BOUND"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class BindResult:
    ok: bool
    error: str | None = None
    # Holder of the identifier when the bind was rejected.
    owner_tenant_id: str | None = None


class IdentityRegistry:
    # The partial unique index on bound identifiers is the arbiter; this class never reads before writing.

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        self._session_factory = session_factory or SessionLocal

    async def bind(self, tenant_id: str, external_id: str) -> BindResult:
        now = _utc_now()
        async with self._session_factory() as session:
            try:
                result = await session.execute(
                    update(TenantChannel)
                    .where(TenantChannel.tenant_id == tenant_id)
                    .values(
                        external_channel_id=external_id,
                        binding_status=BINDING_BOUND,
                        bound_at=now,
                        unbound_at=None,
                        updated_at=now,
                    )
                )
                if result.rowcount == 0:
                    await session.rollback()
                    raise NotFoundError(f"tenant channel {tenant_id} not found")
                await session.commit()
            except IntegrityError:
                await session.rollback()
                owner = await self.owner_of(external_id)
                increment_counter("identity_conflicts_total")
                logger.critical(
                    "identity_bind_conflict tenant_id=%s external_id=%s owner_tenant_id=%s",
                    tenant_id,
                    external_id,
                    owner,
                )
                return BindResult(ok=False, error=ALREADY_BOUND, owner_tenant_id=owner)
        logger.info("identity_bound tenant_id=%s external_id=%s", tenant_id, external_id)
        return BindResult(ok=True)

    async def bind_or_raise(self, tenant_id: str, external_id: str) -> None:
        result = await self.bind(tenant_id, external_id)
        if not result.ok:
            raise IdentityConflictError(external_id, result.owner_tenant_id)

    async def unbind(self, tenant_id: str) -> bool:
        # Tombstone rather than delete; the identifier stays on the row for history.
        now = _utc_now()
        async with self._session_factory() as session:
            result = await session.execute(
                update(TenantChannel)
                .where(TenantChannel.tenant_id == tenant_id, TenantChannel.binding_status == BINDING_BOUND)
                .values(binding_status=BINDING_UNBOUND, unbound_at=now, updated_at=now)
            )
            await session.commit()
        unbound = bool(result.rowcount)
        if unbound:
            logger.info("identity_unbound tenant_id=%s", tenant_id)
        return unbound

    async def owner_of(self, external_id: str) -> str | None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(TenantChannel.tenant_id).where(
                    TenantChannel.external_channel_id == external_id,
                    TenantChannel.binding_status == BINDING_BOUND,
                )
            )
            return result.scalar_one_or_none()
