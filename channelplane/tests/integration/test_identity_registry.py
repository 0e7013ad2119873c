from __future__ import annotations

import asyncio

import pytest

from channelplane.core.errors import IdentityConflictError, NotFoundError
from channelplane.persistence.db import SessionLocal
from channelplane.persistence.repos.channels import get_channel, get_channel_by_external_id
from channelplane.services.identity_registry import ALREADY_BOUND, IdentityRegistry
from channelplane.tests.utils.fakes import seed_channel


@pytest.mark.asyncio
async def test_concurrent_binds_of_one_identifier_admit_exactly_one() -> None:
    tenants = [f"tenant-{index}" for index in range(4)]
    for tenant_id in tenants:
        await seed_channel(tenant_id)
    registry = IdentityRegistry()

    results = await asyncio.gather(*(registry.bind(tenant_id, "phone-shared") for tenant_id in tenants))

    winners = [tenant_id for tenant_id, result in zip(tenants, results) if result.ok]
    losers = [result for result in results if not result.ok]
    assert len(winners) == 1
    assert all(result.error == ALREADY_BOUND for result in losers)
    assert all(result.owner_tenant_id == winners[0] for result in losers)
    assert await registry.owner_of("phone-shared") == winners[0]


@pytest.mark.asyncio
async def test_rebinding_own_identifier_is_idempotent() -> None:
    await seed_channel("tenant-a")
    registry = IdentityRegistry()
    assert (await registry.bind("tenant-a", "phone-1")).ok
    assert (await registry.bind("tenant-a", "phone-1")).ok


@pytest.mark.asyncio
async def test_unbind_tombstones_and_frees_identifier() -> None:
    await seed_channel("tenant-a")
    await seed_channel("tenant-b")
    registry = IdentityRegistry()
    await registry.bind_or_raise("tenant-a", "phone-1")
    with pytest.raises(IdentityConflictError):
        await registry.bind_or_raise("tenant-b", "phone-1")

    assert await registry.unbind("tenant-a") is True
    assert await registry.unbind("tenant-a") is False
    async with SessionLocal() as session:
        tombstone = await get_channel(session, tenant_id="tenant-a")
        assert tombstone.binding_status == "unbound"
        assert tombstone.external_channel_id == "phone-1"
        assert await get_channel_by_external_id(session, external_channel_id="phone-1") is None

    assert (await registry.bind("tenant-b", "phone-1")).ok
    assert await registry.owner_of("phone-1") == "tenant-b"


@pytest.mark.asyncio
async def test_bind_unknown_tenant_raises() -> None:
    with pytest.raises(NotFoundError):
        await IdentityRegistry().bind("tenant-missing", "phone-1")
