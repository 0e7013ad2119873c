from __future__ import annotations

import base64

import pytest

from channelplane.core.errors import VaultConfigError
from channelplane.domain.models import VaultSecret
from channelplane.persistence.db import SessionLocal
from channelplane.services.vault import ChannelSecret, DatabaseVault, InMemoryVault, decode_key_material


@pytest.mark.asyncio
async def test_database_vault_roundtrip_never_stores_plaintext() -> None:
    vault = DatabaseVault(master_key=b"k" * 32)
    secret = ChannelSecret(access_token="access-1", refresh_token="refresh-1").dumps()
    await vault.store("tenant-a", secret)
    assert ChannelSecret.loads(await vault.retrieve("tenant-a")) == ChannelSecret("access-1", "refresh-1")
    async with SessionLocal() as session:
        row = await session.get(VaultSecret, "tenant-a")
    assert b"access-1" not in row.cipher_text
    assert await vault.retrieve("tenant-missing") is None


@pytest.mark.asyncio
async def test_secret_cannot_be_read_under_another_tenant() -> None:
    vault = DatabaseVault(master_key=b"k" * 32)
    await vault.store("tenant-a", "secret-a")
    async with SessionLocal() as session:
        row = await session.get(VaultSecret, "tenant-a")
        session.add(VaultSecret(tenant_id="tenant-b", nonce=row.nonce, cipher_text=row.cipher_text))
        await session.commit()
    with pytest.raises(VaultConfigError):
        await vault.retrieve("tenant-b")


@pytest.mark.asyncio
async def test_store_overwrites_previous_secret() -> None:
    vault = DatabaseVault(master_key=b"k" * 32)
    await vault.store("tenant-a", "old")
    await vault.store("tenant-a", "new")
    assert await vault.retrieve("tenant-a") == "new"


@pytest.mark.asyncio
async def test_in_memory_vault_is_scoped_by_tenant() -> None:
    vault = InMemoryVault()
    await vault.store("tenant-a", "a")
    assert await vault.retrieve("tenant-a") == "a"
    assert await vault.retrieve("tenant-b") is None


def test_key_material_accepts_hex_and_base64() -> None:
    raw = bytes(range(32))
    assert decode_key_material(raw.hex()) == raw
    assert decode_key_material(base64.b64encode(raw).decode()) == raw
    with pytest.raises(VaultConfigError):
        decode_key_material("not-a-key!")


def test_legacy_bare_token_secret() -> None:
    assert ChannelSecret.loads("bare-token") == ChannelSecret(access_token="bare-token")
    assert ChannelSecret.loads(None) is None
