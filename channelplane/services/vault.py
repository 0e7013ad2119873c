from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass
import hashlib
import hmac
import json
import os
from typing import Protocol

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from channelplane.core.config import get_settings
from channelplane.core.errors import VaultConfigError
from channelplane.domain.models import VaultSecret
from channelplane.persistence.db import SessionLocal


class CredentialVault(Protocol):
    # Scoped per-tenant secret storage; encryption at rest is the vault's concern.

    async def store(self, tenant_id: str, secret: str) -> None: ...

    async def retrieve(self, tenant_id: str) -> str | None: ...


@dataclass(frozen=True)
class ChannelSecret:
    access_token: str
    refresh_token: str | None = None

    def dumps(self) -> str:
        return json.dumps(
            {"access_token": self.access_token, "refresh_token": self.refresh_token},
            separators=(",", ":"),
            sort_keys=True,
        )

    @classmethod
    def loads(cls, raw: str | None) -> "ChannelSecret | None":
        # Older secrets were stored as a bare access token string.
        if not raw:
            return None
        try:
            payload = json.loads(raw)
        except ValueError:
            return cls(access_token=raw)
        if not isinstance(payload, dict) or not payload.get("access_token"):
            return None
        return cls(access_token=str(payload["access_token"]), refresh_token=payload.get("refresh_token"))


def secret_ref_for(tenant_id: str) -> str:
    return f"vault://channels/{tenant_id}"


def decode_key_material(value: str) -> bytes:
    """Decode base64 or hex key material into raw bytes."""
    stripped = value.strip()
    if not stripped:
        raise VaultConfigError("vault key material is empty")
    try:
        return bytes.fromhex(stripped)
    except ValueError:
        try:
            return base64.b64decode(stripped, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise VaultConfigError("vault key material must be base64 or hex") from exc


def _load_master_key() -> bytes:
    settings = get_settings()
    if settings.vault_master_key:
        raw = decode_key_material(settings.vault_master_key)
        return raw if len(raw) == 32 else hashlib.sha256(raw).digest()
    # Deterministic fallback for dev/test to avoid breaking local workflows.
    seed = f"{settings.app_name}-channel-vault".encode("utf-8")
    return hashlib.sha256(seed).digest()


def _derive_tenant_key(master_key: bytes, tenant_id: str) -> bytes:
    # Per-tenant keys keep one leaked row from decrypting any other tenant's secret.
    return hmac.new(master_key, f"channel-secret:{tenant_id}".encode("utf-8"), hashlib.sha256).digest()


class DatabaseVault:
    # AES-GCM encrypted secrets in vault_secrets, bound to the tenant id via associated data.

    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        master_key: bytes | None = None,
    ) -> None:
        self._session_factory = session_factory or SessionLocal
        self._master_key = master_key or _load_master_key()

    def _cipher(self, tenant_id: str) -> AESGCM:
        return AESGCM(_derive_tenant_key(self._master_key, tenant_id))

    async def store(self, tenant_id: str, secret: str) -> None:
        nonce = os.urandom(12)
        cipher_text = self._cipher(tenant_id).encrypt(nonce, secret.encode("utf-8"), tenant_id.encode("utf-8"))
        async with self._session_factory() as session:
            row = await session.get(VaultSecret, tenant_id)
            if row is None:
                session.add(VaultSecret(tenant_id=tenant_id, nonce=nonce, cipher_text=cipher_text))
            else:
                row.nonce = nonce
                row.cipher_text = cipher_text
            await session.commit()

    async def retrieve(self, tenant_id: str) -> str | None:
        async with self._session_factory() as session:
            row = await session.get(VaultSecret, tenant_id)
        if row is None:
            return None
        try:
            plain = self._cipher(tenant_id).decrypt(row.nonce, row.cipher_text, tenant_id.encode("utf-8"))
        except InvalidTag as exc:
            raise VaultConfigError(f"vault secret for {tenant_id} cannot be decrypted") from exc
        return plain.decode("utf-8")


class InMemoryVault:
    # Process-local vault for tests and single-process tooling.

    def __init__(self) -> None:
        self._secrets: dict[str, str] = {}

    async def store(self, tenant_id: str, secret: str) -> None:
        self._secrets[tenant_id] = secret

    async def retrieve(self, tenant_id: str) -> str | None:
        return self._secrets.get(tenant_id)


_vault: CredentialVault | None = None


def get_vault() -> CredentialVault:
    global _vault
    if _vault is None:
        _vault = DatabaseVault()
    return _vault


def set_vault(vault: CredentialVault | None) -> None:
    # Swap the process vault (tests, alternative backends).
    global _vault
    _vault = vault
