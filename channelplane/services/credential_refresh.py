from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
from typing import Any, Callable
from uuid import uuid4

from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from channelplane.core.config import get_settings
from channelplane.core.errors import CredentialUnavailableError, NotFoundError, UpstreamError, VaultConfigError
from channelplane.domain.channels import (
    CREDENTIAL_EXPIRING_SOON,
    CREDENTIAL_REFRESH_FAILED,
    CREDENTIAL_REFRESHING,
    CREDENTIAL_VALID,
    REASON_CREDENTIAL_EXPIRED,
)
from channelplane.domain.models import ChannelCredential, TenantChannel
from channelplane.persistence.db import SessionLocal
from channelplane.services.alerts import SEVERITY_ERROR, raise_operator_alert
from channelplane.services.audit import record_event
from channelplane.services.backoff import BackoffEngine, RetryDecision, credential_key, get_backoff_engine
from channelplane.services.scheduling import (
    TASK_CREDENTIAL_EXPIRY,
    TASK_CREDENTIAL_REFRESH,
    run_batched,
    run_scheduled_task,
)
from channelplane.services.telemetry import increment_counter
from channelplane.services.upstream import UpstreamClient, get_upstream_client
from channelplane.services.vault import ChannelSecret, CredentialVault, get_vault, secret_ref_for


logger = logging.getLogger(__name__)

_CLAIMABLE_STATUSES = (CREDENTIAL_VALID, CREDENTIAL_EXPIRING_SOON)
_EXPECTED_REFRESH_ERRORS = (UpstreamError, CredentialUnavailableError, VaultConfigError)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class RefreshResult:
    credential_id: str
    # refreshed | failed | exhausted | skipped
    outcome: str
    expires_at: datetime | None = None
    error: str | None = None
    retry: RetryDecision | None = None


class CredentialRefresher:
    """Refreshes tenant credentials ahead of expiry.

    Shares the process backoff engine with reconciliation under the
    ``credential:<id>`` namespace, so its failure budget is independent of
    the tenant's sync budget. Exhausting the budget marks the credential
    ``REFRESH_FAILED`` and alerts; the tenant keeps sending on the current
    token until it actually expires.
    """

    def __init__(
        self,
        *,
        backoff: BackoffEngine | None = None,
        upstream: UpstreamClient | None = None,
        vault: CredentialVault | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.backoff = backoff or get_backoff_engine()
        self.upstream = upstream or get_upstream_client()
        self.vault = vault or get_vault()
        self.session_factory = session_factory or SessionLocal
        self._clock = clock or _utc_now

    @property
    def max_retries(self) -> int:
        return max(1, int(get_settings().credential_refresh_max_retries))

    def _claimable(self, now: datetime):
        # Idle credentials, plus REFRESHING rows whose lease lapsed because their worker died mid-refresh.
        lease_cutoff = now - timedelta(seconds=max(1, int(get_settings().credential_refresh_lease_s)))
        return and_(
            ChannelCredential.refresh_failure_count < self.max_retries,
            or_(
                ChannelCredential.status.in_(_CLAIMABLE_STATUSES),
                and_(
                    ChannelCredential.status == CREDENTIAL_REFRESHING,
                    ChannelCredential.updated_at < lease_cutoff,
                ),
            ),
        )

    async def refresh_due(self, *, limit: int | None = None) -> list[str]:
        settings = get_settings()
        now = self._clock()
        window_end = now + timedelta(days=max(0, int(settings.credential_refresh_window_days)))
        stmt = (
            select(ChannelCredential)
            .where(
                self._claimable(now),
                or_(ChannelCredential.expires_at.is_(None), ChannelCredential.expires_at <= window_end),
            )
            .order_by(ChannelCredential.expires_at.asc().nulls_first(), ChannelCredential.id.asc())
            .limit(max(1, int(limit or settings.credential_refresh_batch_size)))
        )
        async with self.session_factory() as session:
            rows = list((await session.execute(stmt)).scalars().all())
            due = [row for row in rows if not self.backoff.is_in_backoff(credential_key(row.id))]
            marked = [row.id for row in due if row.status == CREDENTIAL_VALID]
            if marked:
                await session.execute(
                    update(ChannelCredential)
                    .where(ChannelCredential.id.in_(marked), ChannelCredential.status == CREDENTIAL_VALID)
                    .values(status=CREDENTIAL_EXPIRING_SOON, updated_at=now)
                )
                await session.commit()
        return [row.id for row in due]

    async def _claim(self, credential_id: str) -> ChannelCredential | None:
        # Compare-and-set into REFRESHING so overlapping workers never refresh the same credential twice.
        now = self._clock()
        async with self.session_factory() as session:
            result = await session.execute(
                update(ChannelCredential)
                .where(ChannelCredential.id == credential_id, self._claimable(now))
                .values(status=CREDENTIAL_REFRESHING, updated_at=now)
            )
            if result.rowcount == 0:
                await session.rollback()
                return None
            await session.commit()
            return await session.get(ChannelCredential, credential_id)

    async def refresh_credential(self, credential_id: str) -> RefreshResult:
        credential = await self._claim(credential_id)
        if credential is None:
            return RefreshResult(credential_id=credential_id, outcome="skipped")
        tenant_id = credential.tenant_id
        # Every exit from a claimed refresh moves the row out of REFRESHING.
        try:
            return await self._refresh_claimed(credential_id, tenant_id)
        except _EXPECTED_REFRESH_ERRORS as exc:
            return await self._record_failure(credential_id, tenant_id, exc)
        except Exception as exc:  # noqa: BLE001 - counted against the retry budget like any other failure
            logger.exception("credential_refresh_unexpected_error credential_id=%s tenant_id=%s", credential_id, tenant_id)
            return await self._record_failure(credential_id, tenant_id, exc)

    async def _refresh_claimed(self, credential_id: str, tenant_id: str) -> RefreshResult:
        secret = ChannelSecret.loads(await self.vault.retrieve(tenant_id))
        if secret is None or not secret.refresh_token:
            raise CredentialUnavailableError(f"no refresh token stored for tenant {tenant_id}")
        refreshed = await self.upstream.refresh_credential(secret.refresh_token)
        await self.vault.store(
            tenant_id,
            ChannelSecret(access_token=refreshed.access_token, refresh_token=refreshed.refresh_token).dumps(),
        )

        ttl_s = refreshed.expires_in or int(get_settings().credential_default_ttl_s)
        now = self._clock()
        expires_at = now + timedelta(seconds=ttl_s)
        async with self.session_factory() as session:
            await session.execute(
                update(ChannelCredential)
                .where(ChannelCredential.id == credential_id)
                .values(
                    status=CREDENTIAL_VALID,
                    expires_at=expires_at,
                    refresh_failure_count=0,
                    last_refresh_at=now,
                    last_refresh_error=None,
                    updated_at=now,
                )
            )
            # A fresh token lifts a block that expiry put in place, and nothing else.
            await session.execute(
                update(TenantChannel)
                .where(
                    TenantChannel.tenant_id == tenant_id,
                    TenantChannel.send_blocked.is_(True),
                    TenantChannel.send_blocked_reason == REASON_CREDENTIAL_EXPIRED,
                )
                .values(send_blocked=False, send_blocked_reason=None, updated_at=now)
            )
            await record_event(
                session=session,
                tenant_id=tenant_id,
                event_type="credential.refresh.succeeded",
                outcome="success",
                resource_type="channel_credential",
                resource_id=credential_id,
                metadata={"expires_at": expires_at.isoformat()},
            )
            await session.commit()
        self.backoff.reset(credential_key(credential_id))
        increment_counter("credential_refresh_success_total")
        logger.info("credential_refreshed credential_id=%s tenant_id=%s", credential_id, tenant_id)
        return RefreshResult(credential_id=credential_id, outcome="refreshed", expires_at=expires_at)

    async def _record_failure(self, credential_id: str, tenant_id: str, exc: Exception) -> RefreshResult:
        decision = self.backoff.record_failure(credential_key(credential_id), max_retries=self.max_retries)
        message = f"{type(exc).__name__}: {exc}"[:500]
        now = self._clock()
        async with self.session_factory() as session:
            credential = await session.get(ChannelCredential, credential_id)
            if credential is None:
                raise NotFoundError(f"credential {credential_id} not found")
            credential.refresh_failure_count = int(credential.refresh_failure_count or 0) + 1
            credential.last_refresh_error = message
            credential.updated_at = now
            # The persisted count is the ceiling; in-memory backoff only spaces the attempts.
            exhausted = credential.refresh_failure_count >= self.max_retries
            credential.status = CREDENTIAL_REFRESH_FAILED if exhausted else CREDENTIAL_EXPIRING_SOON
            failure_count = credential.refresh_failure_count
            expires_at = credential.expires_at
            await record_event(
                session=session,
                tenant_id=tenant_id,
                event_type="credential.refresh.failed",
                outcome="failure",
                resource_type="channel_credential",
                resource_id=credential_id,
                metadata={"failure_count": failure_count, "exhausted": exhausted},
                error_code=type(exc).__name__,
            )
            await session.commit()
        increment_counter("credential_refresh_failure_total")
        logger.warning(
            "credential_refresh_failed credential_id=%s tenant_id=%s failures=%s exhausted=%s error=%s",
            credential_id,
            tenant_id,
            failure_count,
            exhausted,
            message,
        )
        if exhausted:
            await raise_operator_alert(
                alert_type="credential_refresh_failed",
                severity=SEVERITY_ERROR,
                message=f"credential refresh failed {failure_count} times; manual re-authorization required",
                tenant_id=tenant_id,
                resource_type="channel_credential",
                resource_id=credential_id,
                metadata={"expires_at": expires_at.isoformat() if expires_at else None},
            )
        return RefreshResult(
            credential_id=credential_id,
            outcome="exhausted" if exhausted else "failed",
            expires_at=expires_at,
            error=message,
            retry=decision,
        )

    async def enforce_expiry(self) -> dict[str, Any]:
        # Past expiry the tenant cannot send anyway; surface it as a blocked-send state with a clear reason.
        now = self._clock()
        async with self.session_factory() as session:
            expired_tenants = list(
                (
                    await session.execute(
                        select(ChannelCredential.tenant_id).where(
                            ChannelCredential.expires_at.is_not(None),
                            ChannelCredential.expires_at <= now,
                        )
                    )
                ).scalars().all()
            )
            if not expired_tenants:
                return {"status": "ok", "expired": 0, "blocked": 0}
            result = await session.execute(
                update(TenantChannel)
                .where(TenantChannel.tenant_id.in_(expired_tenants), TenantChannel.send_blocked.is_(False))
                .values(send_blocked=True, send_blocked_reason=REASON_CREDENTIAL_EXPIRED, updated_at=now)
                .returning(TenantChannel.tenant_id)
            )
            blocked = [str(row[0]) for row in result.all()]
            for tenant_id in blocked:
                await record_event(
                    session=session,
                    tenant_id=tenant_id,
                    event_type="channel.send_blocked",
                    outcome="degraded",
                    resource_type="tenant_channel",
                    resource_id=tenant_id,
                    metadata={"reason": REASON_CREDENTIAL_EXPIRED},
                )
            await session.commit()
        for tenant_id in blocked:
            logger.warning("channel_send_blocked tenant_id=%s reason=%s", tenant_id, REASON_CREDENTIAL_EXPIRED)
        increment_counter("credential_expired_blocks_total", len(blocked))
        return {"status": "ok", "expired": len(expired_tenants), "blocked": len(blocked)}

    async def clear_refresh_failure(self, credential_id: str, *, actor_id: str | None = None) -> ChannelCredential:
        # Manual operator reset after re-authorization; re-enters the refresh rotation.
        now = self._clock()
        async with self.session_factory() as session:
            credential = await session.get(ChannelCredential, credential_id)
            if credential is None:
                raise NotFoundError(f"credential {credential_id} not found")
            credential.refresh_failure_count = 0
            credential.last_refresh_error = None
            window = timedelta(days=int(get_settings().credential_refresh_window_days))
            if credential.expires_at is not None and credential.expires_at - now > window:
                credential.status = CREDENTIAL_VALID
            else:
                credential.status = CREDENTIAL_EXPIRING_SOON
            credential.updated_at = now
            await record_event(
                session=session,
                tenant_id=credential.tenant_id,
                actor_type="operator",
                actor_id=actor_id,
                event_type="credential.refresh_failure.cleared",
                outcome="success",
                resource_type="channel_credential",
                resource_id=credential_id,
            )
            await session.commit()
        self.backoff.reset(credential_key(credential_id))
        return credential

    async def store_tenant_credential(
        self,
        tenant_id: str,
        *,
        access_token: str,
        refresh_token: str | None,
        expires_at: datetime | None,
    ) -> ChannelCredential:
        # Onboarding/re-authorization path: secret to the vault first, then the reference row.
        await self.vault.store(tenant_id, ChannelSecret(access_token=access_token, refresh_token=refresh_token).dumps())
        now = self._clock()
        async with self.session_factory() as session:
            credential = (
                await session.execute(select(ChannelCredential).where(ChannelCredential.tenant_id == tenant_id))
            ).scalar_one_or_none()
            if credential is None:
                credential = ChannelCredential(id=uuid4().hex, tenant_id=tenant_id, secret_ref=secret_ref_for(tenant_id))
                session.add(credential)
            credential.status = CREDENTIAL_VALID
            credential.expires_at = expires_at
            credential.refresh_failure_count = 0
            credential.last_refresh_error = None
            credential.last_refresh_at = now
            credential.updated_at = now
            await session.execute(
                update(TenantChannel)
                .where(
                    TenantChannel.tenant_id == tenant_id,
                    TenantChannel.send_blocked_reason == REASON_CREDENTIAL_EXPIRED,
                )
                .values(send_blocked=False, send_blocked_reason=None, updated_at=now)
            )
            await session.commit()
        self.backoff.reset(credential_key(credential.id))
        return credential

    async def run_tick(self) -> dict[str, Any]:
        settings = get_settings()
        due = await self.refresh_due()
        results = await run_batched(
            due,
            self.refresh_credential,
            max_concurrency=settings.credential_refresh_max_concurrency,
            inter_item_delay_s=max(0, int(settings.reconcile_inter_item_delay_ms)) / 1000.0,
        )
        summary: dict[str, Any] = {"status": "ok", "due": len(due), "refreshed": 0, "failed": 0, "exhausted": 0, "skipped": 0}
        for credential_id, result in zip(due, results):
            if isinstance(result, BaseException):
                summary["failed"] += 1
                logger.error("credential_refresh_unexpected_error credential_id=%s", credential_id, exc_info=result)
                continue
            if result.outcome == "refreshed":
                summary["refreshed"] += 1
            elif result.outcome == "skipped":
                summary["skipped"] += 1
            else:
                summary["failed"] += 1
                summary["exhausted"] += int(result.outcome == "exhausted")
        logger.info(
            "credential_refresh_tick_complete due=%s refreshed=%s failed=%s",
            summary["due"],
            summary["refreshed"],
            summary["failed"],
        )
        return summary


_refresher: CredentialRefresher | None = None


def get_credential_refresher() -> CredentialRefresher:
    global _refresher
    if _refresher is None:
        _refresher = CredentialRefresher()
    return _refresher


def reset_credential_refresher() -> None:
    global _refresher
    _refresher = None


async def run_credential_refresh_tick() -> dict[str, Any]:
    return await run_scheduled_task(TASK_CREDENTIAL_REFRESH, get_credential_refresher().run_tick)


async def run_credential_expiry_tick() -> dict[str, Any]:
    return await run_scheduled_task(TASK_CREDENTIAL_EXPIRY, get_credential_refresher().enforce_expiry)
