from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from channelplane.apps.api.deps import get_db, require_ops_token
from channelplane.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from channelplane.apps.api.response import SuccessEnvelope, get_request_id, success_response
from channelplane.core.errors import NotFoundError
from channelplane.domain.channels import channel_status_reason
from channelplane.domain.models import TenantChannel
from channelplane.persistence.repos import channels as channels_repo
from channelplane.services.audit import record_event
from channelplane.services.backoff import get_backoff_engine, tenant_key
from channelplane.services.credential_refresh import get_credential_refresher
from channelplane.services.identity_registry import IdentityRegistry
from channelplane.services.kill_switch import list_kill_switch_events, resume_campaign
from channelplane.services.reconciliation import get_reconciler, sync_tenant


router = APIRouter(prefix="/ops", tags=["channels"], responses=DEFAULT_ERROR_RESPONSES)


class ChannelCreateRequest(BaseModel):
    tenant_id: str = Field(min_length=1)
    business_account_id: str | None = None


class BindRequest(BaseModel):
    external_channel_id: str = Field(min_length=1)


class CredentialRequest(BaseModel):
    access_token: str = Field(min_length=1)
    refresh_token: str | None = None
    expires_at: datetime | None = None


class ChannelResponse(BaseModel):
    tenant_id: str
    business_account_id: str | None
    external_channel_id: str | None
    binding_status: str
    sync_status: str
    phone_status: str | None
    quality_rating: str
    messaging_tier: str | None
    account_blocked: bool
    capability_blocked: bool
    send_blocked: bool
    decision_status: str | None
    # Tenant-facing reason; None when healthy.
    status_reason: str | None
    failure_count: int
    last_synced_at: datetime | None
    sync_failed_at: datetime | None


class ChannelListResponse(BaseModel):
    items: list[ChannelResponse]


class KillSwitchEventResponse(BaseModel):
    id: str
    reason: str
    source: str
    paused_count: int
    paused_campaign_ids: list[str]
    transitions: list[dict[str, Any]]
    triggered_at: datetime


class CampaignResponse(BaseModel):
    id: str
    tenant_id: str
    status: str
    paused_reason: str | None


class CredentialResponse(BaseModel):
    id: str
    tenant_id: str
    status: str
    expires_at: datetime | None
    refresh_failure_count: int


def _channel_payload(record: TenantChannel) -> ChannelResponse:
    return ChannelResponse(
        tenant_id=record.tenant_id,
        business_account_id=record.business_account_id,
        external_channel_id=record.external_channel_id,
        binding_status=record.binding_status,
        sync_status=record.sync_status,
        phone_status=record.phone_status,
        quality_rating=record.quality_rating,
        messaging_tier=record.messaging_tier,
        account_blocked=bool(record.account_blocked),
        capability_blocked=bool(record.capability_blocked),
        send_blocked=bool(record.send_blocked),
        decision_status=record.decision_status,
        status_reason=channel_status_reason(record),
        failure_count=get_backoff_engine().failure_count(tenant_key(record.tenant_id)),
        last_synced_at=record.last_synced_at,
        sync_failed_at=record.sync_failed_at,
    )


async def _require_channel(db: AsyncSession, tenant_id: str) -> TenantChannel:
    record = await channels_repo.get_channel(db, tenant_id=tenant_id)
    if record is None:
        raise NotFoundError(f"tenant channel {tenant_id} not found")
    return record


@router.post("/channels", status_code=201, response_model=SuccessEnvelope[ChannelResponse])
async def create_channel(
    request: Request,
    body: ChannelCreateRequest,
    db: AsyncSession = Depends(get_db),
    actor_id: str = Depends(require_ops_token),
) -> dict:
    try:
        record = await channels_repo.create_channel(
            db, tenant_id=body.tenant_id, business_account_id=body.business_account_id
        )
        await record_event(
            session=db,
            tenant_id=body.tenant_id,
            actor_type="operator",
            actor_id=actor_id,
            event_type="channel.onboarded",
            outcome="success",
            resource_type="tenant_channel",
            resource_id=body.tenant_id,
            request_id=get_request_id(request),
        )
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        raise HTTPException(
            status_code=409,
            detail={"code": "CHANNEL_EXISTS", "message": f"tenant {body.tenant_id} already onboarded"},
        ) from exc
    return success_response(request=request, data=_channel_payload(record))


@router.get("/channels", response_model=SuccessEnvelope[ChannelListResponse])
async def list_channels(
    request: Request,
    sync_status: str | None = Query(default=None),
    degraded_only: bool = Query(default=False),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
    actor_id: str = Depends(require_ops_token),
) -> dict:
    records = await channels_repo.list_channels(
        db, sync_status=sync_status, degraded_only=degraded_only, offset=offset, limit=limit
    )
    return success_response(request=request, data=ChannelListResponse(items=[_channel_payload(r) for r in records]))


@router.get("/channels/{tenant_id}", response_model=SuccessEnvelope[ChannelResponse])
async def get_channel(
    request: Request,
    tenant_id: str,
    db: AsyncSession = Depends(get_db),
    actor_id: str = Depends(require_ops_token),
) -> dict:
    record = await _require_channel(db, tenant_id)
    return success_response(request=request, data=_channel_payload(record))


@router.post("/channels/{tenant_id}/bind", response_model=SuccessEnvelope[ChannelResponse])
async def bind_channel(
    request: Request,
    tenant_id: str,
    body: BindRequest,
    db: AsyncSession = Depends(get_db),
    actor_id: str = Depends(require_ops_token),
) -> dict:
    # IdentityConflictError surfaces as 409 IDENTITY_CONFLICT.
    await IdentityRegistry().bind_or_raise(tenant_id, body.external_channel_id)
    record = await _require_channel(db, tenant_id)
    return success_response(request=request, data=_channel_payload(record))


@router.post("/channels/{tenant_id}/unbind", response_model=SuccessEnvelope[dict[str, Any]])
async def unbind_channel(
    request: Request,
    tenant_id: str,
    actor_id: str = Depends(require_ops_token),
) -> dict:
    unbound = await IdentityRegistry().unbind(tenant_id)
    if unbound:
        await record_event(
            tenant_id=tenant_id,
            actor_type="operator",
            actor_id=actor_id,
            event_type="channel.unbound",
            outcome="success",
            resource_type="tenant_channel",
            resource_id=tenant_id,
            request_id=get_request_id(request),
        )
    return success_response(request=request, data={"tenant_id": tenant_id, "unbound": unbound})


@router.post("/channels/{tenant_id}/sync", response_model=SuccessEnvelope[dict[str, Any]])
async def sync_channel(
    request: Request,
    tenant_id: str,
    actor_id: str = Depends(require_ops_token),
) -> dict:
    result = await sync_tenant(tenant_id)
    if result.outcome == "not_found":
        raise NotFoundError(f"tenant channel {tenant_id} not found")
    return success_response(request=request, data=result.as_dict())


@router.post("/channels/{tenant_id}/resolve-conflict", response_model=SuccessEnvelope[ChannelResponse])
async def resolve_conflict(
    request: Request,
    tenant_id: str,
    actor_id: str = Depends(require_ops_token),
) -> dict:
    record = await get_reconciler().resolve_conflict(tenant_id, actor_id=actor_id)
    return success_response(request=request, data=_channel_payload(record))


@router.put("/channels/{tenant_id}/credential", response_model=SuccessEnvelope[CredentialResponse])
async def store_credential(
    request: Request,
    tenant_id: str,
    body: CredentialRequest,
    db: AsyncSession = Depends(get_db),
    actor_id: str = Depends(require_ops_token),
) -> dict:
    await _require_channel(db, tenant_id)
    credential = await get_credential_refresher().store_tenant_credential(
        tenant_id,
        access_token=body.access_token,
        refresh_token=body.refresh_token,
        expires_at=body.expires_at,
    )
    return success_response(
        request=request,
        data=CredentialResponse(
            id=credential.id,
            tenant_id=credential.tenant_id,
            status=credential.status,
            expires_at=credential.expires_at,
            refresh_failure_count=credential.refresh_failure_count,
        ),
    )


@router.get("/channels/{tenant_id}/kill-switch-events", response_model=SuccessEnvelope[list[KillSwitchEventResponse]])
async def kill_switch_events(
    request: Request,
    tenant_id: str,
    limit: int = Query(default=50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
    actor_id: str = Depends(require_ops_token),
) -> dict:
    events = await list_kill_switch_events(db, tenant_id=tenant_id, limit=limit)
    items = [
        KillSwitchEventResponse(
            id=event.id,
            reason=event.reason,
            source=event.source,
            paused_count=event.paused_count,
            paused_campaign_ids=list(event.paused_campaign_ids or []),
            transitions=list(event.transitions_json or []),
            triggered_at=event.triggered_at,
        )
        for event in events
    ]
    return success_response(request=request, data=[item.model_dump(mode="json") for item in items])


@router.post("/campaigns/{campaign_id}/resume", response_model=SuccessEnvelope[CampaignResponse])
async def resume_paused_campaign(
    request: Request,
    campaign_id: str,
    db: AsyncSession = Depends(get_db),
    actor_id: str = Depends(require_ops_token),
) -> dict:
    # KillSwitchActiveError surfaces as 409 while the trigger condition still holds.
    campaign = await resume_campaign(db, campaign_id=campaign_id, actor_id=actor_id, request_id=get_request_id(request))
    return success_response(
        request=request,
        data=CampaignResponse(
            id=campaign.id,
            tenant_id=campaign.tenant_id,
            status=campaign.status,
            paused_reason=campaign.paused_reason,
        ),
    )


@router.post("/credentials/{credential_id}/clear-failure", response_model=SuccessEnvelope[CredentialResponse])
async def clear_credential_failure(
    request: Request,
    credential_id: str,
    actor_id: str = Depends(require_ops_token),
) -> dict:
    credential = await get_credential_refresher().clear_refresh_failure(credential_id, actor_id=actor_id)
    return success_response(
        request=request,
        data=CredentialResponse(
            id=credential.id,
            tenant_id=credential.tenant_id,
            status=credential.status,
            expires_at=credential.expires_at,
            refresh_failure_count=credential.refresh_failure_count,
        ),
    )
