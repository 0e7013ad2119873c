from __future__ import annotations

import json

import httpx
import pytest
from sqlalchemy import select

from channelplane.apps.api.main import create_app
from channelplane.domain.models import Campaign, EventJob
from channelplane.persistence.db import SessionLocal
from channelplane.services.events import EventProcessor
from channelplane.services.events.intake import compute_signature
from channelplane.services.kill_switch import REASON_QUALITY_DEGRADED
from channelplane.tests.utils.fakes import seed_campaigns, seed_channel


OPS_HEADERS = {"Authorization": "Bearer ops-test-token"}


def _client() -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=create_app()), base_url="http://test")


def _message_body(message_id: str = "wamid.api") -> bytes:
    payload = {
        "entry": [
            {
                "id": "waba-1",
                "changes": [{"field": "messages", "value": {"messages": [{"id": message_id, "type": "text"}]}}],
            }
        ]
    }
    return json.dumps(payload).encode("utf-8")


@pytest.mark.asyncio
async def test_health_reports_database() -> None:
    async with _client() as client:
        response = await client.get("/v1/health")
    assert response.status_code == 200
    body = response.json()
    assert body["data"] == {"status": "ok", "database": "ok"}
    assert body["meta"]["request_id"]
    assert response.headers["X-Request-Id"] == body["meta"]["request_id"]


@pytest.mark.asyncio
async def test_webhook_rejects_bad_signature() -> None:
    async with _client() as client:
        response = await client.post(
            "/v1/webhooks/upstream",
            content=_message_body(),
            headers={"X-Hub-Signature-256": "sha256=deadbeef"},
        )
    assert response.status_code == 403
    assert response.json()["error"]["code"] == "WEBHOOK_SIGNATURE_INVALID"
    async with SessionLocal() as session:
        assert (await session.execute(select(EventJob))).first() is None


@pytest.mark.asyncio
async def test_webhook_enqueues_signed_delivery() -> None:
    body = _message_body()
    async with _client() as client:
        response = await client.post(
            "/v1/webhooks/upstream",
            content=body,
            headers={"X-Hub-Signature-256": compute_signature("app-test-secret", body)},
        )
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["accepted"] is True
    assert data["priority"] == "high"
    async with SessionLocal() as session:
        job = await session.get(EventJob, data["job_id"])
    assert job.status == "queued"


@pytest.mark.asyncio
async def test_webhook_subscription_challenge() -> None:
    async with _client() as client:
        ok = await client.get(
            "/v1/webhooks/upstream",
            params={"hub.mode": "subscribe", "hub.verify_token": "verify-test-token", "hub.challenge": "1234"},
        )
        bad = await client.get(
            "/v1/webhooks/upstream",
            params={"hub.mode": "subscribe", "hub.verify_token": "wrong", "hub.challenge": "1234"},
        )
    assert ok.status_code == 200
    assert ok.text == "1234"
    assert bad.status_code == 403


@pytest.mark.asyncio
async def test_ops_routes_require_token() -> None:
    async with _client() as client:
        missing = await client.get("/v1/ops/tasks")
        wrong = await client.get("/v1/ops/tasks", headers={"Authorization": "Bearer nope"})
    assert missing.status_code == 401
    assert missing.json()["error"]["code"] == "AUTH_UNAUTHORIZED"
    assert wrong.status_code == 401


@pytest.mark.asyncio
async def test_create_bind_and_read_channel() -> None:
    async with _client() as client:
        created = await client.post(
            "/v1/ops/channels",
            json={"tenant_id": "tenant-a", "business_account_id": "waba-1"},
            headers=OPS_HEADERS,
        )
        duplicate = await client.post("/v1/ops/channels", json={"tenant_id": "tenant-a"}, headers=OPS_HEADERS)
        bound = await client.post(
            "/v1/ops/channels/tenant-a/bind",
            json={"external_channel_id": "phone-1"},
            headers=OPS_HEADERS,
        )
        fetched = await client.get("/v1/ops/channels/tenant-a", headers=OPS_HEADERS)
        missing = await client.get("/v1/ops/channels/tenant-x", headers=OPS_HEADERS)

    assert created.status_code == 201
    assert created.json()["data"]["sync_status"] == "PENDING"
    assert duplicate.status_code == 409
    assert bound.status_code == 200
    data = fetched.json()["data"]
    assert data["binding_status"] == "bound"
    assert data["external_channel_id"] == "phone-1"
    assert data["status_reason"] is None
    assert missing.status_code == 404
    assert missing.json()["error"]["code"] == "NOT_FOUND"


@pytest.mark.asyncio
async def test_bind_conflict_maps_to_409() -> None:
    await seed_channel("tenant-a", binding_status="bound", external_channel_id="phone-1")
    await seed_channel("tenant-b", business_account_id="waba-2")
    async with _client() as client:
        response = await client.post(
            "/v1/ops/channels/tenant-b/bind",
            json={"external_channel_id": "phone-1"},
            headers=OPS_HEADERS,
        )
    assert response.status_code == 409
    assert response.json()["error"]["code"] == "IDENTITY_CONFLICT"


@pytest.mark.asyncio
async def test_resume_refused_while_quality_is_red() -> None:
    await seed_channel("tenant-a", quality_rating="RED", sync_status="ACTIVE")
    [campaign_id] = await seed_campaigns("tenant-a", 1, status="paused")
    async with SessionLocal() as session:
        campaign = await session.get(Campaign, campaign_id)
        campaign.paused_reason = REASON_QUALITY_DEGRADED
        await session.commit()

    async with _client() as client:
        response = await client.post(f"/v1/ops/campaigns/{campaign_id}/resume", headers=OPS_HEADERS)
        channel = await client.get("/v1/ops/channels/tenant-a", headers=OPS_HEADERS)
    assert response.status_code == 409
    assert response.json()["error"]["code"] == "KILL_SWITCH_ACTIVE"
    assert channel.json()["data"]["status_reason"] == "quality rating low"


@pytest.mark.asyncio
async def test_task_status_lists_every_scheduled_task() -> None:
    async with _client() as client:
        response = await client.get("/v1/ops/tasks", headers=OPS_HEADERS)
        single = await client.get("/v1/ops/tasks/reconciliation", headers=OPS_HEADERS)
        unknown = await client.get("/v1/ops/tasks/nope", headers=OPS_HEADERS)
    assert response.status_code == 200
    names = [item["name"] for item in response.json()["data"]]
    assert names == ["reconciliation", "credential_refresh", "credential_expiry", "event_reaper"]
    assert single.json()["data"]["is_running"] is False
    assert single.json()["data"]["failure_count"] == 0
    assert unknown.status_code == 404


@pytest.mark.asyncio
async def test_dead_letter_listing_and_replay() -> None:
    body = b'{"object": "whatsapp_business_account"}'
    async with _client() as client:
        accepted = await client.post(
            "/v1/webhooks/upstream",
            content=body,
            headers={"X-Hub-Signature-256": compute_signature("app-test-secret", body)},
        )
        assert accepted.status_code == 200
        outcome = await EventProcessor().process_next()
        assert outcome.status == "dead_letter"

        listing = await client.get("/v1/ops/events/dead-letters", headers=OPS_HEADERS)
        [letter] = listing.json()["data"]["items"]
        first = await client.post(f"/v1/ops/events/dead-letters/{letter['id']}/replay", headers=OPS_HEADERS)
        second = await client.post(f"/v1/ops/events/dead-letters/{letter['id']}/replay", headers=OPS_HEADERS)
        stats = await client.get("/v1/ops/events/stats", headers=OPS_HEADERS)

    assert letter["reason"] == "non_retryable"
    assert first.status_code == 200
    assert first.json()["data"]["job_id"] == second.json()["data"]["job_id"]
    assert stats.json()["data"]["counts"]["queued"] == 1
