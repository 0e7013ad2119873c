from __future__ import annotations

from dataclasses import dataclass
import hashlib
import hmac
import json
import logging
from typing import Any
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from channelplane.core.config import get_settings
from channelplane.core.errors import EventPayloadError, WebhookSignatureError
from channelplane.domain.events import (
    FIELD_MESSAGES,
    JOB_QUEUED,
    PRIORITY_HIGH,
    PRIORITY_LOW,
    PRIORITY_NORMAL,
    PRIORITY_RANKS,
    RISK_FIELDS,
)
from channelplane.domain.models import EventJob
from channelplane.services.audit import record_event
from channelplane.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Hub-Signature-256"
_SIGNATURE_PREFIX = "sha256="


@dataclass(frozen=True)
class AcceptedEvent:
    job_id: str
    idempotency_key: str
    priority: str
    event_type: str


def compute_signature(secret: str, body: bytes) -> str:
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"{_SIGNATURE_PREFIX}{digest}"


def verify_signature(body: bytes, signature: str | None, *, secret: str | None = None) -> None:
    # Constant-time compare against the app secret; raises instead of returning a flag.
    settings = get_settings()
    app_secret = secret if secret is not None else settings.upstream_app_secret
    if not settings.webhook_signature_required and secret is None:
        return
    if not app_secret:
        raise WebhookSignatureError("webhook secret not configured")
    if not signature or not signature.startswith(_SIGNATURE_PREFIX):
        raise WebhookSignatureError("missing or malformed signature")
    expected = compute_signature(app_secret, body)
    if not hmac.compare_digest(expected, signature.strip()):
        raise WebhookSignatureError("signature mismatch")


def verify_subscription(mode: str | None, token: str | None, challenge: str | None) -> str:
    # Upstream subscription handshake; echo the challenge only for the configured token.
    expected = get_settings().webhook_verify_token
    if mode != "subscribe" or not expected or not token or not hmac.compare_digest(expected, token):
        raise WebhookSignatureError("subscription verification failed")
    return challenge or ""


def parse_payload(body: bytes) -> dict[str, Any]:
    try:
        payload = json.loads(body)
    except (TypeError, ValueError) as exc:
        raise EventPayloadError("event body is not valid json") from exc
    if not isinstance(payload, dict):
        raise EventPayloadError("event body must be a json object")
    return payload


def iter_changes(payload: dict[str, Any]) -> list[tuple[str | None, dict[str, Any]]]:
    # Flatten entry[].changes[] into (entry id, change) pairs.
    changes: list[tuple[str | None, dict[str, Any]]] = []
    for entry in payload.get("entry") or []:
        if not isinstance(entry, dict):
            continue
        entry_id = str(entry["id"]) if entry.get("id") is not None else None
        for change in entry.get("changes") or []:
            if isinstance(change, dict):
                changes.append((entry_id, change))
    return changes


def _first_change_value(payload: dict[str, Any]) -> tuple[str | None, dict[str, Any]]:
    changes = iter_changes(payload)
    if not changes:
        return None, {}
    _, change = changes[0]
    value = change.get("value")
    return change.get("field"), value if isinstance(value, dict) else {}


def classify_event(payload: dict[str, Any]) -> tuple[str, str]:
    """Return ``(event_type, priority)`` for a payload.

    Inbound messages and risk updates are high priority, delivery statuses
    normal, everything else low.
    """
    field, value = _first_change_value(payload)
    if field == FIELD_MESSAGES:
        if value.get("messages"):
            return "message", PRIORITY_HIGH
        if value.get("statuses"):
            return "status", PRIORITY_NORMAL
        return FIELD_MESSAGES, PRIORITY_LOW
    if field in RISK_FIELDS:
        return str(field), PRIORITY_HIGH
    return str(field or "unknown"), PRIORITY_LOW


def idempotency_key_for(payload: dict[str, Any]) -> str:
    # Message id, then status id + status, then a hash of the canonical payload.
    field, value = _first_change_value(payload)
    if field == FIELD_MESSAGES:
        messages = value.get("messages") or []
        if messages and isinstance(messages[0], dict) and messages[0].get("id"):
            return f"msg:{messages[0]['id']}"
        statuses = value.get("statuses") or []
        if statuses and isinstance(statuses[0], dict) and statuses[0].get("id"):
            return f"status:{statuses[0]['id']}:{statuses[0].get('status')}"
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return f"hash:{hashlib.sha256(canonical.encode('utf-8')).hexdigest()}"


async def accept_event(
    session: AsyncSession,
    *,
    body: bytes,
    signature: str | None,
    request_id: str | None = None,
) -> AcceptedEvent:
    """Validate and enqueue one inbound delivery without processing it.

    Signature failures are audited and re-raised. Duplicate deliveries are
    still enqueued; the worker resolves them against the processed markers.
    """
    try:
        verify_signature(body, signature)
    except WebhookSignatureError as exc:
        increment_counter("event_intake_rejected_total")
        logger.warning("event_intake_rejected reason=%s request_id=%s", exc, request_id)
        await record_event(
            tenant_id=None,
            actor_type="upstream",
            event_type="webhook.signature.rejected",
            outcome="failure",
            resource_type="event",
            request_id=request_id,
            metadata={"reason": str(exc)},
            error_code="WEBHOOK_SIGNATURE_INVALID",
        )
        raise
    payload = parse_payload(body)
    event_type, priority = classify_event(payload)
    key = idempotency_key_for(payload)
    settings = get_settings()
    job = EventJob(
        id=uuid4().hex,
        idempotency_key=key,
        event_type=event_type,
        priority=priority,
        priority_rank=PRIORITY_RANKS[priority],
        payload_json=payload,
        signature=signature,
        status=JOB_QUEUED,
        attempt_count=0,
        max_attempts=max(1, int(settings.event_max_attempts)),
    )
    session.add(job)
    await session.commit()
    increment_counter("event_intake_accepted_total")
    logger.info(
        "event_enqueued job_id=%s type=%s priority=%s key=%s",
        job.id,
        event_type,
        priority,
        key,
    )
    return AcceptedEvent(job_id=job.id, idempotency_key=key, priority=priority, event_type=event_type)
