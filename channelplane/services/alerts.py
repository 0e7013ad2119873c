from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import hashlib
import hmac
import json
import logging
import time
from typing import Any

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from channelplane.core.config import get_settings
from channelplane.services.audit import record_event
from channelplane.services.telemetry import increment_counter, record_external_call


logger = logging.getLogger(__name__)

SEVERITY_WARNING = "warning"
SEVERITY_ERROR = "error"
SEVERITY_CRITICAL = "critical"

_LOG_LEVELS = {
    SEVERITY_WARNING: logging.WARNING,
    SEVERITY_ERROR: logging.ERROR,
    SEVERITY_CRITICAL: logging.CRITICAL,
}


@dataclass(frozen=True)
class AlertDeliveryResult:
    # Summarize webhook delivery for callers and tests; alerts are never fatal to the caller.
    sent: bool
    status_code: int | None
    message: str


def build_alert_signature(secret: str, payload: bytes) -> str:
    # Compute HMAC SHA256 signatures so the alert receiver can authenticate payloads.
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


async def _send_alert_webhook(*, alert_type: str, payload: dict[str, Any]) -> AlertDeliveryResult:
    # Push the alert to the operator webhook with a short timeout and a safe failure mode.
    settings = get_settings()
    if not settings.alert_webhook_url:
        return AlertDeliveryResult(sent=False, status_code=None, message="Alert webhook is not configured")
    body = json.dumps(payload, separators=(",", ":"), ensure_ascii=False, default=str).encode("utf-8")
    headers = {"Content-Type": "application/json", "X-Alert-Type": alert_type}
    if settings.alert_webhook_secret:
        headers["X-Alert-Signature"] = build_alert_signature(settings.alert_webhook_secret, body)
    timeout = max(1, int(settings.alert_webhook_timeout_ms)) / 1000.0
    start = time.monotonic()
    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            response = await client.post(settings.alert_webhook_url, content=body, headers=headers)
    except httpx.HTTPError as exc:
        record_external_call(integration="alerts.webhook", latency_ms=(time.monotonic() - start) * 1000.0, success=False)
        logger.warning("alert_webhook_send_failed alert_type=%s", alert_type, exc_info=exc)
        return AlertDeliveryResult(sent=False, status_code=None, message=str(exc))
    success = response.status_code < 400
    record_external_call(integration="alerts.webhook", latency_ms=(time.monotonic() - start) * 1000.0, success=success)
    if not success:
        logger.warning("alert_webhook_rejected alert_type=%s status=%s", alert_type, response.status_code)
        return AlertDeliveryResult(sent=False, status_code=response.status_code, message="Alert webhook rejected")
    return AlertDeliveryResult(sent=True, status_code=response.status_code, message="Alert delivered")


async def raise_operator_alert(
    *,
    alert_type: str,
    severity: str,
    message: str,
    tenant_id: str | None = None,
    resource_type: str | None = None,
    resource_id: str | None = None,
    metadata: dict[str, Any] | None = None,
    session: AsyncSession | None = None,
) -> AlertDeliveryResult:
    # Fan an operator alert out to logs, the audit trail, a counter and the optional webhook.
    level = _LOG_LEVELS.get(severity, logging.ERROR)
    logger.log(
        level,
        "operator_alert type=%s severity=%s tenant_id=%s resource_id=%s message=%s",
        alert_type,
        severity,
        tenant_id,
        resource_id,
        message,
    )
    increment_counter(f"alerts_{alert_type}_total")
    # Pass the caller's session when it holds an open write transaction; the row commits with it.
    await record_event(
        session=session,
        tenant_id=tenant_id,
        event_type=f"alert.{alert_type}",
        outcome=severity,
        resource_type=resource_type,
        resource_id=resource_id,
        metadata={"message": message, **(metadata or {})},
    )
    payload = {
        "type": alert_type,
        "severity": severity,
        "message": message,
        "tenant_id": tenant_id,
        "resource_type": resource_type,
        "resource_id": resource_id,
        "metadata": metadata or {},
        "raised_at": datetime.now(timezone.utc).isoformat(),
    }
    return await _send_alert_webhook(alert_type=alert_type, payload=payload)
