from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from channelplane.domain.models import AuditEvent
from channelplane.persistence.db import SessionLocal


logger = logging.getLogger(__name__)

# Credential material and webhook signatures never reach the audit table.
_SENSITIVE_FRAGMENTS = ("token", "secret", "authorization", "password", "signature", "cipher")
_REDACTED = "[REDACTED]"
# Upstream error bodies can be large; audit keeps a bounded prefix.
_MAX_STRING_LEN = 1000


def _is_sensitive(key: str) -> bool:
    lowered = key.lower()
    return any(fragment in lowered for fragment in _SENSITIVE_FRAGMENTS)


def sanitize_metadata(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            str(key): _REDACTED if _is_sensitive(str(key)) else sanitize_metadata(item)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [sanitize_metadata(item) for item in value]
    if isinstance(value, str) and len(value) > _MAX_STRING_LEN:
        return value[:_MAX_STRING_LEN] + "..."
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def _log_write_failure(exc: Exception, *, event_type: str, tenant_id: str | None, best_effort: bool) -> None:
    level = logger.warning if best_effort else logger.error
    level("audit_event_write_failed event_type=%s tenant_id=%s", event_type, tenant_id, exc_info=exc)


async def record_event(
    *,
    session: AsyncSession | None = None,
    occurred_at: datetime | None = None,
    tenant_id: str | None,
    actor_type: str = "system",
    actor_id: str | None = None,
    event_type: str,
    outcome: str,
    resource_type: str | None = None,
    resource_id: str | None = None,
    request_id: str | None = None,
    metadata: dict[str, Any] | None = None,
    error_code: str | None = None,
    commit: bool = False,
    best_effort: bool = True,
) -> None:
    """Append one audit row for a control-plane action.

    With ``session`` the row joins the caller's transaction and lands or rolls
    back with the change it describes; ``commit`` is only for callers that
    have nothing else to write. Without a session the row is written on its
    own, and a failed write is logged instead of raised.
    """
    event = AuditEvent(
        occurred_at=occurred_at or datetime.now(timezone.utc),
        tenant_id=tenant_id,
        actor_type=actor_type,
        actor_id=actor_id,
        event_type=event_type,
        outcome=outcome,
        resource_type=resource_type,
        resource_id=resource_id,
        request_id=request_id,
        metadata_json=sanitize_metadata(metadata or {}),
        error_code=error_code,
    )

    if session is None:
        async with SessionLocal() as audit_session:
            try:
                audit_session.add(event)
                await audit_session.commit()
            except SQLAlchemyError as exc:
                await audit_session.rollback()
                _log_write_failure(exc, event_type=event_type, tenant_id=tenant_id, best_effort=best_effort)
        return

    session.add(event)
    if not commit:
        return
    try:
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        _log_write_failure(exc, event_type=event_type, tenant_id=tenant_id, best_effort=best_effort)
