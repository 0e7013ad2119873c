from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Index,
    Integer,
    LargeBinary,
    String,
    Text,
    UniqueConstraint,
    false,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


def _utc_now() -> datetime:
    # Stamp rows in Python as well so freshly inserted objects never need a refresh round-trip.
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    # SQLite drops tzinfo on read; normalize so comparisons against aware datetimes stay valid.
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


# JSONB in Postgres, plain JSON elsewhere (tests run on SQLite).
JSONType = JSON().with_variant(JSONB(), "postgresql")

_BOUND_PREDICATE = text("binding_status = 'bound'")


class Base(DeclarativeBase):
    pass


class TenantChannel(Base):
    __tablename__ = "tenant_channels"
    __table_args__ = (
        # At most one tenant may hold an external identifier while bound; tombstoned rows keep history.
        Index(
            "uq_tenant_channels_bound_external_id",
            "external_channel_id",
            unique=True,
            postgresql_where=_BOUND_PREDICATE,
            sqlite_where=_BOUND_PREDICATE,
        ),
        Index("ix_tenant_channels_sync_status_last_synced", "sync_status", "last_synced_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, unique=True, index=True)
    # Upstream business account that owns the channel; required before reconciliation can fetch.
    business_account_id: Mapped[str | None] = mapped_column(String, nullable=True)
    external_channel_id: Mapped[str | None] = mapped_column(String, nullable=True)
    binding_status: Mapped[str] = mapped_column(String, default="unassigned", server_default="unassigned")
    sync_status: Mapped[str] = mapped_column(String, default="PENDING", server_default="PENDING", index=True)
    phone_status: Mapped[str | None] = mapped_column(String, nullable=True)
    quality_rating: Mapped[str] = mapped_column(String, default="UNKNOWN", server_default="UNKNOWN")
    messaging_tier: Mapped[str | None] = mapped_column(String, nullable=True)
    verified_name: Mapped[str | None] = mapped_column(String, nullable=True)
    display_phone_number: Mapped[str | None] = mapped_column(String, nullable=True)
    capability_blocked: Mapped[bool] = mapped_column(Boolean, default=False, server_default=false())
    capability_block_reason: Mapped[str | None] = mapped_column(String, nullable=True)
    account_blocked: Mapped[bool] = mapped_column(Boolean, default=False, server_default=false())
    account_block_reason: Mapped[str | None] = mapped_column(String, nullable=True)
    # Upstream enforcement decision (DISABLED, PENDING_DELETION, UNDER_REVIEW, ...).
    decision_status: Mapped[str | None] = mapped_column(String, nullable=True)
    # Degraded send state raised by credential expiry, cleared by a successful refresh.
    send_blocked: Mapped[bool] = mapped_column(Boolean, default=False, server_default=false())
    send_blocked_reason: Mapped[str | None] = mapped_column(String, nullable=True)
    last_synced_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_sync_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    sync_failed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    sync_recovered_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    connected_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    bound_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    unbound_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utc_now, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=_utc_now, server_default=func.now(), onupdate=_utc_now
    )


class ChannelCredential(Base):
    __tablename__ = "channel_credentials"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, unique=True, index=True)
    # Opaque vault reference; the token material never lands in this table.
    secret_ref: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String, default="VALID", server_default="VALID", index=True)
    expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True, index=True)
    refresh_failure_count: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    last_refresh_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_refresh_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utc_now, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=_utc_now, server_default=func.now(), onupdate=_utc_now
    )


class VaultSecret(Base):
    __tablename__ = "vault_secrets"

    tenant_id: Mapped[str] = mapped_column(String, primary_key=True)
    nonce: Mapped[bytes] = mapped_column(LargeBinary)
    cipher_text: Mapped[bytes] = mapped_column(LargeBinary)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=_utc_now, server_default=func.now(), onupdate=_utc_now
    )


class Campaign(Base):
    __tablename__ = "campaigns"
    __table_args__ = (Index("ix_campaigns_tenant_status", "tenant_id", "status"),)

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    name: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String, default="draft", server_default="draft")
    paused_reason: Mapped[str | None] = mapped_column(String, nullable=True)
    paused_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utc_now, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=_utc_now, server_default=func.now(), onupdate=_utc_now
    )


class KillSwitchEvent(Base):
    __tablename__ = "kill_switch_events"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    reason: Mapped[str] = mapped_column(String)
    # Every firing field transition as {field, before, after}.
    transitions_json: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, default=list)
    paused_campaign_ids: Mapped[list[str]] = mapped_column(JSONType, default=list)
    paused_count: Mapped[int] = mapped_column(Integer, default=0)
    # Where the transition was observed: reconciliation or event processing.
    source: Mapped[str] = mapped_column(String, default="reconciliation")
    triggered_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utc_now, server_default=func.now())


class EventJob(Base):
    __tablename__ = "event_jobs"
    __table_args__ = (
        # Workers claim by (status, priority, enqueue time); keep that path indexed.
        Index("ix_event_jobs_claim", "status", "priority_rank", "enqueued_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    idempotency_key: Mapped[str] = mapped_column(String, index=True)
    event_type: Mapped[str] = mapped_column(String)
    priority: Mapped[str] = mapped_column(String)
    priority_rank: Mapped[int] = mapped_column(Integer)
    payload_json: Mapped[dict[str, Any]] = mapped_column(JSONType)
    signature: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, default="queued", server_default="queued")
    attempt_count: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    max_attempts: Mapped[int] = mapped_column(Integer, default=5, server_default="5")
    next_attempt_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utc_now, server_default=func.now())
    enqueued_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utc_now, server_default=func.now())
    locked_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    tenant_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    # Set when the effects were skipped because the idempotency key was already processed.
    duplicate: Mapped[bool] = mapped_column(Boolean, default=False, server_default=false())


class EventDeadLetter(Base):
    __tablename__ = "event_dead_letters"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    job_id: Mapped[str] = mapped_column(String, unique=True)
    reason: Mapped[str] = mapped_column(String)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    attempt_count: Mapped[int] = mapped_column(Integer, default=0)
    payload_json: Mapped[dict[str, Any]] = mapped_column(JSONType)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utc_now, server_default=func.now())
    replayed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    replayed_job_id: Mapped[str | None] = mapped_column(String, nullable=True)


class ProcessedEvent(Base):
    __tablename__ = "processed_events"

    idempotency_key: Mapped[str] = mapped_column(String, primary_key=True)
    job_id: Mapped[str] = mapped_column(String)
    processed_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utc_now, server_default=func.now())


class InboundMessage(Base):
    __tablename__ = "inbound_messages"

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    external_message_id: Mapped[str] = mapped_column(String, unique=True)
    tenant_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    external_channel_id: Mapped[str | None] = mapped_column(String, nullable=True)
    from_address: Mapped[str | None] = mapped_column(String, nullable=True)
    message_type: Mapped[str | None] = mapped_column(String, nullable=True)
    body_json: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    sent_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    received_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utc_now, server_default=func.now())


class MessageStatusUpdate(Base):
    __tablename__ = "message_status_updates"
    __table_args__ = (UniqueConstraint("external_message_id", "status", name="uq_message_status_updates_msg_status"),)

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    external_message_id: Mapped[str] = mapped_column(String, index=True)
    status: Mapped[str] = mapped_column(String)
    tenant_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    recipient: Mapped[str | None] = mapped_column(String, nullable=True)
    error_code: Mapped[str | None] = mapped_column(String, nullable=True)
    occurred_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    recorded_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utc_now, server_default=func.now())


class AuditEvent(Base):
    __tablename__ = "audit_events"

    # Use a monotonic numeric id for efficient pagination and ordering.
    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    occurred_at: Mapped[datetime] = mapped_column(UTCDateTime, index=True)
    # Null tenant_id marks platform-level events.
    tenant_id: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    actor_type: Mapped[str] = mapped_column(String)
    actor_id: Mapped[str | None] = mapped_column(String, nullable=True)
    event_type: Mapped[str] = mapped_column(String, index=True)
    outcome: Mapped[str] = mapped_column(String)
    resource_type: Mapped[str | None] = mapped_column(String, nullable=True)
    resource_id: Mapped[str | None] = mapped_column(String, nullable=True)
    request_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    # Keep metadata sanitized for investigation without leaking secrets.
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, default=dict)
    error_code: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utc_now, server_default=func.now())
