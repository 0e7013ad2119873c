"""channel control plane tables

Revision ID: 0001_control_plane
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_control_plane"
down_revision = None
branch_labels = None
depends_on = None


def _ts(name: str, *, nullable: bool = True, default_now: bool = False) -> sa.Column:
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        nullable=nullable,
        server_default=sa.func.now() if default_now else None,
    )


def upgrade() -> None:
    op.create_table(
        "tenant_channels",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("business_account_id", sa.String(), nullable=True),
        sa.Column("external_channel_id", sa.String(), nullable=True),
        sa.Column("binding_status", sa.String(), server_default="unassigned", nullable=False),
        sa.Column("sync_status", sa.String(), server_default="PENDING", nullable=False),
        sa.Column("phone_status", sa.String(), nullable=True),
        sa.Column("quality_rating", sa.String(), server_default="UNKNOWN", nullable=False),
        sa.Column("messaging_tier", sa.String(), nullable=True),
        sa.Column("verified_name", sa.String(), nullable=True),
        sa.Column("display_phone_number", sa.String(), nullable=True),
        sa.Column("capability_blocked", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("capability_block_reason", sa.String(), nullable=True),
        sa.Column("account_blocked", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("account_block_reason", sa.String(), nullable=True),
        sa.Column("decision_status", sa.String(), nullable=True),
        sa.Column("send_blocked", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("send_blocked_reason", sa.String(), nullable=True),
        _ts("last_synced_at"),
        sa.Column("last_sync_error", sa.Text(), nullable=True),
        _ts("sync_failed_at"),
        _ts("sync_recovered_at"),
        _ts("connected_at"),
        _ts("bound_at"),
        _ts("unbound_at"),
        _ts("created_at", default_now=True),
        _ts("updated_at", default_now=True),
    )
    op.create_index("ix_tenant_channels_tenant_id", "tenant_channels", ["tenant_id"], unique=True)
    op.create_index(
        "ix_tenant_channels_sync_status_last_synced", "tenant_channels", ["sync_status", "last_synced_at"]
    )
    # The global uniqueness invariant for bound identifiers lives in the database, not in application reads.
    op.create_index(
        "uq_tenant_channels_bound_external_id",
        "tenant_channels",
        ["external_channel_id"],
        unique=True,
        postgresql_where=sa.text("binding_status = 'bound'"),
    )

    op.create_table(
        "channel_credentials",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("secret_ref", sa.String(), nullable=False),
        sa.Column("status", sa.String(), server_default="VALID", nullable=False),
        _ts("expires_at"),
        sa.Column("refresh_failure_count", sa.Integer(), server_default="0", nullable=False),
        _ts("last_refresh_at"),
        sa.Column("last_refresh_error", sa.Text(), nullable=True),
        _ts("created_at", default_now=True),
        _ts("updated_at", default_now=True),
    )
    op.create_index("ix_channel_credentials_tenant_id", "channel_credentials", ["tenant_id"], unique=True)
    op.create_index("ix_channel_credentials_status", "channel_credentials", ["status"])
    op.create_index("ix_channel_credentials_expires_at", "channel_credentials", ["expires_at"])

    op.create_table(
        "vault_secrets",
        sa.Column("tenant_id", sa.String(), primary_key=True),
        sa.Column("nonce", sa.LargeBinary(), nullable=False),
        sa.Column("cipher_text", sa.LargeBinary(), nullable=False),
        _ts("updated_at", default_now=True),
    )

    op.create_table(
        "campaigns",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("status", sa.String(), server_default="draft", nullable=False),
        sa.Column("paused_reason", sa.String(), nullable=True),
        _ts("paused_at"),
        _ts("created_at", default_now=True),
        _ts("updated_at", default_now=True),
    )
    op.create_index("ix_campaigns_tenant_id", "campaigns", ["tenant_id"])
    op.create_index("ix_campaigns_tenant_status", "campaigns", ["tenant_id", "status"])

    op.create_table(
        "kill_switch_events",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("reason", sa.String(), nullable=False),
        sa.Column("transitions_json", postgresql.JSONB(), nullable=False),
        sa.Column("paused_campaign_ids", postgresql.JSONB(), nullable=False),
        sa.Column("paused_count", sa.Integer(), nullable=False),
        sa.Column("source", sa.String(), nullable=False),
        _ts("triggered_at", nullable=False, default_now=True),
    )
    op.create_index("ix_kill_switch_events_tenant_id", "kill_switch_events", ["tenant_id"])

    op.create_table(
        "event_jobs",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("idempotency_key", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("priority", sa.String(), nullable=False),
        sa.Column("priority_rank", sa.Integer(), nullable=False),
        sa.Column("payload_json", postgresql.JSONB(), nullable=False),
        sa.Column("signature", sa.String(), nullable=True),
        sa.Column("status", sa.String(), server_default="queued", nullable=False),
        sa.Column("attempt_count", sa.Integer(), server_default="0", nullable=False),
        sa.Column("max_attempts", sa.Integer(), server_default="5", nullable=False),
        _ts("next_attempt_at", nullable=False, default_now=True),
        _ts("enqueued_at", nullable=False, default_now=True),
        _ts("locked_at"),
        _ts("completed_at"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("tenant_id", sa.String(), nullable=True),
        sa.Column("duplicate", sa.Boolean(), server_default=sa.false(), nullable=False),
    )
    op.create_index("ix_event_jobs_idempotency_key", "event_jobs", ["idempotency_key"])
    op.create_index("ix_event_jobs_tenant_id", "event_jobs", ["tenant_id"])
    op.create_index("ix_event_jobs_claim", "event_jobs", ["status", "priority_rank", "enqueued_at"])

    op.create_table(
        "event_dead_letters",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("reason", sa.String(), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("attempt_count", sa.Integer(), nullable=False),
        sa.Column("payload_json", postgresql.JSONB(), nullable=False),
        _ts("created_at", default_now=True),
        _ts("replayed_at"),
        sa.Column("replayed_job_id", sa.String(), nullable=True),
        sa.UniqueConstraint("job_id", name="uq_event_dead_letters_job_id"),
    )

    op.create_table(
        "processed_events",
        sa.Column("idempotency_key", sa.String(), primary_key=True),
        sa.Column("job_id", sa.String(), nullable=False),
        _ts("processed_at", nullable=False, default_now=True),
    )

    op.create_table(
        "inbound_messages",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("external_message_id", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=True),
        sa.Column("external_channel_id", sa.String(), nullable=True),
        sa.Column("from_address", sa.String(), nullable=True),
        sa.Column("message_type", sa.String(), nullable=True),
        sa.Column("body_json", postgresql.JSONB(), nullable=True),
        _ts("sent_at"),
        _ts("received_at", default_now=True),
        sa.UniqueConstraint("external_message_id", name="uq_inbound_messages_external_message_id"),
    )
    op.create_index("ix_inbound_messages_tenant_id", "inbound_messages", ["tenant_id"])

    op.create_table(
        "message_status_updates",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("external_message_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=True),
        sa.Column("recipient", sa.String(), nullable=True),
        sa.Column("error_code", sa.String(), nullable=True),
        _ts("occurred_at"),
        _ts("recorded_at", default_now=True),
        sa.UniqueConstraint("external_message_id", "status", name="uq_message_status_updates_msg_status"),
    )
    op.create_index(
        "ix_message_status_updates_external_message_id", "message_status_updates", ["external_message_id"]
    )
    op.create_index("ix_message_status_updates_tenant_id", "message_status_updates", ["tenant_id"])

    op.create_table(
        "audit_events",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        _ts("occurred_at", nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=True),
        sa.Column("actor_type", sa.String(), nullable=False),
        sa.Column("actor_id", sa.String(), nullable=True),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("outcome", sa.String(), nullable=False),
        sa.Column("resource_type", sa.String(), nullable=True),
        sa.Column("resource_id", sa.String(), nullable=True),
        sa.Column("request_id", sa.String(), nullable=True),
        sa.Column("metadata_json", postgresql.JSONB(), nullable=True),
        sa.Column("error_code", sa.String(), nullable=True),
        _ts("created_at", default_now=True),
    )
    op.create_index("ix_audit_events_occurred_at", "audit_events", ["occurred_at"])
    op.create_index("ix_audit_events_tenant_id", "audit_events", ["tenant_id"])
    op.create_index("ix_audit_events_event_type", "audit_events", ["event_type"])
    op.create_index("ix_audit_events_request_id", "audit_events", ["request_id"])


def downgrade() -> None:
    for table in (
        "audit_events",
        "message_status_updates",
        "inbound_messages",
        "processed_events",
        "event_dead_letters",
        "event_jobs",
        "kill_switch_events",
        "campaigns",
        "vault_secrets",
        "channel_credentials",
        "tenant_channels",
    ):
        op.drop_table(table)
