"""Sync engine schema: mailboxes, requests, jobs, checkpoints, breaker/limiter state, dead letters, emails.

Revision ID: 001_sync_engine
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "001_sync_engine"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    conn = op.get_bind()
    inspector = sa.inspect(conn)
    tables = set(inspector.get_table_names())

    if "mailboxes" not in tables:
        op.create_table(
            "mailboxes",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("tenant_id", sa.String(64), nullable=False),
            sa.Column("provider", sa.String(32), nullable=False),
            sa.Column("email_address", sa.String(), nullable=False),
            sa.Column("connection_status", sa.String(32), nullable=False),
            sa.Column("access_token", sa.Text(), nullable=True),
            sa.Column("refresh_token", sa.Text(), nullable=True),
            sa.Column("token_expires_at", sa.DateTime(), nullable=True),
            sa.Column("last_synced_at", sa.DateTime(), nullable=True),
            sa.Column("last_error", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=True),
            sa.Column("updated_at", sa.DateTime(), nullable=True),
        )
        op.create_index(op.f("ix_mailboxes_id"), "mailboxes", ["id"])
        op.create_index(op.f("ix_mailboxes_tenant_id"), "mailboxes", ["tenant_id"])

    if "sync_requests" not in tables:
        op.create_table(
            "sync_requests",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("mailbox_id", sa.Integer(), sa.ForeignKey("mailboxes.id", ondelete="CASCADE"), nullable=False),
            sa.Column("tenant_id", sa.String(64), nullable=False),
            sa.Column("sync_type", sa.String(32), nullable=False),
            sa.Column("source", sa.String(32), nullable=False),
            sa.Column("date_from", sa.DateTime(), nullable=True),
            sa.Column("date_to", sa.DateTime(), nullable=True),
            sa.Column("estimated_count", sa.Integer(), nullable=True),
            sa.Column("status", sa.String(32), nullable=False),
            sa.Column("total_chunks", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("chunks_completed", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("progress", sa.Float(), nullable=False, server_default="0"),
            sa.Column("error", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=True),
            sa.Column("completed_at", sa.DateTime(), nullable=True),
            sa.Column("updated_at", sa.DateTime(), nullable=True),
        )
        op.create_index(op.f("ix_sync_requests_id"), "sync_requests", ["id"])
        op.create_index(op.f("ix_sync_requests_mailbox_id"), "sync_requests", ["mailbox_id"])
        op.create_index(op.f("ix_sync_requests_tenant_id"), "sync_requests", ["tenant_id"])
        op.create_index(op.f("ix_sync_requests_status"), "sync_requests", ["status"])

    if "sync_jobs" not in tables:
        op.create_table(
            "sync_jobs",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("kind", sa.String(16), nullable=False),
            sa.Column(
                "sync_request_id", sa.Integer(), sa.ForeignKey("sync_requests.id", ondelete="CASCADE"), nullable=True
            ),
            sa.Column("mailbox_id", sa.Integer(), sa.ForeignKey("mailboxes.id", ondelete="CASCADE"), nullable=False),
            sa.Column("tenant_id", sa.String(64), nullable=False),
            sa.Column("status", sa.String(32), nullable=False),
            sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="3"),
            sa.Column("worker_id", sa.String(128), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("started_at", sa.DateTime(), nullable=True),
            sa.Column("completed_at", sa.DateTime(), nullable=True),
            sa.Column("error_message", sa.Text(), nullable=True),
            sa.Column("error_category", sa.String(32), nullable=True),
            sa.Column("next_retry_at", sa.DateTime(), nullable=True),
            sa.Column("metadata", sa.JSON(), nullable=True),
            sa.Column("chunk_index", sa.Integer(), nullable=True),
            sa.Column("total_chunks", sa.Integer(), nullable=True),
            sa.Column("start_offset", sa.Integer(), nullable=True),
            sa.Column("end_offset", sa.Integer(), nullable=True),
            sa.Column("chunk_size", sa.Integer(), nullable=True),
            sa.Column("emails_processed", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("emails_failed", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("processing_time_ms", sa.Integer(), nullable=True),
        )
        op.create_index(op.f("ix_sync_jobs_id"), "sync_jobs", ["id"])
        op.create_index(op.f("ix_sync_jobs_sync_request_id"), "sync_jobs", ["sync_request_id"])
        op.create_index(op.f("ix_sync_jobs_mailbox_id"), "sync_jobs", ["mailbox_id"])
        op.create_index(op.f("ix_sync_jobs_tenant_id"), "sync_jobs", ["tenant_id"])
        op.create_index(op.f("ix_sync_jobs_worker_id"), "sync_jobs", ["worker_id"])
        op.create_index("ix_sync_jobs_claim", "sync_jobs", ["status", "priority", "created_at"])
        op.create_index("ix_sync_jobs_status_started", "sync_jobs", ["status", "started_at"])

    if "sync_checkpoints" not in tables:
        op.create_table(
            "sync_checkpoints",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column(
                "job_id", sa.Integer(), sa.ForeignKey("sync_jobs.id", ondelete="CASCADE"), nullable=False, unique=True
            ),
            sa.Column("mailbox_id", sa.Integer(), nullable=False),
            sa.Column("page_token", sa.Text(), nullable=True),
            sa.Column("pages_completed", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("messages_processed", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("provider_sync_token", sa.String(), nullable=True),
            sa.Column("last_message_id", sa.String(), nullable=True),
            sa.Column("state_hash", sa.String(64), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("created_at", sa.DateTime(), nullable=True),
            sa.Column("updated_at", sa.DateTime(), nullable=True),
        )
        op.create_index(op.f("ix_sync_checkpoints_id"), "sync_checkpoints", ["id"])
        op.create_index(op.f("ix_sync_checkpoints_mailbox_id"), "sync_checkpoints", ["mailbox_id"])

    if "circuit_breaker_state" not in tables:
        op.create_table(
            "circuit_breaker_state",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("mailbox_id", sa.Integer(), nullable=False),
            sa.Column("circuit_name", sa.String(64), nullable=False),
            sa.Column("state", sa.String(16), nullable=False),
            sa.Column("failure_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("failure_threshold", sa.Integer(), nullable=False, server_default="5"),
            sa.Column("cooldown_seconds", sa.Integer(), nullable=False, server_default="300"),
            sa.Column("opened_at", sa.DateTime(), nullable=True),
            sa.Column("next_attempt_at", sa.DateTime(), nullable=True),
            sa.Column("probe_started_at", sa.DateTime(), nullable=True),
            sa.Column("last_transition_at", sa.DateTime(), nullable=True),
            sa.Column("total_failures", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("total_successes", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("updated_at", sa.DateTime(), nullable=True),
            sa.UniqueConstraint("mailbox_id", "circuit_name", name="uq_circuit_mailbox_name"),
        )
        op.create_index(op.f("ix_circuit_breaker_state_id"), "circuit_breaker_state", ["id"])

    if "rate_limit_state" not in tables:
        op.create_table(
            "rate_limit_state",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("mailbox_id", sa.Integer(), nullable=False),
            sa.Column("operation", sa.String(64), nullable=False),
            sa.Column("window_start", sa.DateTime(), nullable=False),
            sa.Column("window_requests", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("requests_per_window", sa.Integer(), nullable=False, server_default="60"),
            sa.Column("throttled_until", sa.DateTime(), nullable=True),
            sa.Column("throttle_reason", sa.String(255), nullable=True),
            sa.Column("total_requests", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("total_throttle_events", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("last_request_at", sa.DateTime(), nullable=True),
            sa.Column("updated_at", sa.DateTime(), nullable=True),
            sa.UniqueConstraint("mailbox_id", "operation", name="uq_rate_limit_mailbox_op"),
        )
        op.create_index(op.f("ix_rate_limit_state_id"), "rate_limit_state", ["id"])

    if "dead_letter_entries" not in tables:
        op.create_table(
            "dead_letter_entries",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("original_job_id", sa.Integer(), nullable=False),
            sa.Column("job_kind", sa.String(16), nullable=False),
            sa.Column("mailbox_id", sa.Integer(), nullable=True),
            sa.Column("tenant_id", sa.String(64), nullable=True),
            sa.Column("failure_reason", sa.Text(), nullable=False),
            sa.Column("error_category", sa.String(32), nullable=True),
            sa.Column("attempt_count", sa.Integer(), nullable=False),
            sa.Column("job_snapshot", sa.JSON(), nullable=False),
            sa.Column("error_trail", sa.JSON(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
        )
        op.create_index(op.f("ix_dead_letter_entries_id"), "dead_letter_entries", ["id"])
        op.create_index(op.f("ix_dead_letter_entries_original_job_id"), "dead_letter_entries", ["original_job_id"])
        op.create_index(op.f("ix_dead_letter_entries_mailbox_id"), "dead_letter_entries", ["mailbox_id"])
        op.create_index(op.f("ix_dead_letter_entries_tenant_id"), "dead_letter_entries", ["tenant_id"])

    if "emails" not in tables:
        op.create_table(
            "emails",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("tenant_id", sa.String(64), nullable=False),
            sa.Column("mailbox_id", sa.Integer(), sa.ForeignKey("mailboxes.id", ondelete="CASCADE"), nullable=False),
            sa.Column("provider_message_id", sa.String(), nullable=True),
            sa.Column("thread_id", sa.String(), nullable=True),
            sa.Column("provider_thread_id", sa.String(), nullable=True),
            sa.Column("subject", sa.String(), nullable=True),
            sa.Column("sender", sa.String(), nullable=True),
            sa.Column("recipients", sa.JSON(), nullable=True),
            sa.Column("body", sa.Text(), nullable=True),
            sa.Column("received_at", sa.DateTime(), nullable=True),
            sa.Column("is_read", sa.Boolean(), nullable=True),
            sa.Column("direction", sa.String(16), nullable=True),
            sa.Column("message_id_header", sa.String(), nullable=True),
            sa.Column("in_reply_to_header", sa.String(), nullable=True),
            sa.Column("references_header", sa.Text(), nullable=True),
            sa.Column("has_attachments", sa.Boolean(), nullable=True),
            sa.Column("attachment_count", sa.Integer(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=True),
            sa.Column("updated_at", sa.DateTime(), nullable=True),
        )
        op.create_index(op.f("ix_emails_id"), "emails", ["id"])
        op.create_index(op.f("ix_emails_tenant_id"), "emails", ["tenant_id"])
        op.create_index(op.f("ix_emails_mailbox_id"), "emails", ["mailbox_id"])
        op.create_index(op.f("ix_emails_thread_id"), "emails", ["thread_id"])
        op.create_index(op.f("ix_emails_provider_thread_id"), "emails", ["provider_thread_id"])
        op.create_index(op.f("ix_emails_received_at"), "emails", ["received_at"])
        op.create_index("ix_emails_tenant_provider_id", "emails", ["tenant_id", "provider_message_id"], unique=True)
        op.create_index(
            "ix_emails_tenant_mailbox_msgid", "emails", ["tenant_id", "mailbox_id", "message_id_header"], unique=True
        )

    if "email_attachments" not in tables:
        op.create_table(
            "email_attachments",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("email_id", sa.Integer(), sa.ForeignKey("emails.id", ondelete="CASCADE"), nullable=False),
            sa.Column("tenant_id", sa.String(64), nullable=False),
            sa.Column("content_id", sa.String(), nullable=True),
            sa.Column("filename", sa.String(), nullable=False),
            sa.Column("size", sa.Integer(), nullable=True),
            sa.Column("mime_type", sa.String(128), nullable=True),
            sa.Column("is_inline", sa.Boolean(), nullable=True),
            sa.Column("is_synthetic", sa.Boolean(), nullable=True),
            sa.Column("provider_attachment_id", sa.String(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=True),
        )
        op.create_index(op.f("ix_email_attachments_id"), "email_attachments", ["id"])
        op.create_index(op.f("ix_email_attachments_email_id"), "email_attachments", ["email_id"])

    if "health_metrics" not in tables:
        op.create_table(
            "health_metrics",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("metric_type", sa.String(64), nullable=False),
            sa.Column("metric_name", sa.String(128), nullable=False),
            sa.Column("metric_value", sa.Float(), nullable=False),
            sa.Column("metric_unit", sa.String(32), nullable=True),
            sa.Column("dimensions", sa.JSON(), nullable=True),
            sa.Column("measured_at", sa.DateTime(), nullable=False),
        )
        op.create_index(op.f("ix_health_metrics_id"), "health_metrics", ["id"])
        op.create_index("ix_health_metrics_type_measured", "health_metrics", ["metric_type", "measured_at"])

    if "recovery_log" not in tables:
        op.create_table(
            "recovery_log",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("recovery_type", sa.String(64), nullable=False),
            sa.Column("jobs_affected", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("details", sa.JSON(), nullable=True),
            sa.Column("recovered_at", sa.DateTime(), nullable=False),
        )
        op.create_index(op.f("ix_recovery_log_id"), "recovery_log", ["id"])


def downgrade() -> None:
    conn = op.get_bind()
    inspector = sa.inspect(conn)
    tables = set(inspector.get_table_names())
    for name in (
        "recovery_log",
        "health_metrics",
        "email_attachments",
        "emails",
        "dead_letter_entries",
        "rate_limit_state",
        "circuit_breaker_state",
        "sync_checkpoints",
        "sync_jobs",
        "sync_requests",
        "mailboxes",
    ):
        if name in tables:
            op.drop_table(name)
