"""SQLAlchemy models."""
from datetime import datetime, timezone
from sqlalchemy import (
    Column,
    Integer,
    String,
    DateTime,
    Text,
    Float,
    Boolean,
    ForeignKey,
    Index,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy import JSON, inspect

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp (all DateTime columns are stored naive in UTC)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# Job kinds
JOB_KIND_REGULAR = "regular"
JOB_KIND_CHUNK = "chunk"

# Job statuses
JOB_PENDING = "pending"
JOB_PROCESSING = "processing"
JOB_COMPLETED = "completed"
JOB_FAILED = "failed"
JOB_CANCELLED = "cancelled"
JOB_RATE_LIMITED = "rate_limited"
JOB_CIRCUIT_BLOCKED = "circuit_blocked"
JOB_ARCHIVED = "archived"  # dead-lettered
JOB_SUPERSEDED = "superseded"  # regular job converted into chunks

CLAIMABLE_STATUSES = (JOB_PENDING, JOB_RATE_LIMITED, JOB_CIRCUIT_BLOCKED)
TERMINAL_STATUSES = (JOB_COMPLETED, JOB_CANCELLED, JOB_ARCHIVED, JOB_SUPERSEDED)

# Sync request statuses
REQUEST_PENDING = "pending"
REQUEST_RUNNING = "running"
REQUEST_COMPLETED = "completed"
REQUEST_FAILED = "failed"

# Mailbox connection statuses
MAILBOX_CONNECTED = "connected"
MAILBOX_NEEDS_RECONNECTION = "needs_reconnection"


class Mailbox(Base):
    """A connected remote mailbox and its credential."""
    __tablename__ = "mailboxes"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    provider = Column(String(32), nullable=False, default="gmail")
    email_address = Column(String, nullable=False)
    connection_status = Column(String(32), nullable=False, default=MAILBOX_CONNECTED)
    access_token = Column(Text, nullable=True)
    refresh_token = Column(Text, nullable=True)
    token_expires_at = Column(DateTime, nullable=True)
    last_synced_at = Column(DateTime, nullable=True)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class SyncRequest(Base):
    """Intent to synchronize one mailbox over an optional date range."""
    __tablename__ = "sync_requests"

    id = Column(Integer, primary_key=True, index=True)
    mailbox_id = Column(Integer, ForeignKey("mailboxes.id", ondelete="CASCADE"), nullable=False, index=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    sync_type = Column(String(32), nullable=False, default="initial")  # initial, incremental
    source = Column(String(32), nullable=False, default="user")  # user, webhook, scheduled, replay
    date_from = Column(DateTime, nullable=True)
    date_to = Column(DateTime, nullable=True)
    estimated_count = Column(Integer, nullable=True)
    status = Column(String(32), nullable=False, default=REQUEST_PENDING, index=True)
    total_chunks = Column(Integer, nullable=False, default=0)
    chunks_completed = Column(Integer, nullable=False, default=0)
    progress = Column(Float, nullable=False, default=0.0)  # percentage
    error = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    completed_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    mailbox = relationship("Mailbox")


class SyncJob(Base):
    """
    Unit of work. `kind` tags the union: regular jobs cover a whole request,
    chunk jobs an inclusive [start_offset, end_offset] slice of it.
    """
    __tablename__ = "sync_jobs"

    id = Column(Integer, primary_key=True, index=True)
    kind = Column(String(16), nullable=False, default=JOB_KIND_REGULAR)
    sync_request_id = Column(
        Integer, ForeignKey("sync_requests.id", ondelete="CASCADE"), nullable=True, index=True
    )
    mailbox_id = Column(Integer, ForeignKey("mailboxes.id", ondelete="CASCADE"), nullable=False, index=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    status = Column(String(32), nullable=False, default=JOB_PENDING)
    priority = Column(Integer, nullable=False, default=0)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    worker_id = Column(String(128), nullable=True, index=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    error_message = Column(Text, nullable=True)
    error_category = Column(String(32), nullable=True)
    next_retry_at = Column(DateTime, nullable=True)
    job_metadata = Column("metadata", JSON, nullable=True)

    # Chunk columns (null for regular jobs)
    chunk_index = Column(Integer, nullable=True)
    total_chunks = Column(Integer, nullable=True)
    start_offset = Column(Integer, nullable=True)
    end_offset = Column(Integer, nullable=True)
    chunk_size = Column(Integer, nullable=True)

    # Result columns
    emails_processed = Column(Integer, nullable=False, default=0)
    emails_failed = Column(Integer, nullable=False, default=0)
    processing_time_ms = Column(Integer, nullable=True)

    sync_request = relationship("SyncRequest")

    @property
    def is_chunk(self) -> bool:
        return self.kind == JOB_KIND_CHUNK

    def snapshot(self) -> dict:
        """Plain-dict copy of the row, used for dead-letter payloads."""
        out = {}
        # keyed by column name; job_metadata is stored as "metadata"
        for attr in inspect(self).mapper.column_attrs:
            value = getattr(self, attr.key)
            if isinstance(value, datetime):
                value = value.isoformat()
            out[attr.columns[0].name] = value
        return out


class SyncCheckpoint(Base):
    """Resumable progress of one job: written after each durably persisted page."""
    __tablename__ = "sync_checkpoints"

    id = Column(Integer, primary_key=True, index=True)
    job_id = Column(Integer, ForeignKey("sync_jobs.id", ondelete="CASCADE"), nullable=False, unique=True)
    mailbox_id = Column(Integer, nullable=False, index=True)
    page_token = Column(Text, nullable=True)
    pages_completed = Column(Integer, nullable=False, default=0)
    messages_processed = Column(Integer, nullable=False, default=0)
    provider_sync_token = Column(String, nullable=True)
    last_message_id = Column(String, nullable=True)
    state_hash = Column(String(64), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class CircuitBreakerState(Base):
    __tablename__ = "circuit_breaker_state"

    id = Column(Integer, primary_key=True, index=True)
    mailbox_id = Column(Integer, nullable=False)
    circuit_name = Column(String(64), nullable=False)
    state = Column(String(16), nullable=False, default="closed")  # closed, open, half_open
    failure_count = Column(Integer, nullable=False, default=0)
    failure_threshold = Column(Integer, nullable=False, default=5)
    cooldown_seconds = Column(Integer, nullable=False, default=300)
    opened_at = Column(DateTime, nullable=True)
    next_attempt_at = Column(DateTime, nullable=True)
    probe_started_at = Column(DateTime, nullable=True)
    last_transition_at = Column(DateTime, default=utcnow)
    total_failures = Column(Integer, nullable=False, default=0)
    total_successes = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (UniqueConstraint("mailbox_id", "circuit_name", name="uq_circuit_mailbox_name"),)


class RateLimitState(Base):
    __tablename__ = "rate_limit_state"

    id = Column(Integer, primary_key=True, index=True)
    mailbox_id = Column(Integer, nullable=False)
    operation = Column(String(64), nullable=False)
    window_start = Column(DateTime, nullable=False, default=utcnow)
    window_requests = Column(Integer, nullable=False, default=0)
    requests_per_window = Column(Integer, nullable=False, default=60)
    throttled_until = Column(DateTime, nullable=True)
    throttle_reason = Column(String(255), nullable=True)
    total_requests = Column(Integer, nullable=False, default=0)
    total_throttle_events = Column(Integer, nullable=False, default=0)
    last_request_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (UniqueConstraint("mailbox_id", "operation", name="uq_rate_limit_mailbox_op"),)


class DeadLetterEntry(Base):
    """Immutable record of a job that exhausted its retries. Insert-only."""
    __tablename__ = "dead_letter_entries"

    id = Column(Integer, primary_key=True, index=True)
    original_job_id = Column(Integer, nullable=False, index=True)
    job_kind = Column(String(16), nullable=False)
    mailbox_id = Column(Integer, nullable=True, index=True)
    tenant_id = Column(String(64), nullable=True, index=True)
    failure_reason = Column(Text, nullable=False)
    error_category = Column(String(32), nullable=True)
    attempt_count = Column(Integer, nullable=False)
    job_snapshot = Column(JSON, nullable=False)
    error_trail = Column(JSON, nullable=True)  # list of {"at", "category", "message"}
    created_at = Column(DateTime, default=utcnow, nullable=False)


class EmailRecord(Base):
    __tablename__ = "emails"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    mailbox_id = Column(Integer, ForeignKey("mailboxes.id", ondelete="CASCADE"), nullable=False, index=True)
    provider_message_id = Column(String, nullable=True)
    thread_id = Column(String, nullable=True, index=True)
    provider_thread_id = Column(String, nullable=True, index=True)
    subject = Column(String, nullable=True)
    sender = Column(String, nullable=True)
    recipients = Column(JSON, nullable=True)  # list of addresses
    body = Column(Text, nullable=True)
    received_at = Column(DateTime, nullable=True, index=True)
    is_read = Column(Boolean, default=False)
    direction = Column(String(16), default="inbound")  # inbound, outbound
    message_id_header = Column(String, nullable=True)
    in_reply_to_header = Column(String, nullable=True)
    references_header = Column(Text, nullable=True)
    has_attachments = Column(Boolean, default=False)
    attachment_count = Column(Integer, default=0)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    attachments = relationship("EmailAttachment", back_populates="email", cascade="all, delete-orphan")


class EmailAttachment(Base):
    __tablename__ = "email_attachments"

    id = Column(Integer, primary_key=True, index=True)
    email_id = Column(Integer, ForeignKey("emails.id", ondelete="CASCADE"), nullable=False, index=True)
    tenant_id = Column(String(64), nullable=False)
    content_id = Column(String, nullable=True)
    filename = Column(String, nullable=False)
    size = Column(Integer, nullable=True)
    mime_type = Column(String(128), nullable=True)
    is_inline = Column(Boolean, default=False)
    is_synthetic = Column(Boolean, default=False)  # placeholder synthesized from an unmatched cid reference
    provider_attachment_id = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    email = relationship("EmailRecord", back_populates="attachments")


class HealthMetric(Base):
    __tablename__ = "health_metrics"

    id = Column(Integer, primary_key=True, index=True)
    metric_type = Column(String(64), nullable=False)
    metric_name = Column(String(128), nullable=False)
    metric_value = Column(Float, nullable=False)
    metric_unit = Column(String(32), nullable=True)  # ms, count, percentage
    dimensions = Column(JSON, nullable=True)
    measured_at = Column(DateTime, default=utcnow, nullable=False)


class RecoveryLogEntry(Base):
    """One stale-job sweep that actually reset something."""
    __tablename__ = "recovery_log"

    id = Column(Integer, primary_key=True, index=True)
    recovery_type = Column(String(64), nullable=False)
    jobs_affected = Column(Integer, nullable=False, default=0)
    details = Column(JSON, nullable=True)
    recovered_at = Column(DateTime, default=utcnow, nullable=False)


# Claim ordering + predicate
Index("ix_sync_jobs_claim", SyncJob.status, SyncJob.priority, SyncJob.created_at)
Index("ix_sync_jobs_status_started", SyncJob.status, SyncJob.started_at)
# Idempotency keys
Index("ix_emails_tenant_provider_id", EmailRecord.tenant_id, EmailRecord.provider_message_id, unique=True)
Index(
    "ix_emails_tenant_mailbox_msgid",
    EmailRecord.tenant_id,
    EmailRecord.mailbox_id,
    EmailRecord.message_id_header,
    unique=True,
)
Index("ix_health_metrics_type_measured", HealthMetric.metric_type, HealthMetric.measured_at)
