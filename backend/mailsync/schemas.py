"""Pydantic schemas for API."""
from datetime import datetime
from pydantic import BaseModel, Field
from typing import Optional, List, Dict


class SyncRequestCreate(BaseModel):
    mailbox_id: int
    sync_type: str = "initial"  # initial | incremental
    source: str = "user"  # user | webhook | scheduled
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    estimated_count: Optional[int] = Field(default=None, ge=0)
    priority: int = 0


class SyncRequestResponse(BaseModel):
    id: int
    mailbox_id: int
    status: str
    sync_type: str
    source: str
    estimated_count: Optional[int] = None
    total_chunks: int = 0
    chunks_completed: int = 0
    progress: float = 0.0
    error: Optional[str] = None
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class SyncProgressResponse(BaseModel):
    id: int
    mailbox_id: int
    status: str
    sync_type: str
    estimated_count: Optional[int] = None
    total_chunks: int = 0
    chunks_completed: int = 0
    progress: float = 0.0
    emails_processed: int = 0
    emails_failed: int = 0
    jobs: Dict[str, int] = {}
    error: Optional[str] = None
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class JobResponse(BaseModel):
    id: int
    kind: str
    sync_request_id: Optional[int] = None
    mailbox_id: int
    status: str
    priority: int
    attempts: int
    max_attempts: int
    chunk_index: Optional[int] = None
    total_chunks: Optional[int] = None
    start_offset: Optional[int] = None
    end_offset: Optional[int] = None
    next_retry_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class InvocationResponse(BaseModel):
    outcome: str
    job_id: Optional[int] = None
    worker_id: Optional[str] = None
    next_work_in: Optional[int] = None
    retry_after_seconds: Optional[int] = None
    emails_processed: int = 0
    emails_failed: int = 0
    detail: Optional[str] = None


class ReclaimResponse(BaseModel):
    reset: int
    dead_lettered: int
    job_ids: List[int]


class DeadLetterResponse(BaseModel):
    id: int
    original_job_id: int
    job_kind: str
    mailbox_id: Optional[int] = None
    tenant_id: Optional[str] = None
    failure_reason: str
    error_category: Optional[str] = None
    attempt_count: int
    job_snapshot: dict
    error_trail: Optional[List[dict]] = None
    created_at: datetime

    class Config:
        from_attributes = True


class MailboxStatusResponse(BaseModel):
    id: int
    email_address: str
    provider: str
    connection_status: str
    last_synced_at: Optional[datetime] = None
    last_error: Optional[str] = None
    circuit_state: str = "closed"
    circuit_next_attempt_at: Optional[datetime] = None
    throttled_until: Optional[datetime] = None
    latest_request: Optional[SyncRequestResponse] = None


class QueueHealthResponse(BaseModel):
    jobs: Dict[str, int]
    claimable: int
    processing: int
    stale_processing: int
    oldest_claimable_age_s: Optional[int] = None
    dead_letters: int
