"""Dead-letter sink: terminal storage for jobs that exhausted their retries, plus manual replay."""
import logging
from typing import List, Optional

from sqlalchemy.orm import Session

from .database import commit_with_retry
from .models import (
    DeadLetterEntry,
    SyncJob,
    SyncRequest,
    JOB_ARCHIVED,
    JOB_PENDING,
    REQUEST_FAILED,
    REQUEST_RUNNING,
    utcnow,
)

logger = logging.getLogger(__name__)


def move_to_dead_letter(
    db: Session,
    job: SyncJob,
    reason: str,
    category: Optional[str] = None,
    error_trail: Optional[list] = None,
    commit: bool = True,
) -> DeadLetterEntry:
    """
    Insert a DeadLetterEntry carrying the job snapshot and error trail, and mark
    the job archived in the same transaction.
    """
    now = utcnow()
    if error_trail is None:
        error_trail = list((job.job_metadata or {}).get("error_trail") or [])
    job.status = JOB_ARCHIVED
    job.worker_id = None
    job.completed_at = now
    job.next_retry_at = None
    job.error_message = reason
    job.error_category = category
    entry = DeadLetterEntry(
        original_job_id=job.id,
        job_kind=job.kind,
        mailbox_id=job.mailbox_id,
        tenant_id=job.tenant_id,
        failure_reason=reason or "unknown failure",
        error_category=category,
        attempt_count=job.attempts or 0,
        job_snapshot=job.snapshot(),
        error_trail=error_trail,
        created_at=now,
    )
    db.add(entry)
    if commit:
        commit_with_retry(db)
    logger.error(
        f"Job {job.id} ({job.kind}) dead-lettered after {job.attempts} attempts [{category}]: {reason}"
    )
    return entry


def list_dead_letters(
    db: Session,
    mailbox_id: Optional[int] = None,
    tenant_id: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> List[DeadLetterEntry]:
    q = db.query(DeadLetterEntry)
    if mailbox_id is not None:
        q = q.filter(DeadLetterEntry.mailbox_id == mailbox_id)
    if tenant_id is not None:
        q = q.filter(DeadLetterEntry.tenant_id == tenant_id)
    return q.order_by(DeadLetterEntry.created_at.desc(), DeadLetterEntry.id.desc()).offset(offset).limit(limit).all()


def get_dead_letter(db: Session, entry_id: int) -> Optional[DeadLetterEntry]:
    return db.query(DeadLetterEntry).filter(DeadLetterEntry.id == entry_id).first()


def replay_dead_letter(db: Session, entry_id: int, priority: Optional[int] = None) -> Optional[SyncJob]:
    """
    Re-enqueue a fresh pending job built from the entry's snapshot.
    The entry itself is left untouched. Returns None if the entry does not exist.
    """
    entry = get_dead_letter(db, entry_id)
    if entry is None:
        return None
    snap = entry.job_snapshot or {}
    metadata = dict(snap.get("metadata") or {})
    metadata.pop("error_trail", None)
    metadata["replayed_from_dead_letter"] = entry.id
    metadata["replayed_job_id"] = entry.original_job_id

    job = SyncJob(
        kind=snap.get("kind") or entry.job_kind,
        sync_request_id=snap.get("sync_request_id"),
        mailbox_id=snap.get("mailbox_id") or entry.mailbox_id,
        tenant_id=snap.get("tenant_id") or entry.tenant_id,
        status=JOB_PENDING,
        priority=priority if priority is not None else (snap.get("priority") or 0),
        attempts=0,
        max_attempts=snap.get("max_attempts") or 3,
        job_metadata=metadata,
        chunk_index=snap.get("chunk_index"),
        total_chunks=snap.get("total_chunks"),
        start_offset=snap.get("start_offset"),
        end_offset=snap.get("end_offset"),
        chunk_size=snap.get("chunk_size"),
        created_at=utcnow(),
    )
    db.add(job)

    if job.sync_request_id is not None:
        req = db.query(SyncRequest).filter(SyncRequest.id == job.sync_request_id).first()
        if req is not None and req.status == REQUEST_FAILED:
            req.status = REQUEST_RUNNING
            req.error = None
            req.completed_at = None
    commit_with_retry(db)
    db.refresh(job)
    logger.info(f"Replayed dead letter {entry.id} as job {job.id}")
    return job
