"""Chunk planner: split a sync request into one regular job or N contiguous chunk jobs."""
import logging
import math
from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy.orm import Session

from .config import settings
from .database import commit_with_retry
from .models import (
    Mailbox,
    SyncJob,
    SyncRequest,
    CLAIMABLE_STATUSES,
    JOB_KIND_CHUNK,
    JOB_KIND_REGULAR,
    JOB_PROCESSING,
    JOB_SUPERSEDED,
    REQUEST_PENDING,
    REQUEST_RUNNING,
    utcnow,
)
from .job_queue import enqueue_job

logger = logging.getLogger(__name__)


def chunk_ranges(estimated_count: int, chunk_size: int) -> List[Tuple[int, int, int]]:
    """
    (chunk_index, start_offset, end_offset) triples covering [0, estimated_count).
    Indices are 1-based and offsets inclusive.
    """
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    estimated_count = max(0, int(estimated_count))
    total = int(math.ceil(estimated_count / float(chunk_size)))
    return [
        (i + 1, i * chunk_size, min((i + 1) * chunk_size, estimated_count) - 1)
        for i in range(total)
    ]


def default_estimate(sync_type: str) -> int:
    if sync_type == "incremental":
        return settings.default_estimate_incremental
    return settings.default_estimate_initial


def create_sync_request(
    db: Session,
    mailbox_id: int,
    tenant_id: Optional[str] = None,
    sync_type: str = "initial",
    source: str = "user",
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    estimated_count: Optional[int] = None,
    commit: bool = True,
) -> SyncRequest:
    if tenant_id is None:
        mailbox = db.query(Mailbox).filter(Mailbox.id == mailbox_id).first()
        if mailbox is None:
            raise ValueError(f"Mailbox {mailbox_id} not found")
        tenant_id = mailbox.tenant_id
    if date_from and date_to and date_from > date_to:
        raise ValueError("date_from must not be after date_to")
    req = SyncRequest(
        mailbox_id=mailbox_id,
        tenant_id=tenant_id,
        sync_type=sync_type,
        source=source,
        date_from=date_from,
        date_to=date_to,
        estimated_count=estimated_count if estimated_count is not None else default_estimate(sync_type),
        status=REQUEST_PENDING,
        created_at=utcnow(),
    )
    db.add(req)
    if commit:
        commit_with_retry(db)
        db.refresh(req)
    return req


def _add_chunk_jobs(db: Session, req: SyncRequest, estimated: int, priority: int, origin: str) -> List[SyncJob]:
    ranges = chunk_ranges(estimated, settings.chunk_size)
    jobs = []
    for index, start, end in ranges:
        jobs.append(
            enqueue_job(
                db,
                mailbox_id=req.mailbox_id,
                tenant_id=req.tenant_id,
                kind=JOB_KIND_CHUNK,
                sync_request_id=req.id,
                priority=priority,
                metadata={"estimated_count": estimated, "origin": origin},
                chunk_index=index,
                total_chunks=len(ranges),
                start_offset=start,
                end_offset=end,
                chunk_size=end - start + 1,
                commit=False,
            )
        )
    req.total_chunks = len(ranges)
    return jobs


def plan_sync_request(db: Session, req: SyncRequest, priority: int = 0) -> List[SyncJob]:
    """
    Materialize the request's jobs. Estimates at or below chunk_threshold run as a
    single regular job; larger ones become ceil(estimate / chunk_size) chunks.
    Re-planning drops jobs that have not been claimed yet.
    """
    in_flight = (
        db.query(SyncJob.id)
        .filter(SyncJob.sync_request_id == req.id, SyncJob.status == JOB_PROCESSING)
        .first()
    )
    if in_flight is not None:
        raise ValueError(f"Sync request {req.id} has a job in progress; cannot re-plan")
    removed = (
        db.query(SyncJob)
        .filter(SyncJob.sync_request_id == req.id, SyncJob.status.in_(CLAIMABLE_STATUSES))
        .delete(synchronize_session=False)
    )
    if removed:
        logger.info(f"Re-planning sync request {req.id}: removed {removed} outstanding job(s)")

    estimated = req.estimated_count if req.estimated_count is not None else default_estimate(req.sync_type)
    if estimated <= settings.chunk_threshold:
        job = enqueue_job(
            db,
            mailbox_id=req.mailbox_id,
            tenant_id=req.tenant_id,
            kind=JOB_KIND_REGULAR,
            sync_request_id=req.id,
            priority=priority,
            metadata={"estimated_count": estimated},
            commit=False,
        )
        jobs = [job]
        req.total_chunks = 1
    else:
        jobs = _add_chunk_jobs(db, req, estimated, priority, origin="planner")

    req.chunks_completed = 0
    req.progress = 0.0
    req.status = REQUEST_PENDING
    commit_with_retry(db)
    for job in jobs:
        db.refresh(job)
    logger.info(
        f"Planned sync request {req.id}: {len(jobs)} job(s) for ~{estimated} messages (mailbox {req.mailbox_id})"
    )
    return jobs


def _estimate_for(job: SyncJob, req: Optional[SyncRequest]) -> Optional[int]:
    meta = job.job_metadata or {}
    if meta.get("estimated_count") is not None:
        return int(meta["estimated_count"])
    if req is not None and req.estimated_count is not None:
        return int(req.estimated_count)
    return None


def is_oversized(job: SyncJob, req: Optional[SyncRequest] = None) -> bool:
    """A regular job whose estimate says it should have been chunked."""
    if job.kind != JOB_KIND_REGULAR:
        return False
    estimated = _estimate_for(job, req if req is not None else job.sync_request)
    return estimated is not None and estimated > settings.chunk_threshold


def convert_oversized_job(db: Session, job: SyncJob, worker_id: str) -> List[SyncJob]:
    """
    Replace a claimed oversized regular job with chunk jobs. The original is
    marked superseded. Returns the new chunks, or [] if the job is no longer
    owned by worker_id.
    """
    now = utcnow()
    req = job.sync_request
    estimated = _estimate_for(job, req)
    won = (
        db.query(SyncJob)
        .filter(SyncJob.id == job.id, SyncJob.status == JOB_PROCESSING, SyncJob.worker_id == worker_id)
        .update(
            {
                SyncJob.status: JOB_SUPERSEDED,
                SyncJob.completed_at: now,
                SyncJob.error_message: "Converted into chunk jobs",
            },
            synchronize_session=False,
        )
    )
    if not won:
        commit_with_retry(db)
        return []

    if req is None:
        req = SyncRequest(
            mailbox_id=job.mailbox_id,
            tenant_id=job.tenant_id,
            sync_type=(job.job_metadata or {}).get("sync_type", "initial"),
            source="conversion",
            estimated_count=estimated,
            status=REQUEST_RUNNING,
            created_at=now,
        )
        db.add(req)
        db.flush()
        job.sync_request_id = req.id

    chunks = _add_chunk_jobs(db, req, estimated, job.priority or 0, origin=f"converted:{job.id}")
    req.chunks_completed = 0
    req.progress = 0.0
    req.status = REQUEST_RUNNING
    commit_with_retry(db)
    logger.info(f"[{worker_id}] Converted oversized job {job.id} into {len(chunks)} chunks")
    return chunks
