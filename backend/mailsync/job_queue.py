"""Durable job queue: enqueue, atomic claim, deferral, completion and stale-job reclaim.

Ownership of a job is decided only by conditional UPDATEs guarded by the claim
predicate, so any number of stateless invocations can race on the same row and
at most one of them wins.
"""
import logging
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, List

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from .config import settings
from .database import commit_with_retry
from .errors import ErrorCategory, categorize_error, retry_delay_seconds, should_retry
from .models import (
    DeadLetterEntry,
    Mailbox,
    RecoveryLogEntry,
    SyncJob,
    SyncRequest,
    CLAIMABLE_STATUSES,
    JOB_ARCHIVED,
    JOB_CANCELLED,
    JOB_CIRCUIT_BLOCKED,
    JOB_COMPLETED,
    JOB_FAILED,
    JOB_KIND_REGULAR,
    JOB_PENDING,
    JOB_PROCESSING,
    JOB_RATE_LIMITED,
    JOB_SUPERSEDED,
    MAILBOX_NEEDS_RECONNECTION,
    REQUEST_COMPLETED,
    REQUEST_FAILED,
    REQUEST_PENDING,
    REQUEST_RUNNING,
    utcnow,
)
from . import checkpoints
from . import circuit_breaker
from . import dead_letter
from . import rate_limiter
from .health_metrics import metrics

logger = logging.getLogger(__name__)

OUTSTANDING_STATUSES = (JOB_PENDING, JOB_PROCESSING, JOB_RATE_LIMITED, JOB_CIRCUIT_BLOCKED, JOB_FAILED)

# Failures that say nothing about upstream health do not trip the breaker
_NON_CIRCUIT_CATEGORIES = (ErrorCategory.PERMISSION, ErrorCategory.NOT_FOUND, ErrorCategory.DATA_CONFLICT)


@dataclass
class CompletionResult:
    job_id: int
    applied: bool
    status: Optional[str]
    error_category: Optional[str] = None
    retry_after_seconds: Optional[int] = None
    dead_letter_id: Optional[int] = None


def enqueue_job(
    db: Session,
    mailbox_id: int,
    tenant_id: str,
    kind: str = JOB_KIND_REGULAR,
    sync_request_id: Optional[int] = None,
    priority: int = 0,
    max_attempts: Optional[int] = None,
    metadata: Optional[dict] = None,
    chunk_index: Optional[int] = None,
    total_chunks: Optional[int] = None,
    start_offset: Optional[int] = None,
    end_offset: Optional[int] = None,
    chunk_size: Optional[int] = None,
    commit: bool = True,
) -> SyncJob:
    job = SyncJob(
        kind=kind,
        sync_request_id=sync_request_id,
        mailbox_id=mailbox_id,
        tenant_id=tenant_id,
        status=JOB_PENDING,
        priority=priority,
        attempts=0,
        max_attempts=max_attempts or settings.job_max_attempts,
        job_metadata=metadata or {},
        chunk_index=chunk_index,
        total_chunks=total_chunks,
        start_offset=start_offset,
        end_offset=end_offset,
        chunk_size=chunk_size,
        created_at=utcnow(),
    )
    db.add(job)
    if commit:
        commit_with_retry(db)
        db.refresh(job)
    return job


def _claimable(now: datetime) -> list:
    return [
        SyncJob.status.in_(CLAIMABLE_STATUSES),
        SyncJob.worker_id.is_(None),
        or_(SyncJob.next_retry_at.is_(None), SyncJob.next_retry_at <= now),
    ]


def _claim_order():
    return (SyncJob.priority.desc(), SyncJob.created_at.asc(), SyncJob.id.asc())


def peek_next_job(db: Session, now: Optional[datetime] = None) -> Optional[SyncJob]:
    """Highest-priority, oldest claimable job, without claiming it."""
    now = now or utcnow()
    return db.query(SyncJob).filter(*_claimable(now)).order_by(*_claim_order()).first()


def claim_job(db: Session, job_id: int, worker_id: str, now: Optional[datetime] = None) -> Optional[SyncJob]:
    """
    Claim one specific job. Single UPDATE guarded by the claim predicate;
    returns the claimed job, or None if another worker got there first.
    """
    now = now or utcnow()
    won = 0

    def _claim():
        nonlocal won
        won = (
            db.query(SyncJob)
            .filter(SyncJob.id == job_id, *_claimable(now))
            .update(
                {
                    SyncJob.status: JOB_PROCESSING,
                    SyncJob.worker_id: worker_id,
                    SyncJob.started_at: now,
                    SyncJob.attempts: SyncJob.attempts + 1,
                    SyncJob.next_retry_at: None,
                },
                synchronize_session=False,
            )
        )

    _claim()
    commit_with_retry(db, apply=_claim)
    if won != 1:
        return None
    job = db.query(SyncJob).filter(SyncJob.id == job_id).first()
    logger.info(f"[{worker_id}] Claimed job {job_id} ({job.kind}, attempt {job.attempts}/{job.max_attempts})")
    return job


def claim_next_job(
    db: Session,
    worker_id: str,
    now: Optional[datetime] = None,
    max_candidates: int = 5,
) -> Optional[SyncJob]:
    """Claim the next available job. None means there is no work, not an error."""
    now = now or utcnow()
    candidate_ids = [
        row.id
        for row in db.query(SyncJob.id).filter(*_claimable(now)).order_by(*_claim_order()).limit(max_candidates)
    ]
    for job_id in candidate_ids:
        job = claim_job(db, job_id, worker_id, now=now)
        if job is not None:
            return job
    return None


def defer_job(
    db: Session,
    job: SyncJob,
    status: str,
    retry_after_seconds: int,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> bool:
    """
    Park an unclaimed job as rate_limited or circuit_blocked until now + retry_after.
    Attempts are not touched: a gate denial is not a failed attempt.
    """
    if status not in (JOB_RATE_LIMITED, JOB_CIRCUIT_BLOCKED):
        raise ValueError(f"Cannot defer a job to status {status!r}")
    now = now or utcnow()
    category = ErrorCategory.RATE_LIMIT if status == JOB_RATE_LIMITED else ErrorCategory.CIRCUIT_OPEN
    updated = (
        db.query(SyncJob)
        .filter(SyncJob.id == job.id, SyncJob.status.in_(CLAIMABLE_STATUSES), SyncJob.worker_id.is_(None))
        .update(
            {
                SyncJob.status: status,
                SyncJob.next_retry_at: now + timedelta(seconds=int(retry_after_seconds)),
                SyncJob.error_message: reason,
                SyncJob.error_category: category.value,
            },
            synchronize_session=False,
        )
    )
    commit_with_retry(db)
    db.expire(job)
    if updated:
        logger.info(f"Job {job.id} deferred as {status} for {retry_after_seconds}s: {reason}")
    return bool(updated)


def _append_error_trail(job: SyncJob, category: str, message: str, now: datetime) -> list:
    meta = dict(job.job_metadata or {})
    trail = list(meta.get("error_trail") or [])
    trail.append(
        {"at": now.isoformat(), "attempt": job.attempts, "category": category, "message": (message or "")[:2000]}
    )
    meta["error_trail"] = trail
    job.job_metadata = meta
    return trail


def _owned_job(db: Session, job_id: int, worker_id: str) -> Optional[SyncJob]:
    return (
        db.query(SyncJob)
        .filter(SyncJob.id == job_id, SyncJob.status == JOB_PROCESSING, SyncJob.worker_id == worker_id)
        .first()
    )


def complete_job(
    db: Session,
    job_id: int,
    worker_id: str,
    status: str,
    emails_processed: int = 0,
    emails_failed: int = 0,
    processing_time_ms: Optional[int] = None,
    error_message: Optional[str] = None,
    error: Optional[BaseException] = None,
    now: Optional[datetime] = None,
) -> CompletionResult:
    """
    Report the outcome of a claimed job. status is "completed" or "failed".

    Idempotent: only the owning worker of a job still in processing can apply
    a completion; any later or foreign call returns applied=False.
    """
    now = now or utcnow()
    if status == JOB_COMPLETED:
        return _complete_success(
            db, job_id, worker_id, emails_processed, emails_failed, processing_time_ms, error_message, now
        )
    return _complete_failure(
        db, job_id, worker_id, emails_processed, emails_failed, processing_time_ms, error_message, error, now
    )


def _complete_success(
    db: Session,
    job_id: int,
    worker_id: str,
    emails_processed: int,
    emails_failed: int,
    processing_time_ms: Optional[int],
    note: Optional[str],
    now: datetime,
) -> CompletionResult:
    applied = (
        db.query(SyncJob)
        .filter(SyncJob.id == job_id, SyncJob.status == JOB_PROCESSING, SyncJob.worker_id == worker_id)
        .update(
            {
                SyncJob.status: JOB_COMPLETED,
                SyncJob.completed_at: now,
                SyncJob.emails_processed: emails_processed,
                SyncJob.emails_failed: emails_failed,
                SyncJob.processing_time_ms: processing_time_ms,
                SyncJob.error_message: note,
                SyncJob.error_category: None,
                SyncJob.next_retry_at: None,
            },
            synchronize_session=False,
        )
    )
    commit_with_retry(db)
    job = db.query(SyncJob).filter(SyncJob.id == job_id).first()
    if not applied or job is None:
        return CompletionResult(job_id=job_id, applied=False, status=job.status if job else None)

    checkpoints.deactivate_checkpoint(db, job_id)
    circuit_breaker.record_circuit_result(db, job.mailbox_id, circuit_breaker.SYNC_CIRCUIT, success=True, now=now)
    rate_limiter.record_rate_limit_result(db, job.mailbox_id, rate_limiter.SYNC_OPERATION, success=True, now=now)

    mailbox = db.query(Mailbox).filter(Mailbox.id == job.mailbox_id).first()
    if mailbox is not None:
        mailbox.last_synced_at = now
        mailbox.last_error = None
    if job.sync_request_id is not None:
        refresh_sync_request(db, job.sync_request_id, now=now)
    commit_with_retry(db)

    dims = {"job_id": job_id, "kind": job.kind, "mailbox_id": job.mailbox_id}
    metrics.record("job", "emails_processed", emails_processed, "count", dims)
    if processing_time_ms is not None:
        metrics.record("job", "processing_time", processing_time_ms, "ms", dims)
    logger.info(
        f"[{worker_id}] Job {job_id} completed: {emails_processed} processed, {emails_failed} failed"
        + (f", {processing_time_ms}ms" if processing_time_ms is not None else "")
    )
    return CompletionResult(job_id=job_id, applied=True, status=JOB_COMPLETED)


def _complete_failure(
    db: Session,
    job_id: int,
    worker_id: str,
    emails_processed: int,
    emails_failed: int,
    processing_time_ms: Optional[int],
    error_message: Optional[str],
    error: Optional[BaseException],
    now: datetime,
) -> CompletionResult:
    job = _owned_job(db, job_id, worker_id)
    if job is None:
        current = db.query(SyncJob.status).filter(SyncJob.id == job_id).scalar()
        return CompletionResult(job_id=job_id, applied=False, status=current)

    message = error_message or (str(error) if error is not None else "") or "unknown failure"
    category = categorize_error(error if error is not None else message)
    attempts = job.attempts or 0
    mailbox_id = job.mailbox_id

    if category not in _NON_CIRCUIT_CATEGORIES:
        circuit_breaker.record_circuit_result(db, mailbox_id, circuit_breaker.SYNC_CIRCUIT, success=False, now=now)
    provider_retry_after = getattr(error, "retry_after", None)
    if category == ErrorCategory.RATE_LIMIT:
        rate_limiter.record_rate_limit_result(
            db,
            mailbox_id,
            rate_limiter.SYNC_OPERATION,
            success=False,
            retry_after_seconds=provider_retry_after,
            reason=message[:255],
            now=now,
        )

    # Re-read under the ownership guard; the recorders above committed
    job = _owned_job(db, job_id, worker_id)
    if job is None:
        current = db.query(SyncJob.status).filter(SyncJob.id == job_id).scalar()
        return CompletionResult(job_id=job_id, applied=False, status=current)

    trail = _append_error_trail(job, category.value, message, now)
    job.emails_processed = emails_processed
    job.emails_failed = emails_failed
    job.processing_time_ms = processing_time_ms

    if should_retry(category, attempts, job.max_attempts or settings.job_max_attempts):
        delay = retry_delay_seconds(category, attempts)
        if provider_retry_after:
            delay = max(delay, int(provider_retry_after))
        job.status = JOB_PENDING
        job.worker_id = None
        job.started_at = None
        job.error_message = message
        job.error_category = category.value
        job.next_retry_at = now + timedelta(seconds=delay)
        commit_with_retry(db)
        logger.warning(
            f"[{worker_id}] Job {job_id} failed [{category.value}] attempt {attempts}; retry in {delay}s: {message}"
        )
        metrics.record("job", "retry_scheduled", 1, "count", {"job_id": job_id, "category": category.value})
        return CompletionResult(
            job_id=job_id,
            applied=True,
            status=JOB_PENDING,
            error_category=category.value,
            retry_after_seconds=delay,
        )

    entry = dead_letter.move_to_dead_letter(db, job, message, category.value, error_trail=trail, commit=False)
    if category in (ErrorCategory.PERMISSION, ErrorCategory.AUTH):
        mailbox = db.query(Mailbox).filter(Mailbox.id == mailbox_id).first()
        if mailbox is not None:
            mailbox.connection_status = MAILBOX_NEEDS_RECONNECTION
            mailbox.last_error = message
    commit_with_retry(db)
    if job.sync_request_id is not None:
        refresh_sync_request(db, job.sync_request_id, now=now)
        commit_with_retry(db)
    metrics.record("job", "dead_lettered", 1, "count", {"job_id": job_id, "category": category.value})
    return CompletionResult(
        job_id=job_id,
        applied=True,
        status=JOB_ARCHIVED,
        error_category=category.value,
        dead_letter_id=entry.id,
    )


def refresh_sync_request(db: Session, request_id: int, now: Optional[datetime] = None) -> Optional[SyncRequest]:
    """
    Recompute a request's progress from its jobs. Completed once every chunk
    index has a completed job; failed when something was dead-lettered and
    nothing is left outstanding. Does not commit.
    """
    now = now or utcnow()
    req = db.query(SyncRequest).filter(SyncRequest.id == request_id).first()
    if req is None:
        return None
    rows = (
        db.query(SyncJob.chunk_index, SyncJob.status)
        .filter(SyncJob.sync_request_id == request_id, SyncJob.status != JOB_SUPERSEDED)
        .all()
    )
    if not rows:
        return req
    total = req.total_chunks or 1
    completed_units = {(idx or 0) for idx, status in rows if status == JOB_COMPLETED}
    outstanding = sum(1 for _, status in rows if status in OUTSTANDING_STATUSES)
    archived = sum(1 for _, status in rows if status in (JOB_ARCHIVED, JOB_CANCELLED))

    req.chunks_completed = min(len(completed_units), total)
    req.progress = round(100.0 * req.chunks_completed / total, 2)
    if req.chunks_completed >= total:
        if req.status != REQUEST_COMPLETED:
            req.status = REQUEST_COMPLETED
            req.completed_at = now
            req.error = None
            logger.info(f"Sync request {request_id} completed ({total} unit(s))")
    elif archived and not outstanding:
        if req.status != REQUEST_FAILED:
            req.status = REQUEST_FAILED
            req.completed_at = now
            req.error = f"{archived} unit(s) dead-lettered"
            logger.warning(f"Sync request {request_id} failed: {req.error}")
    elif req.status == REQUEST_PENDING:
        req.status = REQUEST_RUNNING
    return req


def reset_stale_jobs(
    db: Session,
    timeout_minutes: Optional[int] = None,
    now: Optional[datetime] = None,
) -> dict:
    """
    Reclaim jobs stuck in processing past the timeout. Jobs with attempts left
    go back to pending with the owner cleared; the rest are dead-lettered with
    category timeout.
    """
    now = now or utcnow()
    timeout = timeout_minutes if timeout_minutes is not None else settings.stale_job_timeout_minutes
    cutoff = now - timedelta(minutes=timeout)
    stale = (
        db.query(SyncJob)
        .filter(SyncJob.status == JOB_PROCESSING, SyncJob.started_at < cutoff)
        .order_by(SyncJob.started_at.asc())
        .all()
    )
    reset_ids: List[int] = []
    dead_ids: List[int] = []
    request_ids = set()

    for job in stale:
        previous_worker = job.worker_id
        note = f"Reset from stale processing state (worker {previous_worker}, started {job.started_at.isoformat()})"
        guard = [SyncJob.id == job.id, SyncJob.status == JOB_PROCESSING, SyncJob.started_at == job.started_at]
        if (job.attempts or 0) < (job.max_attempts or settings.job_max_attempts):
            updated = (
                db.query(SyncJob)
                .filter(*guard)
                .update(
                    {
                        SyncJob.status: JOB_PENDING,
                        SyncJob.worker_id: None,
                        SyncJob.started_at: None,
                        SyncJob.next_retry_at: None,
                        SyncJob.error_message: note,
                        SyncJob.error_category: ErrorCategory.TIMEOUT.value,
                    },
                    synchronize_session=False,
                )
            )
            commit_with_retry(db)
            if updated:
                reset_ids.append(job.id)
            continue

        # Out of attempts: take the row away from the (dead) owner, then dead-letter it
        taken = (
            db.query(SyncJob)
            .filter(*guard)
            .update({SyncJob.worker_id: None}, synchronize_session=False)
        )
        if not taken:
            commit_with_retry(db)
            continue
        db.refresh(job)
        trail = _append_error_trail(job, ErrorCategory.TIMEOUT.value, note, now)
        dead_letter.move_to_dead_letter(
            db, job, f"Exceeded max attempts while stale: {note}", ErrorCategory.TIMEOUT.value, trail, commit=False
        )
        commit_with_retry(db)
        dead_ids.append(job.id)
        if job.sync_request_id is not None:
            request_ids.add(job.sync_request_id)

    for request_id in request_ids:
        refresh_sync_request(db, request_id, now=now)
    if reset_ids or dead_ids:
        db.add(
            RecoveryLogEntry(
                recovery_type="stale_job_reset",
                jobs_affected=len(reset_ids) + len(dead_ids),
                details={"reset_job_ids": reset_ids, "dead_lettered_job_ids": dead_ids, "timeout_minutes": timeout},
                recovered_at=now,
            )
        )
        logger.warning(f"Stale-job sweep: reset {len(reset_ids)}, dead-lettered {len(dead_ids)}")
    commit_with_retry(db)
    return {"reset": len(reset_ids), "dead_lettered": len(dead_ids), "job_ids": reset_ids + dead_ids}


def get_sync_progress(db: Session, request_id: int) -> Optional[dict]:
    req = db.query(SyncRequest).filter(SyncRequest.id == request_id).first()
    if req is None:
        return None
    jobs = (
        db.query(SyncJob)
        .filter(SyncJob.sync_request_id == request_id)
        .order_by(SyncJob.chunk_index.asc(), SyncJob.id.asc())
        .all()
    )
    counts = Counter(j.status for j in jobs)
    return {
        "id": req.id,
        "mailbox_id": req.mailbox_id,
        "status": req.status,
        "sync_type": req.sync_type,
        "estimated_count": req.estimated_count,
        "total_chunks": req.total_chunks,
        "chunks_completed": req.chunks_completed,
        "progress": req.progress,
        "emails_processed": sum(j.emails_processed or 0 for j in jobs if j.status == JOB_COMPLETED),
        "emails_failed": sum(j.emails_failed or 0 for j in jobs if j.status == JOB_COMPLETED),
        "jobs": dict(counts),
        "error": req.error,
        "created_at": req.created_at,
        "completed_at": req.completed_at,
    }


def queue_summary(db: Session, now: Optional[datetime] = None) -> dict:
    now = now or utcnow()
    counts = dict(db.query(SyncJob.status, func.count(SyncJob.id)).group_by(SyncJob.status).all())
    oldest_pending = (
        db.query(func.min(SyncJob.created_at)).filter(SyncJob.status.in_(CLAIMABLE_STATUSES)).scalar()
    )
    cutoff = now - timedelta(minutes=settings.stale_job_timeout_minutes)
    stale = (
        db.query(func.count(SyncJob.id))
        .filter(SyncJob.status == JOB_PROCESSING, SyncJob.started_at < cutoff)
        .scalar()
    )
    return {
        "jobs": counts,
        "claimable": sum(counts.get(s, 0) for s in CLAIMABLE_STATUSES),
        "processing": counts.get(JOB_PROCESSING, 0),
        "stale_processing": stale or 0,
        "oldest_claimable_age_s": int((now - oldest_pending).total_seconds()) if oldest_pending else None,
        "dead_letters": db.query(func.count(DeadLetterEntry.id)).scalar() or 0,
    }


def next_work_in_seconds(db: Session, now: Optional[datetime] = None) -> Optional[int]:
    """0 if a job is claimable now, seconds until the earliest deferred job otherwise, None if the queue is empty."""
    now = now or utcnow()
    if peek_next_job(db, now=now) is not None:
        return 0
    earliest = (
        db.query(func.min(SyncJob.next_retry_at))
        .filter(SyncJob.status.in_(CLAIMABLE_STATUSES), SyncJob.worker_id.is_(None))
        .scalar()
    )
    if earliest is None:
        return None
    return max(1, int((earliest - now).total_seconds() + 0.999))
