"""Celery tasks: one sync invocation per task, stale-job sweep, request planning. DB session per task; state in DB."""
import logging
from typing import Optional

from celery import shared_task

from .celery_app import celery_app  # noqa: F401  shared tasks bind to the configured broker
from .chunk_planner import plan_sync_request as plan_request_jobs
from .config import settings
from .database import SessionLocal
from .job_queue import next_work_in_seconds, reset_stale_jobs
from .models import SyncRequest
from .services.sync_runner import run_invocation

logger = logging.getLogger(__name__)
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')


def trigger_next_invocation(countdown: Optional[int] = None, fanout: int = 1) -> int:
    """Push the next invocation(s) onto the broker. Returns how many were queued."""
    fanout = max(1, min(fanout, settings.max_parallel_invocations))
    for _ in range(fanout):
        if countdown:
            process_next_sync_job.apply_async(countdown=countdown)
        else:
            process_next_sync_job.apply_async()
    return fanout


@shared_task(bind=True, name="mailsync.tasks.process_next_sync_job")
def process_next_sync_job(self):
    """
    Run exactly one unit of work, then re-trigger: immediately if more work is
    claimable, after a countdown if the next job is deferred, not at all when idle.
    """
    db = SessionLocal()
    worker_id = f"celery-{getattr(getattr(self, 'request', None), 'id', None) or 'local'}"
    try:
        result = run_invocation(db, worker_id=worker_id)
    finally:
        db.close()
    if result.next_work_in is not None:
        trigger_next_invocation(countdown=result.next_work_in)
    return {
        "outcome": result.outcome,
        "job_id": result.job_id,
        "emails_processed": result.emails_processed,
        "next_work_in": result.next_work_in,
        "detail": result.detail,
    }


@shared_task(bind=True, name="mailsync.tasks.reclaim_stale_jobs")
def reclaim_stale_jobs(self):
    """
    Beat safety net: reclaim orphaned jobs, then restart the invocation chain
    whenever the queue still holds work, whether or not anything was reclaimed.
    """
    db = SessionLocal()
    try:
        summary = reset_stale_jobs(db)
        next_work_in = next_work_in_seconds(db)
    finally:
        db.close()
    if summary["reset"]:
        trigger_next_invocation(fanout=summary["reset"])
    elif next_work_in is not None:
        trigger_next_invocation(countdown=next_work_in)
    return summary


@shared_task(bind=True, name="mailsync.tasks.plan_sync_request")
def plan_sync_request(self, request_id: int, priority: int = 0):
    db = SessionLocal()
    try:
        req = db.query(SyncRequest).filter(SyncRequest.id == request_id).first()
        if req is None:
            raise ValueError(f"Sync request {request_id} not found")
        jobs = plan_request_jobs(db, req, priority=priority)
        count = len(jobs)
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
    trigger_next_invocation(fanout=count)
    return {"request_id": request_id, "jobs": count}
