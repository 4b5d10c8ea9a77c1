"""Job engine API: claim-next (one inline invocation), reclaim-stale, dead letters, queue health."""
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from ..auth import require_api_key
from ..database import get_sync_db
from ..dead_letter import list_dead_letters, replay_dead_letter
from ..gmail_service import GmailProvider
from ..job_queue import queue_summary, reset_stale_jobs
from ..mail_provider import MailProvider, TokenRefresher
from ..schemas import (
    DeadLetterResponse,
    InvocationResponse,
    JobResponse,
    QueueHealthResponse,
    ReclaimResponse,
)
from ..services.sync_runner import run_invocation
from ..tasks import trigger_next_invocation
from ..token_service import TokenService

router = APIRouter(prefix="/api", tags=["jobs"])


def get_mail_provider() -> MailProvider:
    return GmailProvider()


def get_token_service() -> TokenRefresher:
    return TokenService()


@router.post("/jobs/claim-next", response_model=InvocationResponse)
def claim_next(
    background_tasks: BackgroundTasks,
    worker_id: Optional[str] = None,
    db: Session = Depends(get_sync_db),
    provider: MailProvider = Depends(get_mail_provider),
    token_service: TokenRefresher = Depends(get_token_service),
    _: None = Depends(require_api_key),
):
    """
    Run one invocation inline (same claim/complete protocol as the Celery worker).
    "no_work" is a normal outcome. Remaining work is handed to the task queue.
    """
    result = run_invocation(db, worker_id=worker_id, provider=provider, token_service=token_service)
    if result.next_work_in is not None:
        background_tasks.add_task(trigger_next_invocation, result.next_work_in)
    return InvocationResponse(
        outcome=result.outcome,
        job_id=result.job_id,
        worker_id=result.worker_id,
        next_work_in=result.next_work_in,
        retry_after_seconds=result.retry_after_seconds,
        emails_processed=result.emails_processed,
        emails_failed=result.emails_failed,
        detail=result.detail,
    )


@router.post("/jobs/reclaim-stale", response_model=ReclaimResponse)
def reclaim_stale(
    timeout_minutes: Optional[int] = Query(default=None, ge=1),
    db: Session = Depends(get_sync_db),
    _: None = Depends(require_api_key),
):
    return reset_stale_jobs(db, timeout_minutes=timeout_minutes)


@router.get("/dead-letters", response_model=List[DeadLetterResponse])
def dead_letters(
    mailbox_id: Optional[int] = None,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_sync_db),
    _: None = Depends(require_api_key),
):
    return list_dead_letters(db, mailbox_id=mailbox_id, limit=limit, offset=offset)


@router.post("/dead-letters/{entry_id}/replay", response_model=JobResponse, status_code=201)
def replay(
    entry_id: int,
    background_tasks: BackgroundTasks,
    priority: Optional[int] = None,
    db: Session = Depends(get_sync_db),
    _: None = Depends(require_api_key),
):
    job = replay_dead_letter(db, entry_id, priority=priority)
    if job is None:
        raise HTTPException(status_code=404, detail="Dead letter entry not found")
    background_tasks.add_task(trigger_next_invocation)
    return job


@router.get("/queue/health", response_model=QueueHealthResponse)
def queue_health(db: Session = Depends(get_sync_db), _: None = Depends(require_api_key)):
    return queue_summary(db)
