"""One worker invocation: reclaim, pick, gate, claim, (convert,) ingest, report. Exactly one unit of work."""
import logging
import os
import socket
import time
import uuid
from dataclasses import dataclass
from typing import Callable, Optional

from sqlalchemy.orm import Session

from ..chunk_planner import convert_oversized_job, is_oversized
from ..circuit_breaker import SYNC_CIRCUIT, check_circuit_breaker
from ..config import settings
from ..job_queue import (
    claim_job,
    complete_job,
    defer_job,
    next_work_in_seconds,
    peek_next_job,
    reset_stale_jobs,
)
from ..mail_provider import MailProvider, TokenRefresher
from ..models import JOB_ARCHIVED, JOB_CIRCUIT_BLOCKED, JOB_COMPLETED, JOB_FAILED, JOB_RATE_LIMITED
from ..rate_limiter import SYNC_OPERATION, check_rate_limit
from .ingestion_worker import IngestionWorker

logger = logging.getLogger(__name__)

# Invocation outcomes
NO_WORK = "no_work"
DEFERRED = "deferred"
LOST_RACE = "lost_race"
CONVERTED = "converted"
COMPLETED = "completed"
RETRY_SCHEDULED = "retry_scheduled"
DEAD_LETTERED = "dead_lettered"


@dataclass
class InvocationResult:
    outcome: str
    job_id: Optional[int] = None
    worker_id: Optional[str] = None
    # Seconds until the queue has claimable work again; None when it is empty
    next_work_in: Optional[int] = None
    retry_after_seconds: Optional[int] = None
    emails_processed: int = 0
    emails_failed: int = 0
    detail: Optional[str] = None

    @property
    def more_work(self) -> bool:
        return self.next_work_in is not None


def new_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}-{uuid.uuid4().hex[:8]}"


def _default_provider() -> MailProvider:
    from ..gmail_service import GmailProvider
    return GmailProvider()


def _default_token_service() -> TokenRefresher:
    from ..token_service import TokenService
    return TokenService()


def run_invocation(
    db: Session,
    worker_id: Optional[str] = None,
    provider: Optional[MailProvider] = None,
    token_service: Optional[TokenRefresher] = None,
    budget_seconds: Optional[float] = None,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
    reclaim: bool = True,
) -> InvocationResult:
    """
    Process at most one job. The caller re-triggers the next invocation based on
    result.next_work_in (0 = immediately, N = after N seconds, None = idle).
    """
    worker_id = worker_id or new_worker_id()
    budget = budget_seconds if budget_seconds is not None else settings.invocation_budget_seconds
    deadline = clock() + budget

    if reclaim:
        reset_stale_jobs(db)

    candidate = peek_next_job(db)
    if candidate is None:
        return InvocationResult(outcome=NO_WORK, worker_id=worker_id, next_work_in=next_work_in_seconds(db))

    rate = check_rate_limit(db, candidate.mailbox_id, SYNC_OPERATION)
    if not rate.allowed:
        defer_job(db, candidate, JOB_RATE_LIMITED, rate.retry_after_seconds, rate.reason)
        return InvocationResult(
            outcome=DEFERRED,
            job_id=candidate.id,
            worker_id=worker_id,
            retry_after_seconds=rate.retry_after_seconds,
            next_work_in=next_work_in_seconds(db),
            detail=rate.reason,
        )

    circuit = check_circuit_breaker(db, candidate.mailbox_id, SYNC_CIRCUIT)
    if not circuit.allowed:
        defer_job(db, candidate, JOB_CIRCUIT_BLOCKED, circuit.retry_after_seconds, circuit.reason)
        return InvocationResult(
            outcome=DEFERRED,
            job_id=candidate.id,
            worker_id=worker_id,
            retry_after_seconds=circuit.retry_after_seconds,
            next_work_in=next_work_in_seconds(db),
            detail=circuit.reason,
        )

    job = claim_job(db, candidate.id, worker_id)
    if job is None:
        logger.info(f"[{worker_id}] Lost claim race for job {candidate.id}")
        return InvocationResult(outcome=LOST_RACE, job_id=candidate.id, worker_id=worker_id, next_work_in=0)

    if is_oversized(job):
        chunks = convert_oversized_job(db, job, worker_id)
        return InvocationResult(
            outcome=CONVERTED,
            job_id=job.id,
            worker_id=worker_id,
            next_work_in=next_work_in_seconds(db),
            detail=f"{len(chunks)} chunks",
        )

    job_id = job.id
    started = clock()
    worker = IngestionWorker(
        db,
        provider or _default_provider(),
        token_service or _default_token_service(),
        deadline=deadline,
        clock=clock,
        sleep=sleep,
        worker_id=worker_id,
    )
    try:
        ingested = worker.run(job)
    except Exception as e:
        db.rollback()
        elapsed_ms = int((clock() - started) * 1000)
        logger.warning(f"[{worker_id}] Job {job_id} failed: {type(e).__name__}: {e}")
        completion = complete_job(db, job_id, worker_id, JOB_FAILED, processing_time_ms=elapsed_ms, error=e)
        outcome = DEAD_LETTERED if completion.status == JOB_ARCHIVED else RETRY_SCHEDULED
        return InvocationResult(
            outcome=outcome,
            job_id=job_id,
            worker_id=worker_id,
            retry_after_seconds=completion.retry_after_seconds,
            next_work_in=next_work_in_seconds(db),
            detail=f"{completion.error_category}: {e}",
        )

    elapsed_ms = int((clock() - started) * 1000)
    complete_job(
        db,
        job_id,
        worker_id,
        JOB_COMPLETED,
        emails_processed=ingested.emails_processed,
        emails_failed=ingested.emails_failed,
        processing_time_ms=elapsed_ms,
        error_message=f"{ingested.emails_failed} emails failed to store" if ingested.emails_failed else None,
    )
    return InvocationResult(
        outcome=COMPLETED,
        job_id=job_id,
        worker_id=worker_id,
        emails_processed=ingested.emails_processed,
        emails_failed=ingested.emails_failed,
        next_work_in=next_work_in_seconds(db),
    )
