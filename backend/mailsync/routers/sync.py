"""Sync API: POST sync-requests, GET progress, GET events (SSE), GET mailbox status."""
import asyncio
import json
import logging

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Session
from sse_starlette.sse import EventSourceResponse

from ..auth import require_api_key
from ..chunk_planner import create_sync_request, plan_sync_request
from ..circuit_breaker import SYNC_CIRCUIT
from ..database import SessionLocal, get_db, get_sync_db
from ..job_queue import get_sync_progress
from ..models import (
    CircuitBreakerState,
    Mailbox,
    RateLimitState,
    SyncRequest,
    REQUEST_COMPLETED,
    REQUEST_FAILED,
)
from ..rate_limiter import SYNC_OPERATION
from ..schemas import MailboxStatusResponse, SyncProgressResponse, SyncRequestCreate, SyncRequestResponse
from ..tasks import trigger_next_invocation

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["sync"])

SSE_POLL_INTERVAL_S = 1.0


@router.post("/sync-requests", response_model=SyncRequestResponse, status_code=201)
def create_request(
    body: SyncRequestCreate,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_sync_db),
    _: None = Depends(require_api_key),
):
    """Create a sync request, plan its jobs, and kick off worker invocations. Returns immediately."""
    if body.sync_type not in ("initial", "incremental"):
        raise HTTPException(status_code=400, detail="sync_type must be 'initial' or 'incremental'")
    mailbox = db.query(Mailbox).filter(Mailbox.id == body.mailbox_id).first()
    if mailbox is None:
        raise HTTPException(status_code=404, detail="Mailbox not found")
    try:
        req = create_sync_request(
            db,
            mailbox_id=mailbox.id,
            tenant_id=mailbox.tenant_id,
            sync_type=body.sync_type,
            source=body.source,
            date_from=body.date_from,
            date_to=body.date_to,
            estimated_count=body.estimated_count,
        )
        jobs = plan_sync_request(db, req, priority=body.priority)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    background_tasks.add_task(trigger_next_invocation, None, len(jobs))
    db.refresh(req)
    return req


@router.get("/sync-requests/{request_id}", response_model=SyncProgressResponse)
def sync_request_progress(request_id: int, db: Session = Depends(get_sync_db)):
    progress = get_sync_progress(db, request_id)
    if progress is None:
        raise HTTPException(status_code=404, detail="Sync request not found")
    return progress


async def _sse_generator(request_id: int):
    """Yield SSE events with request progress until it completes or fails."""
    while True:
        session = SessionLocal()
        try:
            state = get_sync_progress(session, request_id)
        finally:
            session.close()
        if state is None:
            yield {"event": "error", "data": json.dumps({"error": "Sync request not found"})}
            break
        yield {"data": json.dumps(state, default=str)}
        if state.get("status") in (REQUEST_COMPLETED, REQUEST_FAILED):
            break
        await asyncio.sleep(SSE_POLL_INTERVAL_S)


@router.get("/sync-requests/{request_id}/events")
async def sync_request_events(request_id: int):
    """SSE stream of a sync request's progress."""
    return EventSourceResponse(_sse_generator(request_id))


@router.get("/mailboxes/{mailbox_id}/status", response_model=MailboxStatusResponse)
async def mailbox_status(mailbox_id: int, db: AsyncSession = Depends(get_db)):
    """Connection state as seen by the user, plus breaker/throttle state for operators."""
    mailbox = (await db.execute(select(Mailbox).where(Mailbox.id == mailbox_id))).scalars().first()
    if mailbox is None:
        raise HTTPException(status_code=404, detail="Mailbox not found")
    circuit = (
        await db.execute(
            select(CircuitBreakerState).where(
                CircuitBreakerState.mailbox_id == mailbox_id,
                CircuitBreakerState.circuit_name == SYNC_CIRCUIT,
            )
        )
    ).scalars().first()
    throttle = (
        await db.execute(
            select(RateLimitState).where(
                RateLimitState.mailbox_id == mailbox_id,
                RateLimitState.operation == SYNC_OPERATION,
            )
        )
    ).scalars().first()
    latest = (
        await db.execute(
            select(SyncRequest)
            .where(SyncRequest.mailbox_id == mailbox_id)
            .order_by(SyncRequest.id.desc())
            .limit(1)
        )
    ).scalars().first()
    return MailboxStatusResponse(
        id=mailbox.id,
        email_address=mailbox.email_address,
        provider=mailbox.provider,
        connection_status=mailbox.connection_status,
        last_synced_at=mailbox.last_synced_at,
        last_error=mailbox.last_error,
        circuit_state=circuit.state if circuit else "closed",
        circuit_next_attempt_at=circuit.next_attempt_at if circuit else None,
        throttled_until=throttle.throttled_until if throttle else None,
        latest_request=SyncRequestResponse.model_validate(latest) if latest else None,
    )
