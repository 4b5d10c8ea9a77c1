"""Per-job checkpoints: the resume point of a job after its last durably persisted page."""
import hashlib
import json
import logging
from typing import Optional

from sqlalchemy.orm import Session

from .database import commit_with_retry
from .models import SyncCheckpoint, SyncJob, utcnow

logger = logging.getLogger(__name__)


def compute_state_hash(
    job_id: int,
    page_token: Optional[str],
    pages_completed: int,
    messages_processed: int,
    provider_sync_token: Optional[str],
    last_message_id: Optional[str],
) -> str:
    payload = json.dumps(
        {
            "job_id": job_id,
            "page_token": page_token,
            "pages_completed": pages_completed,
            "messages_processed": messages_processed,
            "provider_sync_token": provider_sync_token,
            "last_message_id": last_message_id,
        },
        sort_keys=True,
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def _hash_of(cp: SyncCheckpoint) -> str:
    return compute_state_hash(
        cp.job_id,
        cp.page_token,
        cp.pages_completed or 0,
        cp.messages_processed or 0,
        cp.provider_sync_token,
        cp.last_message_id,
    )


def write_checkpoint(
    db: Session,
    job: SyncJob,
    page_token: Optional[str],
    pages_completed: int,
    messages_processed: int,
    provider_sync_token: Optional[str] = None,
    last_message_id: Optional[str] = None,
) -> SyncCheckpoint:
    """Upsert the single checkpoint row for this job and commit it."""
    cp = db.query(SyncCheckpoint).filter(SyncCheckpoint.job_id == job.id).first()
    if cp is None:
        cp = SyncCheckpoint(job_id=job.id, mailbox_id=job.mailbox_id)
        db.add(cp)
    cp.page_token = page_token
    cp.pages_completed = pages_completed
    cp.messages_processed = messages_processed
    cp.provider_sync_token = provider_sync_token
    cp.last_message_id = last_message_id
    cp.state_hash = compute_state_hash(
        job.id, page_token, pages_completed, messages_processed, provider_sync_token, last_message_id
    )
    cp.is_active = True
    cp.updated_at = utcnow()
    commit_with_retry(db)
    return cp


def load_checkpoint(db: Session, job_id: int) -> Optional[SyncCheckpoint]:
    """Active checkpoint for the job, or None when missing or failing hash validation."""
    cp = (
        db.query(SyncCheckpoint)
        .filter(SyncCheckpoint.job_id == job_id, SyncCheckpoint.is_active.is_(True))
        .first()
    )
    if cp is None:
        return None
    if cp.state_hash != _hash_of(cp):
        logger.warning(f"Checkpoint for job {job_id} failed validation; restarting job from its start offset")
        return None
    return cp


def deactivate_checkpoint(db: Session, job_id: int) -> None:
    db.query(SyncCheckpoint).filter(SyncCheckpoint.job_id == job_id).update(
        {SyncCheckpoint.is_active: False, SyncCheckpoint.updated_at: utcnow()},
        synchronize_session=False,
    )
    commit_with_retry(db)
