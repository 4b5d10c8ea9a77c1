"""Per-mailbox, per-operation rate limiting backed by the rate_limit_state table.

Two mechanisms share one row:
- a fixed one-minute request window (requests_per_window),
- an explicit throttle window (throttled_until) set when the provider answers 429.
"""
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .config import settings
from .database import commit_with_retry
from .models import RateLimitState, utcnow

logger = logging.getLogger(__name__)

WINDOW_SECONDS = 60
SYNC_OPERATION = "sync"


@dataclass
class RateLimitDecision:
    allowed: bool
    reason: Optional[str] = None
    retry_after_seconds: int = 0


def _seconds_until(later: datetime, now: datetime) -> int:
    return max(1, int(math.ceil((later - now).total_seconds())))


def _get_or_create_state(db: Session, mailbox_id: int, operation: str, now: datetime) -> RateLimitState:
    row = (
        db.query(RateLimitState)
        .filter(RateLimitState.mailbox_id == mailbox_id, RateLimitState.operation == operation)
        .first()
    )
    if row:
        return row
    try:
        with db.begin_nested():
            row = RateLimitState(
                mailbox_id=mailbox_id,
                operation=operation,
                window_start=now,
                window_requests=0,
                requests_per_window=settings.rate_limit_requests_per_minute,
            )
            db.add(row)
        return row
    except IntegrityError:
        # Another invocation created it first
        return (
            db.query(RateLimitState)
            .filter(RateLimitState.mailbox_id == mailbox_id, RateLimitState.operation == operation)
            .one()
        )


def check_rate_limit(
    db: Session,
    mailbox_id: int,
    operation: str = SYNC_OPERATION,
    now: Optional[datetime] = None,
) -> RateLimitDecision:
    """
    Check and admit one request. A denial carries retry_after_seconds; the caller
    defers the job to now + retry_after instead of counting a failed attempt.
    """
    now = now or utcnow()
    row = _get_or_create_state(db, mailbox_id, operation, now)

    if row.throttled_until and row.throttled_until > now:
        decision = RateLimitDecision(
            allowed=False,
            reason=row.throttle_reason or "provider_throttled",
            retry_after_seconds=_seconds_until(row.throttled_until, now),
        )
        commit_with_retry(db)
        return decision

    window_start = row.window_start
    if window_start is None or (now - window_start).total_seconds() >= WINDOW_SECONDS:
        db.query(RateLimitState).filter(RateLimitState.id == row.id).update(
            {RateLimitState.window_start: now, RateLimitState.window_requests: 0},
            synchronize_session=False,
        )
        window_start = now

    # Conditional increment so concurrent checks cannot exceed the window limit
    admitted = (
        db.query(RateLimitState)
        .filter(
            RateLimitState.id == row.id,
            RateLimitState.window_requests < RateLimitState.requests_per_window,
        )
        .update(
            {
                RateLimitState.window_requests: RateLimitState.window_requests + 1,
                RateLimitState.total_requests: RateLimitState.total_requests + 1,
                RateLimitState.last_request_at: now,
            },
            synchronize_session=False,
        )
    )
    commit_with_retry(db)
    db.expire(row)

    if admitted:
        return RateLimitDecision(allowed=True)

    retry_after = _seconds_until(window_start + timedelta(seconds=WINDOW_SECONDS), now)
    logger.info(f"Rate limit window exhausted for mailbox {mailbox_id} ({operation}); retry in {retry_after}s")
    return RateLimitDecision(allowed=False, reason="window_exhausted", retry_after_seconds=retry_after)


def record_rate_limit_result(
    db: Session,
    mailbox_id: int,
    operation: str = SYNC_OPERATION,
    success: bool = True,
    retry_after_seconds: Optional[int] = None,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> None:
    """Record the outcome of a provider call. A throttled failure opens the throttle window."""
    now = now or utcnow()
    row = _get_or_create_state(db, mailbox_id, operation, now)
    if success:
        if row.throttled_until and row.throttled_until <= now:
            row.throttled_until = None
            row.throttle_reason = None
    else:
        wait = retry_after_seconds if retry_after_seconds else settings.rate_limit_backoff_seconds
        until = now + timedelta(seconds=int(wait))
        if not row.throttled_until or row.throttled_until < until:
            row.throttled_until = until
        row.throttle_reason = reason or "provider_throttled"
        row.total_throttle_events = (row.total_throttle_events or 0) + 1
        logger.warning(f"Mailbox {mailbox_id} throttled for {operation} until {row.throttled_until.isoformat()}")
    commit_with_retry(db)
