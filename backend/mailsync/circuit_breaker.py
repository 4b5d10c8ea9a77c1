"""Per-mailbox circuit breaker persisted in circuit_breaker_state.

closed -> open after failure_threshold consecutive failures.
open -> half_open once next_attempt_at has passed; exactly one probe is let through.
half_open -> closed on probe success, -> open with a doubled cool-down on probe failure.
"""
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .config import settings
from .database import commit_with_retry
from .models import CircuitBreakerState, utcnow

logger = logging.getLogger(__name__)

CLOSED = "closed"
OPEN = "open"
HALF_OPEN = "half_open"

SYNC_CIRCUIT = "mail_sync"


@dataclass
class CircuitDecision:
    allowed: bool
    state: str
    reason: Optional[str] = None
    retry_after_seconds: int = 0


def _seconds_until(later: datetime, now: datetime) -> int:
    return max(1, int(math.ceil((later - now).total_seconds())))


def get_circuit_state(db: Session, mailbox_id: int, circuit_name: str) -> Optional[CircuitBreakerState]:
    return (
        db.query(CircuitBreakerState)
        .filter(CircuitBreakerState.mailbox_id == mailbox_id, CircuitBreakerState.circuit_name == circuit_name)
        .first()
    )


def _get_or_create(db: Session, mailbox_id: int, circuit_name: str, now: datetime) -> CircuitBreakerState:
    row = get_circuit_state(db, mailbox_id, circuit_name)
    if row:
        return row
    try:
        with db.begin_nested():
            row = CircuitBreakerState(
                mailbox_id=mailbox_id,
                circuit_name=circuit_name,
                state=CLOSED,
                failure_count=0,
                failure_threshold=settings.circuit_failure_threshold,
                cooldown_seconds=settings.circuit_cooldown_seconds,
                last_transition_at=now,
            )
            db.add(row)
        return row
    except IntegrityError:
        return get_circuit_state(db, mailbox_id, circuit_name)


def _probe_expiry(now: datetime) -> datetime:
    return now - timedelta(minutes=settings.stale_job_timeout_minutes)


def check_circuit_breaker(
    db: Session,
    mailbox_id: int,
    circuit_name: str = SYNC_CIRCUIT,
    now: Optional[datetime] = None,
) -> CircuitDecision:
    now = now or utcnow()
    row = _get_or_create(db, mailbox_id, circuit_name, now)
    commit_with_retry(db)

    if row.state == CLOSED:
        return CircuitDecision(allowed=True, state=CLOSED)

    if row.state == OPEN:
        if row.next_attempt_at and row.next_attempt_at > now:
            return CircuitDecision(
                allowed=False,
                state=OPEN,
                reason="circuit_open",
                retry_after_seconds=_seconds_until(row.next_attempt_at, now),
            )
        won = (
            db.query(CircuitBreakerState)
            .filter(
                CircuitBreakerState.id == row.id,
                CircuitBreakerState.state == OPEN,
                or_(CircuitBreakerState.next_attempt_at.is_(None), CircuitBreakerState.next_attempt_at <= now),
            )
            .update(
                {
                    CircuitBreakerState.state: HALF_OPEN,
                    CircuitBreakerState.probe_started_at: now,
                    CircuitBreakerState.last_transition_at: now,
                },
                synchronize_session=False,
            )
        )
        commit_with_retry(db)
        db.expire(row)
        if won:
            logger.info(f"Circuit {circuit_name} for mailbox {mailbox_id}: open -> half_open (probe)")
            return CircuitDecision(allowed=True, state=HALF_OPEN, reason="probe")
        return CircuitDecision(
            allowed=False,
            state=HALF_OPEN,
            reason="probe_in_flight",
            retry_after_seconds=settings.stale_job_timeout_minutes * 60,
        )

    # half_open: one probe at a time; an abandoned probe expires with the stale-job timeout
    expiry = _probe_expiry(now)
    won = (
        db.query(CircuitBreakerState)
        .filter(
            CircuitBreakerState.id == row.id,
            CircuitBreakerState.state == HALF_OPEN,
            or_(CircuitBreakerState.probe_started_at.is_(None), CircuitBreakerState.probe_started_at <= expiry),
        )
        .update({CircuitBreakerState.probe_started_at: now}, synchronize_session=False)
    )
    commit_with_retry(db)
    db.expire(row)
    if won:
        return CircuitDecision(allowed=True, state=HALF_OPEN, reason="probe")
    started = row.probe_started_at or now
    return CircuitDecision(
        allowed=False,
        state=HALF_OPEN,
        reason="probe_in_flight",
        retry_after_seconds=_seconds_until(started + timedelta(minutes=settings.stale_job_timeout_minutes), now),
    )


def record_circuit_result(
    db: Session,
    mailbox_id: int,
    circuit_name: str = SYNC_CIRCUIT,
    success: bool = True,
    now: Optional[datetime] = None,
) -> str:
    """
    Apply one outcome to the breaker. Returns the resulting state.

    Counters are incremented in SQL and every transition is an UPDATE guarded by
    the state it leaves. Only a half-open probe closes the circuit; a success
    reported while open is counted and the cool-down stays in place.
    """
    now = now or utcnow()
    row = _get_or_create(db, mailbox_id, circuit_name, now)
    commit_with_retry(db)
    row_id = row.id
    previous = row.state
    cooldown = row.cooldown_seconds or settings.circuit_cooldown_seconds
    threshold = row.failure_threshold or settings.circuit_failure_threshold

    def _for_row(*criteria):
        return db.query(CircuitBreakerState).filter(CircuitBreakerState.id == row_id, *criteria)

    def _apply_success():
        _for_row().update(
            {CircuitBreakerState.total_successes: func.coalesce(CircuitBreakerState.total_successes, 0) + 1},
            synchronize_session=False,
        )
        _for_row(CircuitBreakerState.state == CLOSED).update(
            {CircuitBreakerState.failure_count: 0}, synchronize_session=False
        )
        _for_row(CircuitBreakerState.state == HALF_OPEN).update(
            {
                CircuitBreakerState.state: CLOSED,
                CircuitBreakerState.failure_count: 0,
                CircuitBreakerState.cooldown_seconds: settings.circuit_cooldown_seconds,
                CircuitBreakerState.opened_at: None,
                CircuitBreakerState.next_attempt_at: None,
                CircuitBreakerState.probe_started_at: None,
                CircuitBreakerState.last_transition_at: now,
            },
            synchronize_session=False,
        )

    def _apply_failure():
        _for_row().update(
            {
                CircuitBreakerState.total_failures: func.coalesce(CircuitBreakerState.total_failures, 0) + 1,
                CircuitBreakerState.failure_count: func.coalesce(CircuitBreakerState.failure_count, 0) + 1,
            },
            synchronize_session=False,
        )
        reopened = min(cooldown * 2, settings.circuit_max_cooldown_seconds)
        _for_row(CircuitBreakerState.state == HALF_OPEN).update(
            {
                CircuitBreakerState.state: OPEN,
                CircuitBreakerState.cooldown_seconds: reopened,
                CircuitBreakerState.opened_at: now,
                CircuitBreakerState.next_attempt_at: now + timedelta(seconds=reopened),
                CircuitBreakerState.probe_started_at: None,
                CircuitBreakerState.last_transition_at: now,
            },
            synchronize_session=False,
        )
        _for_row(CircuitBreakerState.state == CLOSED, CircuitBreakerState.failure_count >= threshold).update(
            {
                CircuitBreakerState.state: OPEN,
                CircuitBreakerState.opened_at: now,
                CircuitBreakerState.next_attempt_at: now + timedelta(seconds=cooldown),
                CircuitBreakerState.last_transition_at: now,
            },
            synchronize_session=False,
        )

    apply = _apply_success if success else _apply_failure
    apply()
    commit_with_retry(db, apply=apply)
    db.expire(row)
    state = db.query(CircuitBreakerState.state).filter(CircuitBreakerState.id == row_id).scalar()
    if state != previous:
        logger.warning(f"Circuit {circuit_name} for mailbox {mailbox_id}: {previous} -> {state}")
    return state
