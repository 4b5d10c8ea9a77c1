from datetime import datetime, timedelta

from mailsync.circuit_breaker import (
    CLOSED,
    HALF_OPEN,
    OPEN,
    check_circuit_breaker,
    get_circuit_state,
    record_circuit_result,
)

NOW = datetime(2024, 3, 1, 12, 0, 0)
CIRCUIT = "mail_sync"


def _fail(db, mailbox_id, times, now=NOW):
    state = None
    for _ in range(times):
        state = record_circuit_result(db, mailbox_id, CIRCUIT, success=False, now=now)
    return state


def test_opens_after_threshold_consecutive_failures(db_session, mailbox, monkeypatch):
    from mailsync.config import settings
    monkeypatch.setattr(settings, "circuit_failure_threshold", 3)
    monkeypatch.setattr(settings, "circuit_cooldown_seconds", 300)

    assert _fail(db_session, mailbox.id, 2) == CLOSED
    assert check_circuit_breaker(db_session, mailbox.id, CIRCUIT, now=NOW).allowed

    assert _fail(db_session, mailbox.id, 1) == OPEN
    decision = check_circuit_breaker(db_session, mailbox.id, CIRCUIT, now=NOW + timedelta(seconds=100))
    assert decision.allowed is False
    assert decision.state == OPEN
    assert decision.reason == "circuit_open"
    assert decision.retry_after_seconds == 200


def test_success_resets_failure_count(db_session, mailbox, monkeypatch):
    from mailsync.config import settings
    monkeypatch.setattr(settings, "circuit_failure_threshold", 3)

    _fail(db_session, mailbox.id, 2)
    assert record_circuit_result(db_session, mailbox.id, CIRCUIT, success=True, now=NOW) == CLOSED
    assert _fail(db_session, mailbox.id, 2) == CLOSED
    row = get_circuit_state(db_session, mailbox.id, CIRCUIT)
    assert row.failure_count == 2
    assert row.total_successes == 1


def test_half_open_lets_exactly_one_probe_through(db_session, mailbox, monkeypatch):
    from mailsync.config import settings
    monkeypatch.setattr(settings, "circuit_failure_threshold", 1)
    monkeypatch.setattr(settings, "circuit_cooldown_seconds", 60)

    _fail(db_session, mailbox.id, 1)
    later = NOW + timedelta(seconds=61)
    first = check_circuit_breaker(db_session, mailbox.id, CIRCUIT, now=later)
    second = check_circuit_breaker(db_session, mailbox.id, CIRCUIT, now=later)
    assert first.allowed is True
    assert first.state == HALF_OPEN
    assert first.reason == "probe"
    assert second.allowed is False
    assert second.reason == "probe_in_flight"


def test_probe_success_closes(db_session, mailbox, monkeypatch):
    from mailsync.config import settings
    monkeypatch.setattr(settings, "circuit_failure_threshold", 1)
    monkeypatch.setattr(settings, "circuit_cooldown_seconds", 60)

    _fail(db_session, mailbox.id, 1)
    later = NOW + timedelta(seconds=61)
    assert check_circuit_breaker(db_session, mailbox.id, CIRCUIT, now=later).allowed
    assert record_circuit_result(db_session, mailbox.id, CIRCUIT, success=True, now=later) == CLOSED

    db_session.expire_all()
    row = get_circuit_state(db_session, mailbox.id, CIRCUIT)
    assert row.failure_count == 0
    assert row.next_attempt_at is None
    assert check_circuit_breaker(db_session, mailbox.id, CIRCUIT, now=later).allowed


def test_probe_failure_reopens_with_doubled_cooldown(db_session, mailbox, monkeypatch):
    from mailsync.config import settings
    monkeypatch.setattr(settings, "circuit_failure_threshold", 1)
    monkeypatch.setattr(settings, "circuit_cooldown_seconds", 60)
    monkeypatch.setattr(settings, "circuit_max_cooldown_seconds", 100)

    _fail(db_session, mailbox.id, 1)
    t1 = NOW + timedelta(seconds=61)
    assert check_circuit_breaker(db_session, mailbox.id, CIRCUIT, now=t1).allowed
    assert _fail(db_session, mailbox.id, 1, now=t1) == OPEN

    db_session.expire_all()
    row = get_circuit_state(db_session, mailbox.id, CIRCUIT)
    assert row.cooldown_seconds == 100  # doubled, capped
    assert row.next_attempt_at == t1 + timedelta(seconds=100)
    assert not check_circuit_breaker(db_session, mailbox.id, CIRCUIT, now=t1 + timedelta(seconds=50)).allowed


def test_abandoned_probe_expires(db_session, mailbox, monkeypatch):
    from mailsync.config import settings
    monkeypatch.setattr(settings, "circuit_failure_threshold", 1)
    monkeypatch.setattr(settings, "circuit_cooldown_seconds", 60)
    monkeypatch.setattr(settings, "stale_job_timeout_minutes", 10)

    _fail(db_session, mailbox.id, 1)
    t1 = NOW + timedelta(seconds=61)
    assert check_circuit_breaker(db_session, mailbox.id, CIRCUIT, now=t1).allowed
    assert not check_circuit_breaker(db_session, mailbox.id, CIRCUIT, now=t1 + timedelta(minutes=5)).allowed
    assert check_circuit_breaker(db_session, mailbox.id, CIRCUIT, now=t1 + timedelta(minutes=11)).allowed


def test_success_while_open_keeps_the_cooldown(db_session, mailbox, monkeypatch):
    from mailsync.config import settings
    monkeypatch.setattr(settings, "circuit_failure_threshold", 2)
    monkeypatch.setattr(settings, "circuit_cooldown_seconds", 60)

    assert _fail(db_session, mailbox.id, 2) == OPEN
    # a job claimed before the circuit tripped finishes afterwards
    assert record_circuit_result(db_session, mailbox.id, CIRCUIT, success=True, now=NOW + timedelta(seconds=1)) == OPEN

    db_session.expire_all()
    row = get_circuit_state(db_session, mailbox.id, CIRCUIT)
    assert row.total_successes == 1
    assert row.next_attempt_at == NOW + timedelta(seconds=60)
    decision = check_circuit_breaker(db_session, mailbox.id, CIRCUIT, now=NOW + timedelta(seconds=2))
    assert decision.allowed is False
    assert decision.state == OPEN


def test_failures_from_separate_sessions_all_count(session_factory, mailbox, monkeypatch):
    from mailsync.config import settings
    monkeypatch.setattr(settings, "circuit_failure_threshold", 2)

    first, second = session_factory(), session_factory()
    try:
        check_circuit_breaker(first, mailbox.id, CIRCUIT, now=NOW)
        check_circuit_breaker(second, mailbox.id, CIRCUIT, now=NOW)
        assert record_circuit_result(first, mailbox.id, CIRCUIT, success=False, now=NOW) == CLOSED
        assert record_circuit_result(second, mailbox.id, CIRCUIT, success=False, now=NOW) == OPEN

        first.expire_all()
        row = get_circuit_state(first, mailbox.id, CIRCUIT)
        assert row.failure_count == 2
        assert row.total_failures == 2
    finally:
        first.close()
        second.close()
