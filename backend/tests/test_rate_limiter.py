from datetime import datetime, timedelta

from mailsync.models import RateLimitState
from mailsync.rate_limiter import SYNC_OPERATION, check_rate_limit, record_rate_limit_result


NOW = datetime(2024, 3, 1, 12, 0, 0)


def _state(db, mailbox_id):
    db.expire_all()
    return (
        db.query(RateLimitState)
        .filter(RateLimitState.mailbox_id == mailbox_id, RateLimitState.operation == SYNC_OPERATION)
        .one()
    )


def test_window_admits_up_to_limit_then_denies(db_session, mailbox, monkeypatch):
    from mailsync.config import settings
    monkeypatch.setattr(settings, "rate_limit_requests_per_minute", 3)

    decisions = [check_rate_limit(db_session, mailbox.id, now=NOW + timedelta(seconds=i)) for i in range(4)]
    assert [d.allowed for d in decisions] == [True, True, True, False]
    denied = decisions[-1]
    assert denied.reason == "window_exhausted"
    # window opened at NOW, fourth check at NOW+3s
    assert denied.retry_after_seconds == 57

    row = _state(db_session, mailbox.id)
    assert row.window_requests == 3
    assert row.total_requests == 3


def test_window_resets_after_a_minute(db_session, mailbox, monkeypatch):
    from mailsync.config import settings
    monkeypatch.setattr(settings, "rate_limit_requests_per_minute", 1)

    assert check_rate_limit(db_session, mailbox.id, now=NOW).allowed
    assert not check_rate_limit(db_session, mailbox.id, now=NOW + timedelta(seconds=30)).allowed
    assert check_rate_limit(db_session, mailbox.id, now=NOW + timedelta(seconds=61)).allowed


def test_provider_throttle_defers_until_retry_after(db_session, mailbox):
    record_rate_limit_result(
        db_session, mailbox.id, success=False, retry_after_seconds=30, reason="429 from provider", now=NOW
    )
    decision = check_rate_limit(db_session, mailbox.id, now=NOW + timedelta(seconds=1))
    assert decision.allowed is False
    assert decision.reason == "429 from provider"
    assert decision.retry_after_seconds == 29

    row = _state(db_session, mailbox.id)
    assert row.throttled_until == NOW + timedelta(seconds=30)
    assert row.total_throttle_events == 1

    assert check_rate_limit(db_session, mailbox.id, now=NOW + timedelta(seconds=31)).allowed


def test_throttle_without_retry_after_uses_default_backoff(db_session, mailbox, monkeypatch):
    from mailsync.config import settings
    monkeypatch.setattr(settings, "rate_limit_backoff_seconds", 90)

    record_rate_limit_result(db_session, mailbox.id, success=False, now=NOW)
    row = _state(db_session, mailbox.id)
    assert row.throttled_until == NOW + timedelta(seconds=90)
    assert row.throttle_reason == "provider_throttled"


def test_success_clears_expired_throttle(db_session, mailbox):
    record_rate_limit_result(db_session, mailbox.id, success=False, retry_after_seconds=10, now=NOW)
    record_rate_limit_result(db_session, mailbox.id, success=True, now=NOW + timedelta(seconds=5))
    assert _state(db_session, mailbox.id).throttled_until is not None

    record_rate_limit_result(db_session, mailbox.id, success=True, now=NOW + timedelta(seconds=11))
    row = _state(db_session, mailbox.id)
    assert row.throttled_until is None
    assert row.throttle_reason is None


def test_limits_are_per_mailbox(db_session, mailbox, monkeypatch):
    from mailsync.config import settings
    from mailsync.models import Mailbox
    monkeypatch.setattr(settings, "rate_limit_requests_per_minute", 1)

    other = Mailbox(tenant_id="tenant-2", email_address="other@example.com")
    db_session.add(other)
    db_session.commit()

    assert check_rate_limit(db_session, mailbox.id, now=NOW).allowed
    assert not check_rate_limit(db_session, mailbox.id, now=NOW).allowed
    assert check_rate_limit(db_session, other.id, now=NOW).allowed
