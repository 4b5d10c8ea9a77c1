import itertools
from datetime import datetime

import pytest
from sqlalchemy.exc import SQLAlchemyError

from mailsync.checkpoints import load_checkpoint, write_checkpoint
from mailsync.errors import InvocationTimeoutError, ProviderPermissionError
from mailsync.job_queue import enqueue_job
from mailsync.mail_provider import AttachmentMetadata
from mailsync.models import EmailAttachment, EmailRecord, JOB_KIND_CHUNK, MAILBOX_NEEDS_RECONNECTION, utcnow
from mailsync.services.ingestion_worker import IngestionWorker

from conftest import FakeMailProvider, FakeTokenService, make_message


@pytest.fixture(autouse=True)
def paging(monkeypatch):
    from mailsync.config import settings
    monkeypatch.setattr(settings, "provider_page_size", 10)
    monkeypatch.setattr(settings, "page_fetch_delay_ms", 0)
    monkeypatch.setattr(settings, "upsert_batch_size", 20)
    return settings


def _worker(db, provider, token_service=None, deadline=float("inf"), clock=None):
    kwargs = {"clock": clock} if clock else {}
    return IngestionWorker(
        db, provider, token_service or FakeTokenService(), deadline=deadline, worker_id="test", **kwargs
    )


def _provider(n):
    return FakeMailProvider([make_message(i) for i in range(n)])


def test_regular_job_fetches_every_page(db_session, mailbox):
    provider = _provider(25)
    job = enqueue_job(db_session, mailbox.id, mailbox.tenant_id)
    result = _worker(db_session, provider).run(job)

    assert provider.fetch_calls == 3
    assert result.pages_fetched == 3
    assert result.emails_processed == 25
    assert result.resumed is False
    assert db_session.query(EmailRecord).count() == 25
    cp = load_checkpoint(db_session, job.id)
    assert cp.page_token is None
    assert cp.pages_completed == 3
    assert cp.messages_processed == 25
    assert cp.last_message_id == "m24"


def test_resume_from_checkpoint_skips_completed_pages(db_session, mailbox):
    provider = _provider(50)
    job = enqueue_job(db_session, mailbox.id, mailbox.tenant_id)
    write_checkpoint(db_session, job, "30", 3, 30, last_message_id="m29")

    result = _worker(db_session, provider).run(job)

    assert provider.fetch_calls == 2
    assert result.resumed is True
    assert result.pages_fetched == 2
    assert result.messages_seen == 50
    ids = {r.provider_message_id for r in db_session.query(EmailRecord).all()}
    assert ids == {f"m{i}" for i in range(30, 50)}
    assert load_checkpoint(db_session, job.id).pages_completed == 5


def test_finished_checkpoint_returns_without_fetching(db_session, mailbox):
    provider = _provider(10)
    job = enqueue_job(db_session, mailbox.id, mailbox.tenant_id)
    write_checkpoint(db_session, job, None, 1, 10)
    result = _worker(db_session, provider).run(job)
    assert provider.fetch_calls == 0
    assert result.emails_processed == 10


def test_chunk_job_reads_only_its_slice(db_session, mailbox):
    provider = _provider(50)
    job = enqueue_job(
        db_session, mailbox.id, mailbox.tenant_id, kind=JOB_KIND_CHUNK,
        chunk_index=3, total_chunks=5, start_offset=20, end_offset=29, chunk_size=10,
    )
    result = _worker(db_session, provider).run(job)

    assert provider.fetch_calls == 1
    assert provider.requested_filters[0].skip == 20
    assert result.emails_processed == 10
    ids = sorted(int(r.provider_message_id[1:]) for r in db_session.query(EmailRecord).all())
    assert ids == list(range(20, 30))


def test_chunk_quota_trims_the_last_page(db_session, mailbox, paging, monkeypatch):
    monkeypatch.setattr(paging, "provider_page_size", 4)
    provider = _provider(50)
    job = enqueue_job(
        db_session, mailbox.id, mailbox.tenant_id, kind=JOB_KIND_CHUNK,
        chunk_index=1, total_chunks=5, start_offset=0, end_offset=9, chunk_size=10,
    )
    result = _worker(db_session, provider).run(job)

    assert [f.max_results for f in provider.requested_filters] == [4, 4, 2]
    assert [f.skip for f in provider.requested_filters] == [0, 0, 0]
    assert result.messages_seen == 10
    assert db_session.query(EmailRecord).count() == 10


def test_request_date_range_is_passed_to_provider(db_session, mailbox):
    from mailsync.chunk_planner import create_sync_request, plan_sync_request

    req = create_sync_request(
        db_session, mailbox.id, date_from=datetime(2024, 1, 1), date_to=datetime(2024, 1, 31), estimated_count=5
    )
    job = plan_sync_request(db_session, req)[0]
    provider = _provider(5)
    _worker(db_session, provider).run(job)
    assert provider.requested_filters[0].date_from == datetime(2024, 1, 1)
    assert provider.requested_filters[0].date_to == datetime(2024, 1, 31)


def test_auth_failure_refreshes_token_once(db_session, mailbox):
    provider = _provider(5)
    provider.reject_tokens = {"valid-token"}
    tokens = FakeTokenService(new_token="fresh-token")
    result = _worker(db_session, provider, tokens).run(enqueue_job(db_session, mailbox.id, mailbox.tenant_id))
    assert tokens.calls == 1
    assert result.emails_processed == 5


def test_failed_refresh_raises_permission_error(db_session, mailbox):
    provider = _provider(5)
    provider.reject_tokens = {"valid-token"}
    job = enqueue_job(db_session, mailbox.id, mailbox.tenant_id)
    with pytest.raises(ProviderPermissionError):
        _worker(db_session, provider, FakeTokenService(success=False)).run(job)


def test_credential_rejected_after_refresh_raises_permission_error(db_session, mailbox):
    provider = _provider(5)
    provider.reject_tokens = {"valid-token", "fresh-token"}
    tokens = FakeTokenService()
    job = enqueue_job(db_session, mailbox.id, mailbox.tenant_id)
    with pytest.raises(ProviderPermissionError):
        _worker(db_session, provider, tokens).run(job)
    assert tokens.calls == 1


def test_expiring_token_is_refreshed_before_fetching(db_session, mailbox):
    mailbox.token_expires_at = utcnow()
    db_session.commit()
    provider = _provider(3)
    tokens = FakeTokenService()
    _worker(db_session, provider, tokens).run(enqueue_job(db_session, mailbox.id, mailbox.tenant_id))
    assert tokens.calls == 1


def test_mailbox_needing_reconnection_is_not_fetched(db_session, mailbox):
    mailbox.connection_status = MAILBOX_NEEDS_RECONNECTION
    db_session.commit()
    provider = _provider(3)
    with pytest.raises(ProviderPermissionError):
        _worker(db_session, provider).run(enqueue_job(db_session, mailbox.id, mailbox.tenant_id))
    assert provider.fetch_calls == 0


def test_deadline_stops_between_pages_and_keeps_progress(db_session, mailbox):
    provider = _provider(25)
    job = enqueue_job(db_session, mailbox.id, mailbox.tenant_id)
    # one clock read before each page and one per message: page 1 uses reads 0..10
    ticks = itertools.count()
    worker = _worker(db_session, provider, deadline=11, clock=lambda: next(ticks))

    with pytest.raises(InvocationTimeoutError):
        worker.run(job)
    assert provider.fetch_calls == 1
    assert db_session.query(EmailRecord).count() == 10
    cp = load_checkpoint(db_session, job.id)
    assert cp.page_token == "10"
    assert cp.pages_completed == 1


def test_failed_store_batch_is_counted_not_raised(db_session, mailbox, paging, monkeypatch):
    from mailsync.services import ingestion_worker
    from mailsync.services.email_store import upsert_email_batch

    monkeypatch.setattr(paging, "upsert_batch_size", 5)
    calls = {"n": 0}

    def flaky(db, tenant_id, mailbox_id, records):
        calls["n"] += 1
        if calls["n"] == 1:
            raise SQLAlchemyError("disk full")
        return upsert_email_batch(db, tenant_id, mailbox_id, records)

    monkeypatch.setattr(ingestion_worker, "upsert_email_batch", flaky)
    provider = _provider(10)
    result = _worker(db_session, provider).run(enqueue_job(db_session, mailbox.id, mailbox.tenant_id))

    assert result.emails_failed == 5
    assert result.emails_processed == 5
    assert db_session.query(EmailRecord).count() == 5


def test_attachments_are_linked_and_placeholders_synthesized(db_session, mailbox):
    messages = [
        make_message(0, has_attachments=True, body='<img src="cid:logo@x"><img src="cid:chart.png@x">'),
        make_message(1),
    ]
    provider = FakeMailProvider(messages)
    provider.attachments = {"m0": [AttachmentMetadata(filename="logo.png", content_id="<logo@x>")]}

    result = _worker(db_session, provider).run(enqueue_job(db_session, mailbox.id, mailbox.tenant_id))

    assert provider.attachment_calls == 1
    assert result.synthetic_attachments == 1
    rows = db_session.query(EmailAttachment).order_by(EmailAttachment.id).all()
    assert [(r.filename, r.is_synthetic) for r in rows] == [("logo.png", False), ("chart.png", True)]
