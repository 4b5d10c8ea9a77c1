from datetime import datetime

from mailsync.models import EmailRecord
from mailsync.services.email_store import upsert_email_batch


def _record(pid, **overrides):
    rec = {
        "provider_message_id": pid,
        "thread_id": f"thr_{pid}",
        "provider_thread_id": f"gt_{pid}",
        "subject": f"Subject {pid}",
        "sender": "alice@example.com",
        "recipients": ["owner@example.com"],
        "body": "hello",
        "received_at": datetime(2024, 1, 1),
        "message_id_header": f"<{pid}@example.com>",
    }
    rec.update(overrides)
    return rec


def test_upsert_is_idempotent_on_provider_id(db_session, mailbox):
    first = upsert_email_batch(db_session, mailbox.tenant_id, mailbox.id, [_record("a"), _record("b")])
    assert (first.inserted, first.updated) == (2, 0)

    again = upsert_email_batch(
        db_session, mailbox.tenant_id, mailbox.id, [_record("a", subject="Edited"), _record("b")]
    )
    assert (again.inserted, again.updated) == (0, 2)
    assert db_session.query(EmailRecord).count() == 2
    row = db_session.query(EmailRecord).filter(EmailRecord.provider_message_id == "a").one()
    assert row.subject == "Edited"


def test_duplicates_within_one_batch_collapse(db_session, mailbox):
    result = upsert_email_batch(db_session, mailbox.tenant_id, mailbox.id, [_record("a"), _record("a")])
    assert result.inserted == 1
    assert result.updated == 1
    assert db_session.query(EmailRecord).count() == 1


def test_sent_message_matches_on_message_id_header(db_session, mailbox):
    # Row written at send time: no provider id yet, thread already assigned
    sent = EmailRecord(
        tenant_id=mailbox.tenant_id,
        mailbox_id=mailbox.id,
        message_id_header="<out-1@example.com>",
        thread_id="thr_conversation",
        direction="outbound",
        subject="Re: hello",
    )
    db_session.add(sent)
    db_session.commit()

    result = upsert_email_batch(
        db_session,
        mailbox.tenant_id,
        mailbox.id,
        [_record("gmail-out-1", message_id_header="<out-1@example.com>", thread_id="thr_other")],
    )
    assert (result.inserted, result.updated) == (0, 1)
    row = db_session.query(EmailRecord).one()
    assert row.provider_message_id == "gmail-out-1"
    assert row.provider_thread_id == "gt_gmail-out-1"
    assert row.thread_id == "thr_conversation"


def test_same_provider_id_in_another_tenant_is_separate(db_session, mailbox):
    from mailsync.models import Mailbox

    other = Mailbox(tenant_id="tenant-2", email_address="x@example.com")
    db_session.add(other)
    db_session.commit()
    upsert_email_batch(db_session, mailbox.tenant_id, mailbox.id, [_record("a")])
    upsert_email_batch(db_session, other.tenant_id, other.id, [_record("a")])
    assert db_session.query(EmailRecord).count() == 2
