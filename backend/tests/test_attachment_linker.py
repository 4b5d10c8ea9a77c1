from mailsync.mail_provider import AttachmentMetadata
from mailsync.models import EmailAttachment, EmailRecord
from mailsync.services.attachment_linker import (
    extract_content_ids,
    link_attachments,
    needs_synthetic_pass,
    synthesize_placeholders,
)


def _email(db, mailbox, body, has_attachments=True):
    email = EmailRecord(
        tenant_id=mailbox.tenant_id,
        mailbox_id=mailbox.id,
        provider_message_id="m1",
        body=body,
        has_attachments=has_attachments,
    )
    db.add(email)
    db.commit()
    return email


def test_extract_content_ids_normalizes_and_dedupes():
    body = (
        '<img src="cid:Logo@Corp.COM"> <img src=\'cid:chart%401.png\'>'
        '<img src="cid:logo@corp.com"> url(cid:bg.gif)'
    )
    assert extract_content_ids(body) == ["logo@corp.com", "chart@1.png", "bg.gif"]
    assert extract_content_ids(None) == []


def test_link_matches_cid_references(db_session, mailbox):
    email = _email(db_session, mailbox, '<img src="cid:logo@corp"><img src="cid:missing@corp">')
    metadata = [
        AttachmentMetadata(filename="logo.png", content_id="<logo@corp>", mime_type="image/png", size=10),
        AttachmentMetadata(filename="report.pdf", mime_type="application/pdf", provider_attachment_id="att-2"),
    ]
    added, unmatched = link_attachments(db_session, email, metadata, commit=True)
    assert added == 2
    assert unmatched == ["missing@corp"]
    assert email.attachment_count == 2
    logo = db_session.query(EmailAttachment).filter(EmailAttachment.content_id == "logo@corp").one()
    assert logo.is_inline is True

    # Re-linking the same metadata adds nothing
    added, _ = link_attachments(db_session, email, metadata, commit=True)
    assert added == 0
    assert db_session.query(EmailAttachment).count() == 2


def test_needs_synthetic_pass():
    flagged = EmailRecord(has_attachments=True)
    plain = EmailRecord(has_attachments=False)
    assert needs_synthetic_pass(flagged, ["a@b"]) is True
    assert needs_synthetic_pass(flagged, []) is False
    assert needs_synthetic_pass(plain, ["a@b"]) is False


def test_synthesized_placeholders_are_capped_and_idempotent(db_session, mailbox, monkeypatch):
    from mailsync.config import settings
    monkeypatch.setattr(settings, "max_synthetic_attachments_per_email", 2)

    email = _email(db_session, mailbox, "")
    cids = ["chart.png@x", "ii_abc123", "third@x"]
    assert synthesize_placeholders(db_session, [(email, cids)]) == 2
    assert synthesize_placeholders(db_session, [(email, cids[:2])]) == 0

    rows = db_session.query(EmailAttachment).order_by(EmailAttachment.id).all()
    assert [(r.filename, r.mime_type, r.is_synthetic) for r in rows] == [
        ("chart.png", "image/png", True),
        ("inline-image-2.png", "image/png", True),
    ]


def test_real_metadata_replaces_placeholder(db_session, mailbox):
    email = _email(db_session, mailbox, '<img src="cid:pic@x">')
    synthesize_placeholders(db_session, [(email, ["pic@x"])])

    added, unmatched = link_attachments(
        db_session, email, [AttachmentMetadata(filename="photo.jpg", content_id="pic@x")], commit=True
    )
    assert added == 1
    assert unmatched == []
    rows = db_session.query(EmailAttachment).all()
    assert len(rows) == 1
    assert rows[0].filename == "photo.jpg"
    assert rows[0].is_synthetic is False
