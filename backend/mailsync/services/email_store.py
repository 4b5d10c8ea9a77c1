"""Idempotent email upserts keyed by (tenant, provider message id) with a message-id header fallback."""
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..database import commit_with_retry
from ..models import EmailRecord, utcnow

logger = logging.getLogger(__name__)

# Columns a sync is allowed to write
UPSERT_FIELDS = (
    "provider_message_id",
    "thread_id",
    "provider_thread_id",
    "subject",
    "sender",
    "recipients",
    "body",
    "received_at",
    "is_read",
    "direction",
    "message_id_header",
    "in_reply_to_header",
    "references_header",
    "has_attachments",
    "attachment_count",
)


@dataclass
class UpsertResult:
    inserted: int = 0
    updated: int = 0
    emails: List[EmailRecord] = field(default_factory=list)


def _by_provider_id(db: Session, tenant_id: str, provider_message_id: Optional[str]) -> Optional[EmailRecord]:
    if not provider_message_id:
        return None
    return (
        db.query(EmailRecord)
        .filter(EmailRecord.tenant_id == tenant_id, EmailRecord.provider_message_id == provider_message_id)
        .first()
    )


def _by_message_id_header(
    db: Session, tenant_id: str, mailbox_id: int, message_id_header: Optional[str]
) -> Optional[EmailRecord]:
    if not message_id_header:
        return None
    return (
        db.query(EmailRecord)
        .filter(
            EmailRecord.tenant_id == tenant_id,
            EmailRecord.mailbox_id == mailbox_id,
            EmailRecord.message_id_header == message_id_header,
        )
        .first()
    )


def _apply(row: EmailRecord, record: dict, keep_thread: bool = False) -> None:
    for key in UPSERT_FIELDS:
        if key not in record:
            continue
        if key == "thread_id" and keep_thread and row.thread_id:
            continue
        setattr(row, key, record[key])
    row.updated_at = utcnow()


def _find_existing(db: Session, tenant_id: str, mailbox_id: int, record: dict):
    """(row, matched_on_secondary_key) or (None, False)."""
    row = _by_provider_id(db, tenant_id, record.get("provider_message_id"))
    if row is not None:
        return row, False
    row = _by_message_id_header(db, tenant_id, mailbox_id, record.get("message_id_header"))
    if row is not None:
        return row, True
    return None, False


def upsert_email_batch(db: Session, tenant_id: str, mailbox_id: int, records: List[dict]) -> UpsertResult:
    """
    Upsert one bounded batch and commit it. Re-seeing a provider message id
    updates the existing row. A row matched only on its message-id header (a
    message this system sent itself) gets the provider ids filled in instead of
    a duplicate insert.
    """
    result = UpsertResult()
    for record in records:
        row, secondary = _find_existing(db, tenant_id, mailbox_id, record)
        if row is not None:
            _apply(row, record, keep_thread=secondary)
            if secondary:
                logger.debug(
                    f"Matched sent message {record.get('message_id_header')} to provider id "
                    f"{record.get('provider_message_id')}"
                )
            result.updated += 1
            result.emails.append(row)
            continue

        row = EmailRecord(tenant_id=tenant_id, mailbox_id=mailbox_id, created_at=utcnow())
        _apply(row, record)
        try:
            with db.begin_nested():
                db.add(row)
            result.inserted += 1
            result.emails.append(row)
        except IntegrityError:
            # Lost an insert race to another invocation; fall back to the stored row
            row, secondary = _find_existing(db, tenant_id, mailbox_id, record)
            if row is None:
                raise
            _apply(row, record, keep_thread=secondary)
            result.updated += 1
            result.emails.append(row)
    commit_with_retry(db)
    return result
