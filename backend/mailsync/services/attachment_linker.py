"""Link provider attachment metadata to emails via cid: references, with placeholder synthesis for leftovers."""
import logging
import mimetypes
import re
from typing import Iterable, List, Optional, Tuple
from urllib.parse import unquote

from sqlalchemy.orm import Session

from ..config import settings
from ..database import commit_with_retry
from ..mail_provider import AttachmentMetadata
from ..models import EmailAttachment, EmailRecord, utcnow

logger = logging.getLogger(__name__)

_CID_RE = re.compile(r"""cid:([^"'\s>)]+)""", re.I)


def _clean_cid(value: Optional[str]) -> str:
    return unquote((value or "").strip().strip("<>")).strip().lower()


def extract_content_ids(body: Optional[str]) -> List[str]:
    """Unique cid: references in body order, normalized (no brackets, lower-case)."""
    seen = []
    for raw in _CID_RE.findall(body or ""):
        cid = _clean_cid(raw)
        if cid and cid not in seen:
            seen.append(cid)
    return seen


def _existing(db: Session, email: EmailRecord) -> List[EmailAttachment]:
    return db.query(EmailAttachment).filter(EmailAttachment.email_id == email.id).all()


def link_attachments(
    db: Session,
    email: EmailRecord,
    metadata: Iterable[AttachmentMetadata],
    commit: bool = False,
) -> Tuple[int, List[str]]:
    """
    Store attachment rows for one email. Real metadata replaces any synthetic
    placeholder for the same content id. Returns (rows added, cid references
    left without a matching attachment).
    """
    metadata = list(metadata)
    current = _existing(db, email)
    added = 0
    for meta in metadata:
        cid = _clean_cid(meta.content_id) or None
        duplicate = next(
            (
                a for a in current
                if not a.is_synthetic
                and (
                    (meta.provider_attachment_id and a.provider_attachment_id == meta.provider_attachment_id)
                    or (a.filename == meta.filename and (a.content_id or None) == cid)
                )
            ),
            None,
        )
        if duplicate is not None:
            continue
        for placeholder in [a for a in current if a.is_synthetic and cid and a.content_id == cid]:
            db.delete(placeholder)
            current.remove(placeholder)
        att = EmailAttachment(
            email_id=email.id,
            tenant_id=email.tenant_id,
            content_id=cid,
            filename=meta.filename,
            size=meta.size,
            mime_type=meta.mime_type,
            is_inline=bool(meta.is_inline or cid),
            is_synthetic=False,
            provider_attachment_id=meta.provider_attachment_id,
            created_at=utcnow(),
        )
        db.add(att)
        current.append(att)
        added += 1

    matched = {a.content_id for a in current if a.content_id and not a.is_synthetic}
    unmatched = [cid for cid in extract_content_ids(email.body) if cid not in matched]
    email.attachment_count = len([a for a in current if not a.is_synthetic])
    email.has_attachments = bool(email.has_attachments or email.attachment_count)
    if commit:
        commit_with_retry(db)
    return added, unmatched


def needs_synthetic_pass(email: EmailRecord, unmatched_cids: List[str]) -> bool:
    """Flagged as having attachments, yet some cid: reference matched nothing."""
    return bool(email.has_attachments and unmatched_cids)


def _guess_placeholder(cid: str, position: int) -> Tuple[str, str]:
    local = cid.split("@", 1)[0]
    guessed, _ = mimetypes.guess_type(local)
    if guessed:
        return local, guessed
    return f"inline-image-{position}.png", "image/png"


def synthesize_placeholders(db: Session, pending: List[Tuple[EmailRecord, List[str]]]) -> int:
    """
    Secondary pass: create best-effort placeholder attachments for cid references
    that had no provider metadata, capped per email. Idempotent per content id.
    """
    cap = settings.max_synthetic_attachments_per_email
    created = 0
    for email, cids in pending:
        have = {a.content_id for a in _existing(db, email) if a.content_id}
        todo = [c for c in cids if c not in have][:cap]
        for position, cid in enumerate(todo, 1):
            filename, mime_type = _guess_placeholder(cid, position)
            db.add(
                EmailAttachment(
                    email_id=email.id,
                    tenant_id=email.tenant_id,
                    content_id=cid,
                    filename=filename,
                    mime_type=mime_type,
                    is_inline=True,
                    is_synthetic=True,
                    created_at=utcnow(),
                )
            )
            created += 1
        if len(cids) > cap:
            logger.info(f"Email {email.id}: {len(cids)} unmatched cid references, synthesized {len(todo)}")
    if created:
        commit_with_retry(db)
    return created
