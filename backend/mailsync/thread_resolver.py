"""Threading reconciler: resolve a stable conversation id for a synced message.

Preference order:
1. message-id already known (re-sync of a stored message)
2. in-reply-to
3. references, newest first
4. reverse lookup: stored messages that reply to / reference this one
5. normalized subject + overlapping participants within THREAD_SUBJECT_WINDOW_DAYS
6. provider-native thread id of an already stored message
7. the provider-native thread id itself, else a fresh id
"""
import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from email.utils import getaddresses
from typing import Dict, List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from .mail_provider import ProviderMessage
from .models import EmailRecord

logger = logging.getLogger(__name__)

EMBEDDED_START = "<!--[RFC2822-THREADING-HEADERS-START]-->"
EMBEDDED_END = "<!--[RFC2822-THREADING-HEADERS-END]-->"
THREAD_SUBJECT_WINDOW_DAYS = 30

_MSGID_RE = re.compile(r"<[^<>\s]+>")
_SUBJECT_PREFIX_RE = re.compile(r"^\s*((re|fw|fwd|aw|sv|antw)(\[\d+\])?\s*:\s*)+", re.I)
_EMBEDDED_RE = re.compile(re.escape(EMBEDDED_START) + r"(.*?)" + re.escape(EMBEDDED_END), re.S)
_EMBEDDED_KEYS = {
    "message-id": "message_id",
    "in-reply-to": "in_reply_to",
    "references": "references",
    "thread-topic": "thread_topic",
    "thread-index": "thread_index",
}


@dataclass
class ThreadingHeaders:
    message_id: Optional[str] = None
    in_reply_to: Optional[str] = None
    references: List[str] = field(default_factory=list)
    thread_topic: Optional[str] = None
    thread_index: Optional[str] = None

    @property
    def references_header(self) -> Optional[str]:
        return " ".join(self.references) if self.references else None


def normalize_message_id(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    found = _MSGID_RE.search(value)
    if found:
        return found.group(0)
    value = value.strip()
    return f"<{value}>" if value else None


def parse_references(value: Optional[str]) -> List[str]:
    if not value:
        return []
    found = _MSGID_RE.findall(value)
    if found:
        return found
    return [f"<{v}>" for v in value.split() if v]


def parse_embedded_headers(body: Optional[str]) -> Dict[str, str]:
    """Threading headers carried inside the body; intermediaries may strip the transport ones."""
    if not body:
        return {}
    match = _EMBEDDED_RE.search(body)
    if not match:
        return {}
    out = {}
    for line in re.split(r"<br\s*/?>|\r?\n", match.group(1)):
        name, sep, value = line.partition(":")
        key = _EMBEDDED_KEYS.get(name.strip().lower())
        if sep and key and value.strip():
            out[key] = value.strip()
    return out


def extract_threading_headers(message: ProviderMessage) -> ThreadingHeaders:
    embedded = parse_embedded_headers(message.body)
    transport = message.headers or {}

    def pick(key: str, header: str) -> Optional[str]:
        return embedded.get(key) or transport.get(header)

    return ThreadingHeaders(
        message_id=normalize_message_id(pick("message_id", "message-id")),
        in_reply_to=normalize_message_id(pick("in_reply_to", "in-reply-to")),
        references=parse_references(pick("references", "references")),
        thread_topic=pick("thread_topic", "thread-topic"),
        thread_index=pick("thread_index", "thread-index"),
    )


def normalize_subject(subject: Optional[str]) -> str:
    s = _SUBJECT_PREFIX_RE.sub("", subject or "")
    return re.sub(r"\s+", " ", s).strip().lower()


def participants(sender: Optional[str], recipients: Optional[List[str]]) -> set:
    values = [sender or ""] + list(recipients or [])
    return {addr.lower() for _, addr in getaddresses(values) if addr}


def new_thread_id() -> str:
    return f"thr_{uuid.uuid4().hex}"


class ThreadResolver:
    """
    Resolves thread ids for one mailbox. Keeps a map of messages resolved in the
    current batch so replies within a page thread together before they are stored.
    """

    def __init__(self, db: Session, tenant_id: str, mailbox_id: int):
        self.db = db
        self.tenant_id = tenant_id
        self.mailbox_id = mailbox_id
        self._by_message_id: Dict[str, str] = {}
        self._by_provider_thread: Dict[str, str] = {}

    def _scoped(self):
        return self.db.query(EmailRecord.thread_id).filter(
            EmailRecord.tenant_id == self.tenant_id,
            EmailRecord.mailbox_id == self.mailbox_id,
            EmailRecord.thread_id.isnot(None),
        )

    def _thread_of(self, message_id: Optional[str]) -> Optional[str]:
        if not message_id:
            return None
        if message_id in self._by_message_id:
            return self._by_message_id[message_id]
        row = self._scoped().filter(EmailRecord.message_id_header == message_id).first()
        return row.thread_id if row else None

    def _reverse_lookup(self, message_id: Optional[str]) -> Optional[str]:
        if not message_id:
            return None
        row = (
            self._scoped()
            .filter(
                or_(
                    EmailRecord.in_reply_to_header == message_id,
                    EmailRecord.references_header.contains(message_id),
                )
            )
            .first()
        )
        return row.thread_id if row else None

    def _subject_match(self, message: ProviderMessage, headers: ThreadingHeaders) -> Optional[str]:
        subject = normalize_subject(headers.thread_topic or message.subject)
        if len(subject) < 3:
            return None
        people = participants(message.sender, message.recipients)
        if not people:
            return None
        q = self.db.query(EmailRecord).filter(
            EmailRecord.tenant_id == self.tenant_id,
            EmailRecord.mailbox_id == self.mailbox_id,
            EmailRecord.thread_id.isnot(None),
        )
        if message.received_at:
            window = timedelta(days=THREAD_SUBJECT_WINDOW_DAYS)
            q = q.filter(
                EmailRecord.received_at >= message.received_at - window,
                EmailRecord.received_at <= message.received_at + window,
            )
        for rec in q.order_by(EmailRecord.received_at.desc()).limit(200):
            if normalize_subject(rec.subject) != subject:
                continue
            if people & participants(rec.sender, rec.recipients):
                return rec.thread_id
        return None

    def _provider_thread(self, provider_thread_id: Optional[str]) -> Optional[str]:
        if not provider_thread_id:
            return None
        if provider_thread_id in self._by_provider_thread:
            return self._by_provider_thread[provider_thread_id]
        row = self._scoped().filter(EmailRecord.provider_thread_id == provider_thread_id).first()
        return row.thread_id if row else None

    def resolve(self, message: ProviderMessage, headers: ThreadingHeaders) -> str:
        thread_id = (
            self._thread_of(headers.message_id)
            or self._thread_of(headers.in_reply_to)
            or next((t for t in (self._thread_of(r) for r in reversed(headers.references)) if t), None)
            or self._reverse_lookup(headers.message_id)
            or self._subject_match(message, headers)
            or self._provider_thread(message.provider_thread_id)
            or message.provider_thread_id
            or new_thread_id()
        )
        if headers.message_id:
            self._by_message_id[headers.message_id] = thread_id
        if message.provider_thread_id:
            self._by_provider_thread.setdefault(message.provider_thread_id, thread_id)
        return thread_id


def resolve_or_create_thread_id(
    db: Session,
    tenant_id: str,
    mailbox_id: int,
    message: ProviderMessage,
    headers: Optional[ThreadingHeaders] = None,
) -> str:
    """One-off resolution outside a batch."""
    headers = headers or extract_threading_headers(message)
    return ThreadResolver(db, tenant_id, mailbox_id).resolve(message, headers)
