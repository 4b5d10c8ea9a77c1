"""Ingestion worker: fetch one job's slice of a mailbox page by page and persist it idempotently."""
import logging
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..checkpoints import load_checkpoint, write_checkpoint
from ..config import settings
from ..database import chunk_list
from ..errors import (
    InvocationTimeoutError,
    ProviderAuthError,
    ProviderNotFoundError,
    ProviderPermissionError,
)
from ..mail_provider import MailCredential, MailProvider, MessageFilter, MessagePage, ProviderMessage, TokenRefresher
from ..models import EmailRecord, Mailbox, SyncJob, MAILBOX_NEEDS_RECONNECTION, utcnow
from ..thread_resolver import ThreadResolver, extract_threading_headers
from ..token_service import credential_for
from .attachment_linker import extract_content_ids, link_attachments, needs_synthetic_pass, synthesize_placeholders
from .email_store import upsert_email_batch

logger = logging.getLogger(__name__)

# Refresh proactively when the stored token expires within this window
TOKEN_EXPIRY_SKEW = timedelta(seconds=60)


@dataclass
class IngestionResult:
    emails_processed: int = 0
    emails_failed: int = 0
    pages_fetched: int = 0
    messages_seen: int = 0
    synthetic_attachments: int = 0
    resumed: bool = False


class IngestionWorker:
    """
    Runs the body of one claimed job. Raises typed SyncErrors for the caller to
    report through complete_job; a failed store batch is logged and counted instead.
    """

    def __init__(
        self,
        db: Session,
        provider: MailProvider,
        token_service: TokenRefresher,
        deadline: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        worker_id: str = "worker",
    ):
        self.db = db
        self.provider = provider
        self.token_service = token_service
        self.deadline = deadline
        self.clock = clock
        self.sleep = sleep
        self.worker_id = worker_id
        self.credential: Optional[MailCredential] = None
        self._refreshed = False

    # Credential handling

    def _refresh_credential(self, mailbox_id: int, cause: Optional[BaseException] = None) -> None:
        if self._refreshed:
            raise ProviderPermissionError("Credential rejected after refresh") from cause
        self._refreshed = True
        result = self.token_service.refresh(mailbox_id)
        if not result.success or result.credential is None:
            raise ProviderPermissionError(f"Token refresh failed: {result.error or 'no credential returned'}") from cause
        self.credential = result.credential

    def _with_refresh(self, mailbox_id: int, fn):
        try:
            return fn(self.credential)
        except ProviderAuthError as e:
            logger.info(f"[{self.worker_id}] Auth failure for mailbox {mailbox_id}; refreshing token once")
            self._refresh_credential(mailbox_id, e)
            try:
                return fn(self.credential)
            except ProviderAuthError as e2:
                raise ProviderPermissionError(f"Credential rejected after refresh: {e2}") from e2

    def _check_deadline(self, job: SyncJob) -> None:
        if self.clock() >= self.deadline:
            raise InvocationTimeoutError(f"Invocation budget exhausted while processing job {job.id}")

    # Per-page work

    def _to_record(self, resolver: ThreadResolver, message: ProviderMessage) -> dict:
        headers = extract_threading_headers(message)
        return {
            "provider_message_id": message.provider_message_id,
            "thread_id": resolver.resolve(message, headers),
            "provider_thread_id": message.provider_thread_id,
            "subject": message.subject,
            "sender": message.sender,
            "recipients": list(message.recipients or []),
            "body": message.body,
            "received_at": message.received_at,
            "is_read": message.is_read,
            "direction": message.direction,
            "message_id_header": headers.message_id,
            "in_reply_to_header": headers.in_reply_to,
            "references_header": headers.references_header,
            "has_attachments": bool(message.has_attachments),
        }

    def _store(self, job: SyncJob, records: List[dict]) -> Tuple[List[EmailRecord], int]:
        stored: List[EmailRecord] = []
        failed = 0
        for batch in chunk_list(records, settings.upsert_batch_size):
            try:
                stored.extend(upsert_email_batch(self.db, job.tenant_id, job.mailbox_id, batch).emails)
            except SQLAlchemyError as e:
                self.db.rollback()
                failed += len(batch)
                logger.error(f"[{self.worker_id}] Job {job.id}: batch of {len(batch)} emails failed to store: {e}")
        return stored, failed

    def _link(self, job: SyncJob, stored: List[EmailRecord]) -> int:
        pending = []
        for email in stored:
            cids = extract_content_ids(email.body)
            if not email.has_attachments and not cids:
                continue
            try:
                metadata = self._with_refresh(
                    job.mailbox_id,
                    lambda cred, mid=email.provider_message_id: self.provider.fetch_attachment_metadata(cred, mid),
                )
            except ProviderNotFoundError:
                metadata = []
            _, unmatched = link_attachments(self.db, email, metadata)
            if needs_synthetic_pass(email, unmatched):
                pending.append((email, unmatched))
        try:
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"[{self.worker_id}] Job {job.id}: attachment linking failed: {e}")
            return 0
        return synthesize_placeholders(self.db, pending) if pending else 0

    def run(self, job: SyncJob) -> IngestionResult:
        mailbox = self.db.query(Mailbox).filter(Mailbox.id == job.mailbox_id).first()
        if mailbox is None:
            raise ProviderNotFoundError(f"Mailbox {job.mailbox_id} not found")
        if mailbox.connection_status == MAILBOX_NEEDS_RECONNECTION:
            raise ProviderPermissionError(f"Mailbox {mailbox.id} needs reconnection")
        self.credential = credential_for(mailbox)
        if self.credential.expires_at and self.credential.expires_at <= utcnow() + TOKEN_EXPIRY_SKEW:
            self._refresh_credential(mailbox.id)

        req = job.sync_request
        quota = None
        if job.is_chunk and job.start_offset is not None and job.end_offset is not None:
            quota = job.end_offset - job.start_offset + 1

        result = IngestionResult()
        cp = load_checkpoint(self.db, job.id)
        if cp is not None:
            result.resumed = True
            page_token = cp.page_token
            pages = cp.pages_completed or 0
            seen = cp.messages_processed or 0
            skip = 0
            if page_token is None:
                logger.info(f"[{self.worker_id}] Job {job.id}: checkpoint shows all pages done")
                result.messages_seen = result.emails_processed = seen
                return result
            logger.info(f"[{self.worker_id}] Job {job.id}: resuming after page {pages} ({seen} messages)")
        else:
            page_token = None
            pages = 0
            seen = 0
            skip = job.start_offset or 0

        resolver = ThreadResolver(self.db, job.tenant_id, job.mailbox_id)
        page_size = settings.provider_page_size
        last_message_id = None
        failed = 0

        while True:
            self._check_deadline(job)
            want = page_size if quota is None else min(page_size, quota - seen)
            if want <= 0:
                break
            message_filter = MessageFilter(
                date_from=req.date_from if req else None,
                date_to=req.date_to if req else None,
                skip=skip,
                max_results=want,
            )
            page: MessagePage = self._with_refresh(
                job.mailbox_id,
                lambda cred, tok=page_token, f=message_filter: self.provider.fetch_messages_page(cred, f, tok),
            )
            pages += 1
            result.pages_fetched += 1
            messages = page.messages[:want]

            records = []
            for message in messages:
                self._check_deadline(job)
                records.append(self._to_record(resolver, message))
                last_message_id = message.provider_message_id

            stored, batch_failed = self._store(job, records)
            failed += batch_failed
            result.synthetic_attachments += self._link(job, stored)

            seen += len(messages)
            page_token = page.next_page_token
            skip = 0
            write_checkpoint(self.db, job, page_token, pages, seen, page.sync_token, last_message_id)

            if not page_token or not messages:
                break
            if quota is not None and seen >= quota:
                break
            if settings.page_fetch_delay_ms > 0:
                self.sleep(settings.page_fetch_delay_ms / 1000.0)

        result.messages_seen = seen
        result.emails_failed = failed
        result.emails_processed = max(0, seen - failed)
        logger.info(
            f"[{self.worker_id}] Job {job.id}: {result.pages_fetched} page(s), {seen} messages, {failed} failed"
        )
        return result
