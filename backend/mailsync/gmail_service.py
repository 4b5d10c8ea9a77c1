"""Gmail API integration: paged message listing, offset skipping, attachment metadata, error mapping."""
import base64
import logging
import time
from email.utils import getaddresses, parsedate_to_datetime
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from .config import settings
from .errors import (
    ProviderAuthError,
    ProviderNetworkError,
    ProviderNotFoundError,
    ProviderPermissionError,
    ProviderRateLimitError,
    ProviderTemporaryError,
    SyncError,
)
from .mail_provider import AttachmentMetadata, MailCredential, MessageFilter, MessagePage, ProviderMessage

logger = logging.getLogger(__name__)

SCOPES = [
    "https://www.googleapis.com/auth/gmail.modify",
    "https://www.googleapis.com/auth/gmail.readonly",
]

# messages.list accepts up to 500 ids per call; used when skipping to an offset
MAX_LIST_PAGE = 500
RATE_LIMIT_REASONS = ("ratelimitexceeded", "userratelimitexceeded", "quotaexceeded")


def build_gmail_service(credential: MailCredential):
    """Gmail API client for one mailbox credential."""
    creds = Credentials(
        token=credential.access_token,
        refresh_token=credential.refresh_token,
        token_uri=settings.google_token_uri,
        client_id=settings.google_client_id or None,
        client_secret=settings.google_client_secret or None,
        scopes=SCOPES,
    )
    return build("gmail", "v1", credentials=creds, cache_discovery=False)


def _retry_after(e: HttpError) -> Optional[int]:
    value = None
    try:
        value = e.resp.get("retry-after")
    except AttributeError:
        pass
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def map_http_error(e: HttpError) -> SyncError:
    """Translate a Gmail HttpError into the engine's typed errors."""
    status = getattr(e.resp, "status", None)
    reason = (getattr(e, "reason", None) or str(e) or "").strip()
    content = getattr(e, "content", None) or b""
    if isinstance(content, bytes):
        content = content.decode("utf-8", errors="replace")
    lowered = f"{reason} {content}".lower()
    if status == 429 or (status == 403 and any(r in lowered for r in RATE_LIMIT_REASONS)):
        return ProviderRateLimitError(f"Gmail rate limit: {reason}", retry_after=_retry_after(e))
    if status == 401:
        return ProviderAuthError(f"Gmail rejected credential: {reason}")
    if status == 403:
        return ProviderPermissionError(f"Gmail access forbidden: {reason}")
    if status == 404:
        return ProviderNotFoundError(f"Gmail resource not found: {reason}")
    if status is not None and int(status) >= 500:
        return ProviderTemporaryError(f"Gmail unavailable ({status}): {reason}")
    return SyncError(f"Gmail error ({status}): {reason}")


def _with_backoff(fn, max_retries: int = 3, sleep: Callable[[float], None] = time.sleep):
    """Retry 5xx in place; everything else surfaces as a typed error for the job engine."""
    for attempt in range(max_retries):
        try:
            return fn()
        except HttpError as e:
            if e.resp.status in (500, 502, 503) and attempt < max_retries - 1:
                sleep(2 ** attempt)
                continue
            raise map_http_error(e) from e
        except OSError as e:
            if attempt < max_retries - 1:
                sleep(2 ** attempt)
                continue
            raise ProviderNetworkError(f"Gmail network error: {e}") from e


def build_query(message_filter: MessageFilter) -> str:
    """Gmail search query for the filter's date range (after is inclusive, before exclusive)."""
    parts = []
    if message_filter.date_from:
        parts.append(f"after:{message_filter.date_from.strftime('%Y/%m/%d')}")
    if message_filter.date_to:
        # before: is exclusive, keep date_to's whole day
        parts.append(f"before:{(message_filter.date_to + timedelta(days=1)).strftime('%Y/%m/%d')}")
    return " ".join(parts)


def _decode(data: str) -> str:
    return base64.urlsafe_b64decode(data).decode("utf-8", errors="replace")


def _get_body(payload: dict) -> str:
    """HTML part if present (inline cid: references live there), else the plain text part."""
    if payload.get("body", {}).get("data") and not payload.get("parts"):
        return _decode(payload["body"]["data"])
    plain = None
    html = None
    stack = list(payload.get("parts") or [])
    while stack:
        part = stack.pop(0)
        if part.get("parts"):
            stack.extend(part["parts"])
            continue
        data = part.get("body", {}).get("data")
        if not data or part.get("filename"):
            continue
        if part.get("mimeType") == "text/html" and html is None:
            html = _decode(data)
        elif part.get("mimeType") == "text/plain" and plain is None:
            plain = _decode(data)
    return html or plain or ""


def _get_headers(email: dict) -> dict:
    return {h["name"].lower(): h["value"] for h in email.get("payload", {}).get("headers", [])}


def _get_received_date(email: dict):
    date_str = _get_headers(email).get("date")
    if date_str:
        try:
            dt = parsedate_to_datetime(date_str)
            if dt.tzinfo is not None:
                dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
            return dt
        except (TypeError, ValueError):
            pass
    internal = email.get("internalDate")
    if internal:
        return datetime.fromtimestamp(int(internal) / 1000.0, tz=timezone.utc).replace(tzinfo=None)
    return None


def _iter_attachment_parts(payload: dict):
    stack = [payload]
    while stack:
        part = stack.pop(0)
        stack.extend(part.get("parts") or [])
        if part.get("filename") or part.get("body", {}).get("attachmentId"):
            yield part


def email_to_message(email: dict) -> ProviderMessage:
    """Convert a Gmail messages.get(format=full) resource into a ProviderMessage."""
    headers = _get_headers(email)
    labels = email.get("labelIds") or []
    recipients = [
        addr for _, addr in getaddresses([headers.get("to", ""), headers.get("cc", "")]) if addr
    ]
    payload = email.get("payload", {})
    return ProviderMessage(
        provider_message_id=email.get("id", ""),
        provider_thread_id=email.get("threadId"),
        subject=headers.get("subject", ""),
        sender=headers.get("from", ""),
        recipients=recipients,
        body=_get_body(payload),
        received_at=_get_received_date(email),
        is_read="UNREAD" not in labels,
        direction="outbound" if "SENT" in labels else "inbound",
        headers=headers,
        has_attachments=any(True for _ in _iter_attachment_parts(payload)),
    )


class GmailProvider:
    """MailProvider backed by google-api-python-client."""

    def __init__(
        self,
        service_factory: Callable[[MailCredential], object] = build_gmail_service,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._service_factory = service_factory
        self._sleep = sleep

    def _call(self, fn):
        return _with_backoff(fn, sleep=self._sleep)

    def _list(self, service, query: str, max_results: int, page_token: Optional[str]) -> dict:
        return self._call(
            lambda: service.users()
            .messages()
            .list(userId="me", q=query, maxResults=max_results, pageToken=page_token or None)
            .execute()
        )

    def _skip_to_offset(self, service, query: str, skip: int) -> tuple[Optional[str], bool]:
        """
        Gmail has no offset parameter: page through id lists until `skip` ids
        are consumed. Returns (page_token, exhausted).
        """
        token = None
        remaining = skip
        while remaining > 0:
            batch = min(MAX_LIST_PAGE, remaining)
            result = self._list(service, query, batch, token)
            got = len(result.get("messages", []))
            next_token = result.get("nextPageToken")
            remaining -= got
            if not next_token or got == 0:
                return None, True
            token = next_token
        return token, False

    def fetch_messages_page(
        self, credential: MailCredential, message_filter: MessageFilter, page_token: Optional[str] = None
    ) -> MessagePage:
        service = self._service_factory(credential)
        query = build_query(message_filter)
        if page_token is None and message_filter.skip > 0:
            page_token, exhausted = self._skip_to_offset(service, query, message_filter.skip)
            if exhausted:
                logger.info(f"Mailbox {credential.mailbox_id}: offset {message_filter.skip} is past the end")
                return MessagePage(messages=[], next_page_token=None)

        page_size = max(1, min(message_filter.max_results, settings.provider_page_size, MAX_LIST_PAGE))
        result = self._list(service, query, page_size, page_token)
        ids = [m["id"] for m in result.get("messages", [])]
        messages = []
        for msg_id in ids:
            email = self._call(
                lambda msg_id=msg_id: service.users().messages().get(userId="me", id=msg_id, format="full").execute()
            )
            messages.append(email_to_message(email))
        next_token = result.get("nextPageToken")
        if next_token is not None and next_token == page_token:
            logger.warning("Pagination stalled (repeated page token); stopping fetch.")
            next_token = None
        return MessagePage(messages=messages, next_page_token=next_token)

    def fetch_attachment_metadata(self, credential: MailCredential, message_id: str) -> List[AttachmentMetadata]:
        service = self._service_factory(credential)
        email = self._call(
            lambda: service.users().messages().get(userId="me", id=message_id, format="full").execute()
        )
        out = []
        for part in _iter_attachment_parts(email.get("payload", {})):
            part_headers = {h["name"].lower(): h["value"] for h in part.get("headers", [])}
            cid = (part_headers.get("content-id") or part_headers.get("x-attachment-id") or "").strip().strip("<>")
            disposition = (part_headers.get("content-disposition") or "").lower()
            out.append(
                AttachmentMetadata(
                    filename=part.get("filename") or (cid or "attachment"),
                    content_id=cid or None,
                    size=part.get("body", {}).get("size"),
                    mime_type=part.get("mimeType"),
                    is_inline=disposition.startswith("inline") or bool(cid and not disposition),
                    provider_attachment_id=part.get("body", {}).get("attachmentId"),
                )
            )
        return out
