"""Provider-neutral types for mail sources and the token service."""
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Protocol


@dataclass
class MailCredential:
    mailbox_id: int
    email_address: str
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None


@dataclass
class MessageFilter:
    """What to fetch. skip is an offset into the provider's ordered message list."""
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    skip: int = 0
    max_results: int = 50


@dataclass
class ProviderMessage:
    provider_message_id: str
    provider_thread_id: Optional[str] = None
    subject: str = ""
    sender: str = ""
    recipients: List[str] = field(default_factory=list)
    body: str = ""
    received_at: Optional[datetime] = None
    is_read: bool = False
    direction: str = "inbound"
    # Transport headers, lower-cased names
    headers: dict = field(default_factory=dict)
    has_attachments: bool = False


@dataclass
class MessagePage:
    messages: List[ProviderMessage]
    next_page_token: Optional[str] = None
    sync_token: Optional[str] = None


@dataclass
class AttachmentMetadata:
    filename: str
    content_id: Optional[str] = None
    size: Optional[int] = None
    mime_type: Optional[str] = None
    is_inline: bool = False
    provider_attachment_id: Optional[str] = None


@dataclass
class TokenRefreshResult:
    success: bool
    credential: Optional[MailCredential] = None
    error: Optional[str] = None


class MailProvider(Protocol):
    def fetch_messages_page(
        self, credential: MailCredential, message_filter: MessageFilter, page_token: Optional[str] = None
    ) -> MessagePage:
        ...

    def fetch_attachment_metadata(self, credential: MailCredential, message_id: str) -> List[AttachmentMetadata]:
        ...


class TokenRefresher(Protocol):
    def refresh(self, mailbox_id: int) -> TokenRefreshResult:
        ...
