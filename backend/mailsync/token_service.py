"""Per-mailbox credential lookup and OAuth token refresh (google-auth)."""
import logging
from typing import Callable, Optional

from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from sqlalchemy.orm import Session

from .config import settings
from .mail_provider import MailCredential, TokenRefreshResult
from .models import Mailbox, MAILBOX_CONNECTED, utcnow

logger = logging.getLogger(__name__)


def credential_for(mailbox: Mailbox) -> MailCredential:
    return MailCredential(
        mailbox_id=mailbox.id,
        email_address=mailbox.email_address,
        access_token=mailbox.access_token,
        refresh_token=mailbox.refresh_token,
        expires_at=mailbox.token_expires_at,
    )


class TokenService:
    """Refreshes a mailbox's access token and persists the result."""

    def __init__(self, session_factory: Optional[Callable[[], Session]] = None, request_factory=Request):
        if session_factory is None:
            from .database import SessionLocal
            session_factory = SessionLocal
        self._session_factory = session_factory
        self._request_factory = request_factory

    def refresh(self, mailbox_id: int) -> TokenRefreshResult:
        db = self._session_factory()
        try:
            mailbox = db.query(Mailbox).filter(Mailbox.id == mailbox_id).first()
            if mailbox is None:
                return TokenRefreshResult(success=False, error=f"Mailbox {mailbox_id} not found")
            if not mailbox.refresh_token:
                return TokenRefreshResult(success=False, error="No refresh token stored for mailbox")
            creds = Credentials(
                token=mailbox.access_token,
                refresh_token=mailbox.refresh_token,
                token_uri=settings.google_token_uri,
                client_id=settings.google_client_id or None,
                client_secret=settings.google_client_secret or None,
            )
            try:
                creds.refresh(self._request_factory())
            except (RefreshError, TransportError) as e:
                logger.warning(f"Token refresh failed for mailbox {mailbox_id}: {e}")
                mailbox.last_error = f"Token refresh failed: {e}"
                db.commit()
                return TokenRefreshResult(success=False, error=str(e))

            mailbox.access_token = creds.token
            if creds.refresh_token:
                mailbox.refresh_token = creds.refresh_token
            mailbox.token_expires_at = creds.expiry
            mailbox.connection_status = MAILBOX_CONNECTED
            mailbox.updated_at = utcnow()
            db.commit()
            logger.info(f"Refreshed access token for mailbox {mailbox_id}")
            return TokenRefreshResult(success=True, credential=credential_for(mailbox))
        finally:
            db.close()
