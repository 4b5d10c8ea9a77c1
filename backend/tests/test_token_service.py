from datetime import datetime

from google.auth.exceptions import RefreshError

from mailsync import token_service
from mailsync.models import Mailbox, MAILBOX_CONNECTED, MAILBOX_NEEDS_RECONNECTION
from mailsync.token_service import TokenService, credential_for


class FakeCredentials:
    fail_with = None

    def __init__(self, token=None, refresh_token=None, **kwargs):
        self.token = token
        self.refresh_token = refresh_token
        self.expiry = None

    def refresh(self, request):
        if self.fail_with is not None:
            raise self.fail_with
        self.token = "new-access-token"
        self.expiry = datetime(2030, 1, 1)


def test_refresh_persists_new_token(db_session, session_factory, mailbox, monkeypatch):
    monkeypatch.setattr(token_service, "Credentials", FakeCredentials)
    mailbox.connection_status = MAILBOX_NEEDS_RECONNECTION
    db_session.commit()

    result = TokenService(session_factory=session_factory, request_factory=lambda: None).refresh(mailbox.id)

    assert result.success is True
    assert result.credential.access_token == "new-access-token"
    db_session.expire_all()
    row = db_session.query(Mailbox).filter(Mailbox.id == mailbox.id).one()
    assert row.access_token == "new-access-token"
    assert row.token_expires_at == datetime(2030, 1, 1)
    assert row.connection_status == MAILBOX_CONNECTED


def test_refresh_error_is_reported_not_raised(db_session, session_factory, mailbox, monkeypatch):
    class Revoked(FakeCredentials):
        fail_with = RefreshError("invalid_grant: Token has been expired or revoked.")

    monkeypatch.setattr(token_service, "Credentials", Revoked)
    result = TokenService(session_factory=session_factory, request_factory=lambda: None).refresh(mailbox.id)

    assert result.success is False
    assert "invalid_grant" in result.error
    db_session.expire_all()
    assert db_session.query(Mailbox).filter(Mailbox.id == mailbox.id).one().access_token == "valid-token"


def test_refresh_without_refresh_token(db_session, session_factory, mailbox):
    mailbox.refresh_token = None
    db_session.commit()
    result = TokenService(session_factory=session_factory).refresh(mailbox.id)
    assert result.success is False
    assert TokenService(session_factory=session_factory).refresh(999).success is False


def test_credential_for(mailbox):
    cred = credential_for(mailbox)
    assert cred.mailbox_id == mailbox.id
    assert cred.access_token == "valid-token"
    assert cred.refresh_token == "refresh-token"
