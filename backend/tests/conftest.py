"""Pytest fixtures: file-backed sqlite DB, sessions, client, fake mail provider."""
import os
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("API_KEY", "")

from datetime import datetime, timedelta
from typing import List, Optional

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker

from mailsync.main import app
from mailsync.database import get_db, get_sync_db
from mailsync.errors import ProviderAuthError
from mailsync.health_metrics import metrics
from mailsync.mail_provider import (
    AttachmentMetadata,
    MailCredential,
    MessageFilter,
    MessagePage,
    ProviderMessage,
    TokenRefreshResult,
)
from mailsync.models import Base, Mailbox


@pytest.fixture
def db_urls(tmp_path):
    """
    Use a file-based sqlite DB so sync setup code (tests) and async app sessions
    can see the same data.
    """
    db_path = tmp_path / "test.db"
    sync_url = f"sqlite:///{db_path}"
    async_url = f"sqlite+aiosqlite:///{db_path}"
    return sync_url, async_url


@pytest.fixture
def db_engine(db_urls):
    sync_url, _ = db_urls
    engine = create_engine(sync_url, connect_args={"check_same_thread": False, "timeout": 10})
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(autouse=True)
def metrics_sink(request, monkeypatch):
    """Point the module-level metrics recorder at the test DB when one is in use."""
    if "db_engine" in request.fixturenames:
        factory = request.getfixturevalue("session_factory")
        monkeypatch.setattr(metrics, "_session_factory", factory)
    yield


@pytest.fixture
def mailbox(db_session):
    mb = Mailbox(
        tenant_id="tenant-1",
        provider="gmail",
        email_address="owner@example.com",
        access_token="valid-token",
        refresh_token="refresh-token",
    )
    db_session.add(mb)
    db_session.commit()
    db_session.refresh(mb)
    return mb


def make_message(i: int, **overrides) -> ProviderMessage:
    fields = dict(
        provider_message_id=f"m{i}",
        provider_thread_id=f"t{i}",
        subject=f"Subject {i}",
        sender=f"sender{i}@example.com",
        recipients=["owner@example.com"],
        body=f"Body {i}",
        received_at=datetime(2024, 1, 1) + timedelta(minutes=i),
        headers={"message-id": f"<msg{i}@example.com>"},
    )
    fields.update(overrides)
    return ProviderMessage(**fields)


class FakeMailProvider:
    """
    In-memory provider. Page tokens are stringified offsets. `fail_on_call` makes
    the Nth fetch_messages_page call (1-based, across the provider's lifetime) raise.
    """

    def __init__(self, messages: List[ProviderMessage], fail_on_call: Optional[int] = None, error=None):
        self.messages = list(messages)
        self.fail_on_call = fail_on_call
        self.error = error
        self.fetch_calls = 0
        self.attachment_calls = 0
        self.attachments = {}
        self.requested_filters: List[MessageFilter] = []
        self.reject_tokens = set()

    def fetch_messages_page(self, credential: MailCredential, message_filter: MessageFilter, page_token=None):
        if credential.access_token in self.reject_tokens:
            raise ProviderAuthError("401 invalid credentials")
        self.fetch_calls += 1
        self.requested_filters.append(message_filter)
        if self.fail_on_call is not None and self.fetch_calls == self.fail_on_call:
            raise self.error
        offset = int(page_token) if page_token else message_filter.skip
        batch = self.messages[offset:offset + message_filter.max_results]
        end = offset + len(batch)
        next_token = str(end) if end < len(self.messages) and batch else None
        return MessagePage(messages=batch, next_page_token=next_token)

    def fetch_attachment_metadata(self, credential: MailCredential, message_id: str) -> List[AttachmentMetadata]:
        self.attachment_calls += 1
        return list(self.attachments.get(message_id, []))


class FakeTokenService:
    def __init__(self, success: bool = True, new_token: str = "fresh-token"):
        self.success = success
        self.new_token = new_token
        self.calls = 0

    def refresh(self, mailbox_id: int) -> TokenRefreshResult:
        self.calls += 1
        if not self.success:
            return TokenRefreshResult(success=False, error="invalid_grant")
        return TokenRefreshResult(
            success=True,
            credential=MailCredential(
                mailbox_id=mailbox_id,
                email_address="owner@example.com",
                access_token=self.new_token,
                refresh_token="refresh-token",
            ),
        )


@pytest.fixture
def fake_provider():
    return FakeMailProvider([make_message(i) for i in range(10)])


@pytest.fixture
def token_service():
    return FakeTokenService()


@pytest.fixture
def no_page_delay(monkeypatch):
    from mailsync.config import settings
    monkeypatch.setattr(settings, "page_fetch_delay_ms", 0)


@pytest.fixture
def client(db_urls, session_factory):
    _, async_url = db_urls
    async_engine = create_async_engine(
        async_url,
        connect_args={"check_same_thread": False},
    )
    AsyncSessionLocal = async_sessionmaker(async_engine, expire_on_commit=False, autoflush=False)

    async def override_get_db():
        async with AsyncSessionLocal() as session:
            yield session

    def override_get_sync_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_sync_db] = override_get_sync_db
    try:
        with TestClient(app) as c:
            yield c
    finally:
        app.dependency_overrides.clear()
