"""
Shared fixtures: in-memory database, fake mailbox client, sample accounts.
"""
# Environment BEFORE any portal_mail imports (encryption and settings read it)
import os

if not os.getenv("DB_ENCRYPTION_KEY"):
    from cryptography.fernet import Fernet
    os.environ["DB_ENCRYPTION_KEY"] = Fernet.generate_key().decode()
os.environ.setdefault("API_KEY", "test-api-key")
os.environ["GEOIP_ENABLED"] = "false"
os.environ["BACKGROUND_JOBS_ENABLED"] = "false"

import pytest
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from portal_mail.core.accounts import AccountManager
from portal_mail.core.config import Settings
from portal_mail.core.database.models import Base
from portal_mail.core.errors import MessageNotFoundError
from portal_mail.core.mailbox.base import (
    HistoryPage, MailboxClient, MailboxProfile, OutboundMessage, RemoteMessage, SendReceipt,
)

BASE_TIME = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


class FakeMailboxClient(MailboxClient):
    """In-memory mailbox with programmable failures."""

    def __init__(self, messages: Optional[List[RemoteMessage]] = None, history_id: Optional[str] = "1000"):
        self.messages = {m.id: m for m in messages or []}
        self.history_id = history_id
        self.history_page: Optional[HistoryPage] = None
        self.history_error: Optional[Exception] = None
        self.list_error: Optional[Exception] = None
        self.message_errors = {}
        self.send_errors: List[Exception] = []
        self.label_error: Optional[Exception] = None

        self.sent: List[OutboundMessage] = []
        self.label_calls = []
        self.trashed: List[str] = []
        self.untrashed: List[str] = []
        self.history_calls: List[str] = []
        self.list_calls = 0

    async def list_messages(self, query=None, max_results=50, label_ids=None):
        self.list_calls += 1
        if self.list_error:
            raise self.list_error
        ordered = sorted(self.messages.values(), key=lambda m: m.received_at, reverse=True)
        if label_ids:
            ordered = [m for m in ordered if set(label_ids) & set(m.labels)]
        return ordered[:max_results]

    async def get_message(self, message_id):
        if message_id in self.message_errors:
            raise self.message_errors[message_id]
        if message_id not in self.messages:
            raise MessageNotFoundError(f"Message {message_id} not found")
        return self.messages[message_id]

    async def get_history(self, start_history_id, max_results=100):
        self.history_calls.append(start_history_id)
        if self.history_error:
            raise self.history_error
        return self.history_page or HistoryPage(history_id=start_history_id, records=[])

    async def get_profile(self):
        return MailboxProfile(email="me@example.com", history_id=self.history_id, messages_total=len(self.messages))

    async def send(self, message: OutboundMessage):
        if self.send_errors:
            raise self.send_errors.pop(0)
        self.sent.append(message)
        n = len(self.sent)
        return SendReceipt(id=f"sent-{n}", thread_id=message.thread_id or f"sent-thread-{n}")

    async def modify_labels(self, message_id, add=None, remove=None):
        if self.label_error:
            raise self.label_error
        self.label_calls.append((message_id, list(add or []), list(remove or [])))

    async def trash(self, message_id):
        if self.label_error:
            raise self.label_error
        self.trashed.append(message_id)

    async def untrash(self, message_id):
        if self.label_error:
            raise self.label_error
        self.untrashed.append(message_id)


def build_remote_message(
    message_id: str,
    thread_id: str = "thread-1",
    minutes: int = 0,
    labels: Optional[List[str]] = None,
    subject: Optional[str] = None,
    sender: str = "alice@example.com",
    history_id: Optional[str] = None,
    is_read: Optional[bool] = None,
) -> RemoteMessage:
    labels = ["INBOX", "UNREAD"] if labels is None else labels
    when = BASE_TIME + timedelta(minutes=minutes)
    return RemoteMessage(
        id=message_id,
        thread_id=thread_id,
        history_id=history_id,
        from_address={"email": sender, "name": sender.split("@")[0].title()},
        to=[{"email": "me@example.com", "name": None}],
        subject=subject or f"Subject {message_id}",
        snippet=f"Snippet of {message_id}",
        body_text=f"Body of {message_id}",
        body_html=f"<p>Body of {message_id}</p>",
        labels=labels,
        is_read=("UNREAD" not in labels) if is_read is None else is_read,
        is_starred="STARRED" in labels,
        sent_at=when,
        received_at=when,
    )


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        api_key="test-api-key",
        api_base_url="https://mail.example.com",
        geoip_enabled=False,
        sync_fetch_concurrency=4,
        send_max_retries=3,
    )


@pytest.fixture
def make_message():
    return build_remote_message


@pytest.fixture
def fake_client():
    return FakeMailboxClient()


@pytest.fixture
def account(db):
    return AccountManager(db).connect_account(
        user_id="user-1",
        email="Me@Example.com",
        access_token="ya29.test-access-token",
        refresh_token="1//test-refresh-token",
    )


@pytest.fixture
def client_factory(fake_client):
    """Client factory handing out the shared fake for every account."""
    return lambda account: fake_client
