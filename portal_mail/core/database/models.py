"""
SQLAlchemy Database Models for the mailbox mirror and delivery pipeline

Stores:
- Connected mailbox accounts (encrypted OAuth tokens)
- Per-account sync state (status, history watermark, sync lease)
- Threads and messages mirrored from the remote mailbox
- Drafts, send status records and open-tracking events

Encryption:
- Message and draft bodies are encrypted at rest using Fernet
- Scheduled-send payloads are encrypted JSON
- Tokens are stored as ciphertext and only decrypted by the credential store
- See portal_mail/core/database/encryption.py for implementation

All timestamps are timezone-aware UTC.
"""
from sqlalchemy import (
    Column, String, Integer, Boolean, DateTime, Text, JSON, ForeignKey, Index,
    UniqueConstraint, CheckConstraint, TypeDecorator, Uuid,
)
from sqlalchemy.orm import declarative_base, relationship
from datetime import datetime, timezone
from enum import Enum
import uuid

from portal_mail.core.database.encryption import EncryptedText, EncryptedJSON

Base = declarative_base()


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware timestamp column.

    Binds aware values converted to UTC and attaches UTC on read for
    backends that drop the offset (SQLite).
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class SyncStatusValue(str, Enum):
    """Lifecycle of an account's sync state"""
    IDLE = "idle"
    SYNCING = "syncing"
    ERROR = "error"


class SendStatusValue(str, Enum):
    """Lifecycle of one logical outbound message"""
    SCHEDULED = "scheduled"
    SENDING = "sending"
    SENT = "sent"
    FAILED = "failed"
    HARD = "hard"
    SOFT = "soft"
    COMPLAINT = "complaint"


FAILURE_STATUSES = (
    SendStatusValue.FAILED.value,
    SendStatusValue.HARD.value,
    SendStatusValue.SOFT.value,
    SendStatusValue.COMPLAINT.value,
)

# System labels used by the local mirror
LABEL_INBOX = "INBOX"
LABEL_SENT = "SENT"
LABEL_TRASH = "TRASH"
LABEL_UNREAD = "UNREAD"
LABEL_STARRED = "STARRED"


class EmailAccount(Base):
    """
    One connected mailbox.

    Tokens are ciphertext; only the credential store decrypts them.
    """
    __tablename__ = "email_accounts"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(String(100), nullable=False, index=True)
    email = Column(String(320), nullable=False, unique=True)
    provider = Column(String(20), nullable=False, default="google")

    access_token = Column(Text)   # ENCRYPTED (value helpers)
    refresh_token = Column(Text)  # ENCRYPTED (value helpers)
    token_expires_at = Column(UTCDateTime)

    sync_enabled = Column(Boolean, nullable=False, default=True)
    last_synced_at = Column(UTCDateTime)

    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    sync_state = relationship("SyncState", back_populates="account", uselist=False, cascade="all, delete-orphan")
    threads = relationship("EmailThread", back_populates="account", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<EmailAccount {self.email}>"


class SyncState(Base):
    """
    Sync bookkeeping for one account (1:1).

    history_id only moves forward, and only after a successful
    reconciliation pass. lease_owner/lease_expires_at give a single
    sync owner per account.
    """
    __tablename__ = "email_sync_state"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    account_id = Column(Uuid(as_uuid=True), ForeignKey('email_accounts.id', ondelete="CASCADE"), nullable=False, unique=True)

    status = Column(String(20), nullable=False, default=SyncStatusValue.IDLE.value)
    history_id = Column(String(64))
    last_synced_at = Column(UTCDateTime)
    last_full_sync_at = Column(UTCDateTime)
    last_incremental_sync_at = Column(UTCDateTime)
    last_error = Column(Text)
    messages_synced = Column(Integer, nullable=False, default=0)

    lease_owner = Column(String(100))
    lease_expires_at = Column(UTCDateTime)

    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    account = relationship("EmailAccount", back_populates="sync_state")


class EmailThread(Base):
    """
    Local mirror of one remote conversation.

    Exactly one row per (account_id, remote_thread_id). Never deleted,
    trash is a label.
    """
    __tablename__ = "email_threads"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    account_id = Column(Uuid(as_uuid=True), ForeignKey('email_accounts.id', ondelete="CASCADE"), nullable=False)
    remote_thread_id = Column(String(255))  # NULL for sent mail the provider did not thread

    subject = Column(Text, nullable=False, default="")
    snippet = Column(Text)
    participants = Column(JSON, nullable=False, default=list)  # [{name, email}]
    labels = Column(JSON, nullable=False, default=list)
    is_starred = Column(Boolean, nullable=False, default=False)
    message_count = Column(Integer, nullable=False, default=1)
    unread_count = Column(Integer, nullable=False, default=0)
    last_message_at = Column(UTCDateTime, nullable=False, default=utcnow)

    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    account = relationship("EmailAccount", back_populates="threads")
    messages = relationship("EmailMessage", back_populates="thread", order_by="EmailMessage.received_at")

    __table_args__ = (
        UniqueConstraint('account_id', 'remote_thread_id', name='uq_email_threads_account_remote'),
        Index('ix_email_threads_account_last_message', 'account_id', 'last_message_at'),
    )


class EmailMessage(Base):
    """
    Local mirror of one remote message.

    Body and identifiers are immutable once written; only labels and
    read/starred flags (and open statistics) change afterwards.
    """
    __tablename__ = "email_messages"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    thread_id = Column(Uuid(as_uuid=True), ForeignKey('email_threads.id', ondelete="CASCADE"), nullable=False, index=True)
    remote_message_id = Column(String(255), nullable=False, unique=True)

    from_address = Column(JSON, nullable=False, default=dict)  # {name, email}
    to_addresses = Column(JSON, nullable=False, default=list)
    cc_addresses = Column(JSON, default=list)
    bcc_addresses = Column(JSON, default=list)
    subject = Column(Text, nullable=False, default="")
    snippet = Column(Text)

    body_html = Column(EncryptedText)  # ENCRYPTED
    body_text = Column(EncryptedText)  # ENCRYPTED

    labels = Column(JSON, nullable=False, default=list)
    is_read = Column(Boolean, nullable=False, default=False)
    is_starred = Column(Boolean, nullable=False, default=False)

    in_reply_to = Column(String(500))
    references = Column(JSON, default=list)
    raw_headers = Column(JSON, default=dict)

    sent_at = Column(UTCDateTime, nullable=False)
    received_at = Column(UTCDateTime, nullable=False, index=True)

    # Open tracking
    tracking_enabled = Column(Boolean, nullable=False, default=False)
    tracking_pixel_id = Column(String(64), unique=True)
    first_opened_at = Column(UTCDateTime)
    last_opened_at = Column(UTCDateTime)
    open_count = Column(Integer, nullable=False, default=0)

    created_at = Column(UTCDateTime, default=utcnow, nullable=False)

    thread = relationship("EmailThread", back_populates="messages")
    opens = relationship("EmailOpen", back_populates="message", cascade="all, delete-orphan")


class EmailDraft(Base):
    """Composed but unsent message; the source of automatic retries."""
    __tablename__ = "email_drafts"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    account_id = Column(Uuid(as_uuid=True), ForeignKey('email_accounts.id', ondelete="CASCADE"), nullable=False, index=True)

    to_addresses = Column(JSON, nullable=False, default=list)  # [{name, email}]
    cc_addresses = Column(JSON, default=list)
    bcc_addresses = Column(JSON, default=list)
    subject = Column(Text, nullable=False, default="")
    body_html = Column(EncryptedText)  # ENCRYPTED
    body_text = Column(EncryptedText)  # ENCRYPTED

    in_reply_to = Column(String(500))
    references = Column(JSON, default=list)
    remote_thread_id = Column(String(255))
    attachments = Column(EncryptedJSON, default=list)  # [{filename, content_base64, content_type}]
    tracking_enabled = Column(Boolean, nullable=False, default=False)

    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    account = relationship("EmailAccount")


class SendStatus(Base):
    """
    Delivery lifecycle of one logical outbound message (not one per retry).

    Audit trail: rows are never deleted.
    """
    __tablename__ = "email_send_status"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    account_id = Column(Uuid(as_uuid=True), ForeignKey('email_accounts.id', ondelete="SET NULL"))
    draft_id = Column(Uuid(as_uuid=True), ForeignKey('email_drafts.id', ondelete="SET NULL"), index=True)
    message_id = Column(Uuid(as_uuid=True), ForeignKey('email_messages.id', ondelete="SET NULL"), index=True)

    status = Column(String(20), nullable=False, default=SendStatusValue.SENDING.value)
    remote_message_id = Column(String(255))
    remote_thread_id = Column(String(255))

    error_message = Column(Text)
    bounce_type = Column(String(20))  # hard / soft / complaint
    bounce_reason = Column(Text)

    retry_count = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=3)
    next_retry_at = Column(UTCDateTime)

    # Durable scheduling
    scheduled_for = Column(UTCDateTime)
    payload = Column(EncryptedJSON)  # ENCRYPTED snapshot of the send parameters

    sent_at = Column(UTCDateTime)
    failed_at = Column(UTCDateTime)

    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    draft = relationship("EmailDraft")
    message = relationship("EmailMessage")

    __table_args__ = (
        CheckConstraint('retry_count <= max_retries', name='ck_send_status_retry_ceiling'),
        Index('ix_email_send_status_status_next_retry', 'status', 'next_retry_at'),
        Index('ix_email_send_status_status_scheduled', 'status', 'scheduled_for'),
    )


class EmailOpen(Base):
    """One hit on a message's open-tracking pixel."""
    __tablename__ = "email_opens"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    message_id = Column(Uuid(as_uuid=True), ForeignKey('email_messages.id', ondelete="CASCADE"), nullable=False, index=True)
    opened_at = Column(UTCDateTime, default=utcnow, nullable=False, index=True)
    ip_address = Column(String(64))
    user_agent = Column(Text)
    location = Column(String(200))

    message = relationship("EmailMessage", back_populates="opens")
