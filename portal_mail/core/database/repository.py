"""
Database Repository - High-level database operations for the mail engines.

Wraps the sync-state lease, thread/message lookups and the guarded
SendStatus transitions behind one object bound to a session.
"""
from typing import Optional, List, Dict, Iterable
from datetime import datetime, timedelta
from sqlalchemy.orm import Session
from sqlalchemy import update, func, or_, cast, String
import logging

from .models import (
    EmailAccount, SyncState, EmailThread, EmailMessage, EmailDraft, SendStatus,
    SyncStatusValue, SendStatusValue, LABEL_INBOX, LABEL_SENT, LABEL_TRASH, utcnow,
)

logger = logging.getLogger(__name__)

FOLDERS = ("inbox", "sent", "trash", "starred")


def sanitize_for_postgres(text: Optional[str], field_name: str = "text", max_length: Optional[int] = None) -> Optional[str]:
    """
    Remove NUL bytes and other problematic characters for PostgreSQL.

    PostgreSQL text fields cannot contain NUL (0x00) characters, which
    show up in mail with corrupted or binary parts. Also replaces lone
    UTF-8 surrogates and enforces field length limits.

    Args:
        text: Input text that may contain NUL bytes or surrogates
        field_name: Name of field being sanitized (for logging)
        max_length: Maximum length for field (truncates if longer)

    Returns:
        Sanitized text safe for PostgreSQL, or None if input was None
    """
    if text is None:
        return None

    if '\x00' in text:
        logger.debug(f"Sanitized {text.count(chr(0))} NUL byte(s) from {field_name}")
    sanitized = text.replace('\x00', '')

    try:
        sanitized.encode('utf-8', errors='strict')
    except UnicodeEncodeError:
        sanitized = sanitized.encode('utf-8', errors='replace').decode('utf-8', errors='replace')
        logger.debug(f"Removed surrogate characters from {field_name}")

    if max_length and len(sanitized) > max_length:
        logger.debug(f"Truncated {field_name} from {len(sanitized)} to {max_length} characters")
        sanitized = sanitized[:max_length]

    return sanitized


def _label_filter(column, label: str):
    # JSON list stored as text on every backend we run on: '["INBOX", "UNREAD"]'
    return cast(column, String).like(f'%"{label}"%')


class MailRepository:
    """
    Repository pattern for mail database operations.
    Used by the sync coordinator, the send pipeline, the scanners and the API.
    """

    def __init__(self, db: Session):
        """
        Initialize repository with database session.

        Args:
            db: SQLAlchemy session
        """
        self.db = db

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    def commit(self):
        """Commit transaction with error handling"""
        try:
            self.db.commit()
        except Exception as e:
            logger.error(f"Failed to commit transaction: {e}")
            self.db.rollback()
            raise

    def rollback(self):
        """Rollback transaction"""
        try:
            self.db.rollback()
        except Exception as e:
            logger.error(f"Failed to rollback transaction: {e}")

    # ------------------------------------------------------------------
    # Accounts & sync state
    # ------------------------------------------------------------------

    def get_account(self, account_id) -> Optional[EmailAccount]:
        return self.db.get(EmailAccount, account_id)

    def get_sync_state(self, account_id) -> Optional[SyncState]:
        return self.db.query(SyncState).filter(SyncState.account_id == account_id).first()

    def ensure_sync_state(self, account_id) -> SyncState:
        """Return the account's sync state, creating an idle one if missing."""
        state = self.get_sync_state(account_id)
        if state is None:
            state = SyncState(account_id=account_id, status=SyncStatusValue.IDLE.value)
            self.db.add(state)
            self.db.flush()
            logger.info(f"Created sync state for account {account_id}")
        return state

    def acquire_sync_lease(self, account_id, owner: str, lease_seconds: int, now: Optional[datetime] = None) -> bool:
        """
        Claim the per-account sync lease.

        A single conditional UPDATE: succeeds only when no unexpired lease
        exists. Commits immediately so other workers see the claim.

        Returns:
            True if this owner now holds the lease
        """
        now = now or utcnow()
        result = self.db.execute(
            update(SyncState)
            .where(
                SyncState.account_id == account_id,
                or_(SyncState.lease_expires_at.is_(None), SyncState.lease_expires_at <= now),
            )
            .values(
                status=SyncStatusValue.SYNCING.value,
                lease_owner=owner,
                lease_expires_at=now + timedelta(seconds=lease_seconds),
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        self.commit()
        self.db.expire_all()
        acquired = result.rowcount == 1
        if not acquired:
            logger.info(f"Sync lease for account {account_id} is held by another worker")
        return acquired

    def complete_sync(self, state: SyncState, history_id: Optional[str], full: bool, messages_synced: int):
        """Mark a successful pass: idle, new watermark, lease released."""
        now = utcnow()
        state.status = SyncStatusValue.IDLE.value
        state.history_id = history_id
        state.last_synced_at = now
        state.last_error = None
        state.messages_synced = (state.messages_synced or 0) + messages_synced
        if full:
            state.last_full_sync_at = now
        else:
            state.last_incremental_sync_at = now
        state.lease_owner = None
        state.lease_expires_at = None

        account = self.get_account(state.account_id)
        if account is not None:
            account.last_synced_at = now
        self.commit()

    def fail_sync(self, account_id, error: str):
        """Record a failed pass and release the lease. Watermark untouched."""
        state = self.get_sync_state(account_id)
        if state is None:
            return
        state.status = SyncStatusValue.ERROR.value
        state.last_error = error
        state.lease_owner = None
        state.lease_expires_at = None
        self.commit()

    # ------------------------------------------------------------------
    # Threads & messages
    # ------------------------------------------------------------------

    def get_thread(self, thread_id) -> Optional[EmailThread]:
        return self.db.get(EmailThread, thread_id)

    def get_thread_by_remote_id(self, account_id, remote_thread_id: str) -> Optional[EmailThread]:
        return self.db.query(EmailThread).filter(
            EmailThread.account_id == account_id,
            EmailThread.remote_thread_id == remote_thread_id,
        ).first()

    def get_message(self, message_id) -> Optional[EmailMessage]:
        return self.db.get(EmailMessage, message_id)

    def get_messages_by_remote_ids(self, remote_ids: Iterable[str]) -> Dict[str, EmailMessage]:
        """Map remote message id -> local row for the ids that exist locally."""
        ids = list(remote_ids)
        if not ids:
            return {}
        rows = self.db.query(EmailMessage).filter(EmailMessage.remote_message_id.in_(ids)).all()
        return {row.remote_message_id: row for row in rows}

    def get_message_by_pixel(self, tracking_pixel_id: str) -> Optional[EmailMessage]:
        return self.db.query(EmailMessage).filter(EmailMessage.tracking_pixel_id == tracking_pixel_id).first()

    def count_thread_messages(self, thread_id) -> int:
        return self.db.query(func.count(EmailMessage.id)).filter(EmailMessage.thread_id == thread_id).scalar() or 0

    def list_thread_messages(self, thread_id) -> List[EmailMessage]:
        return self.db.query(EmailMessage).filter(
            EmailMessage.thread_id == thread_id
        ).order_by(EmailMessage.received_at.asc()).all()

    def list_threads(self, account_id, folder: str = "inbox", limit: int = 50, offset: int = 0) -> List[EmailThread]:
        """
        List an account's threads for one of the mirrored folders.

        Args:
            folder: inbox, sent, trash or starred

        Raises:
            ValueError: Unknown folder
        """
        if folder not in FOLDERS:
            raise ValueError(f"Unknown folder '{folder}'")

        query = self.db.query(EmailThread).filter(EmailThread.account_id == account_id)
        not_trashed = ~_label_filter(EmailThread.labels, LABEL_TRASH)
        if folder == "inbox":
            query = query.filter(_label_filter(EmailThread.labels, LABEL_INBOX), not_trashed)
        elif folder == "sent":
            query = query.filter(_label_filter(EmailThread.labels, LABEL_SENT), not_trashed)
        elif folder == "trash":
            query = query.filter(_label_filter(EmailThread.labels, LABEL_TRASH))
        else:
            query = query.filter(EmailThread.is_starred.is_(True), not_trashed)

        return query.order_by(EmailThread.last_message_at.desc()).offset(offset).limit(limit).all()

    # ------------------------------------------------------------------
    # Drafts & send status
    # ------------------------------------------------------------------

    def get_draft(self, draft_id) -> Optional[EmailDraft]:
        if draft_id is None:
            return None
        return self.db.get(EmailDraft, draft_id)

    def get_send_status(self, status_id) -> Optional[SendStatus]:
        return self.db.get(SendStatus, status_id)

    def select_retry_candidates(self, statuses: List[str], limit: int, now: Optional[datetime] = None) -> List[SendStatus]:
        """Failed rows under their retry ceiling whose backoff has elapsed."""
        now = now or utcnow()
        return self.db.query(SendStatus).filter(
            SendStatus.status.in_(statuses),
            SendStatus.retry_count < SendStatus.max_retries,
            SendStatus.next_retry_at.isnot(None),
            SendStatus.next_retry_at <= now,
        ).order_by(SendStatus.next_retry_at.asc()).limit(limit).all()

    def claim_for_retry(self, status: SendStatus) -> bool:
        """
        Move a failed row to 'sending' and bump its retry count.

        Guarded by the status and retry_count read by the caller, so two
        scanners holding the same snapshot cannot both claim it.
        """
        expected_status = status.status
        expected_count = status.retry_count
        result = self.db.execute(
            update(SendStatus)
            .where(
                SendStatus.id == status.id,
                SendStatus.status == expected_status,
                SendStatus.retry_count == expected_count,
                SendStatus.retry_count < SendStatus.max_retries,
            )
            .values(
                status=SendStatusValue.SENDING.value,
                retry_count=expected_count + 1,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        self.commit()
        if result.rowcount != 1:
            return False
        self.db.refresh(status)
        return True

    def select_due_scheduled(self, limit: int, now: Optional[datetime] = None) -> List[SendStatus]:
        now = now or utcnow()
        return self.db.query(SendStatus).filter(
            SendStatus.status == SendStatusValue.SCHEDULED.value,
            SendStatus.scheduled_for <= now,
        ).order_by(SendStatus.scheduled_for.asc()).limit(limit).all()

    def claim_scheduled(self, status: SendStatus) -> bool:
        """Move a due scheduled row to 'sending' unless another worker got it first."""
        result = self.db.execute(
            update(SendStatus)
            .where(
                SendStatus.id == status.id,
                SendStatus.status == SendStatusValue.SCHEDULED.value,
            )
            .values(status=SendStatusValue.SENDING.value, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        self.commit()
        if result.rowcount != 1:
            return False
        self.db.refresh(status)
        return True
