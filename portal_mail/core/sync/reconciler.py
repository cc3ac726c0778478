"""
Message Reconciler

Applies a batch of remote messages to the local thread/message mirror.

Rules:
- One thread row per (account, remote thread id); one message row per remote message id
- Message bodies and identifiers are written once; later passes only touch
  labels and read/starred flags
- Thread summary fields come from the most recent message of the batch
- A malformed item is logged and skipped, the rest of the batch proceeds

The reconciler never commits; the sync coordinator owns the transaction.
"""
from dataclasses import dataclass
from typing import Dict, Iterable, List, Tuple, Union
import logging

from pydantic import ValidationError
from sqlalchemy.orm import Session

from portal_mail.core.database.models import EmailThread, EmailMessage, LABEL_INBOX, LABEL_TRASH
from portal_mail.core.database.repository import MailRepository, sanitize_for_postgres
from portal_mail.core.mailbox.base import RemoteMessage

logger = logging.getLogger(__name__)


@dataclass
class ReconcileStats:
    threads_processed: int = 0
    messages_processed: int = 0
    messages_skipped: int = 0


def _merge_participants(existing: List[dict], messages: Iterable[RemoteMessage]) -> List[dict]:
    participants = list(existing or [])
    seen = {(p.get("email") or "").lower() for p in participants}
    for msg in messages:
        for addr in [msg.from_address, *msg.to]:
            key = addr.email.lower()
            if key and key not in seen:
                seen.add(key)
                participants.append(addr.as_dict())
    return participants


class MessageReconciler:
    """Upserts remote messages into the local store for one account."""

    def __init__(self, db: Session, account_id):
        self.db = db
        self.account_id = account_id
        self.repo = MailRepository(db)

    def _validate(self, items: Iterable[Union[RemoteMessage, dict]], stats: ReconcileStats) -> List[RemoteMessage]:
        valid = []
        for item in items:
            try:
                valid.append(item if isinstance(item, RemoteMessage) else RemoteMessage.model_validate(item))
            except (ValidationError, TypeError) as e:
                stats.messages_skipped += 1
                item_id = item.get("id") if isinstance(item, dict) else None
                logger.warning(f"Skipping malformed message {item_id or '<no id>'}: {e}")
        return valid

    def reconcile(self, messages: Iterable[Union[RemoteMessage, dict]]) -> ReconcileStats:
        """
        Apply a batch of remote messages.

        Returns:
            ReconcileStats counting newly created threads and newly inserted messages
        """
        stats = ReconcileStats()
        valid = self._validate(messages, stats)

        # Last copy of a message wins when a batch repeats it
        latest_by_id: Dict[str, RemoteMessage] = {}
        for msg in valid:
            latest_by_id[msg.id] = msg

        groups: Dict[str, List[RemoteMessage]] = {}
        for msg in latest_by_id.values():
            groups.setdefault(msg.thread_id, []).append(msg)

        for remote_thread_id, group in groups.items():
            try:
                created_thread, inserted = self._reconcile_thread(remote_thread_id, group)
            except (ValueError, TypeError, AttributeError) as e:
                stats.messages_skipped += len(group)
                logger.error(f"Failed to reconcile thread {remote_thread_id}: {e}")
                continue
            if created_thread:
                stats.threads_processed += 1
            stats.messages_processed += inserted

        logger.info(
            f"Reconciled {stats.messages_processed} messages in {stats.threads_processed} threads "
            f"for account {self.account_id} ({stats.messages_skipped} skipped)"
        )
        return stats

    def _reconcile_thread(self, remote_thread_id: str, group: List[RemoteMessage]) -> Tuple[bool, int]:
        latest = max(group, key=lambda m: m.received_at)
        unread = sum(1 for m in group if not m.is_read)

        thread = self.repo.get_thread_by_remote_id(self.account_id, remote_thread_id)
        is_new_thread = thread is None
        if is_new_thread:
            thread = EmailThread(
                account_id=self.account_id,
                remote_thread_id=remote_thread_id,
                participants=[],
                last_message_at=latest.received_at,
            )
            self.db.add(thread)

        thread.subject = sanitize_for_postgres(latest.subject, "subject") or "(No Subject)"
        thread.snippet = sanitize_for_postgres(latest.snippet, "snippet") or ""
        thread.labels = list(latest.labels)
        thread.is_starred = latest.is_starred
        thread.participants = _merge_participants(thread.participants, group)
        thread.unread_count = unread
        if thread.last_message_at is None or latest.received_at > thread.last_message_at:
            thread.last_message_at = latest.received_at
        self.db.flush()

        existing = self.repo.get_messages_by_remote_ids(m.id for m in group)
        inserted = 0
        for msg in group:
            row = existing.get(msg.id)
            if row is None:
                self.db.add(self._new_message(thread, msg))
                inserted += 1
            else:
                row.labels = list(msg.labels)
                row.is_read = msg.is_read
                row.is_starred = msg.is_starred
        self.db.flush()

        if is_new_thread:
            thread.message_count = len(group)
        else:
            thread.message_count = self.repo.count_thread_messages(thread.id)
        return is_new_thread, inserted

    def _new_message(self, thread: EmailThread, msg: RemoteMessage) -> EmailMessage:
        return EmailMessage(
            thread_id=thread.id,
            remote_message_id=msg.id,
            from_address=msg.from_address.as_dict(),
            to_addresses=[a.as_dict() for a in msg.to],
            cc_addresses=[a.as_dict() for a in msg.cc],
            bcc_addresses=[a.as_dict() for a in msg.bcc],
            subject=sanitize_for_postgres(msg.subject, "subject") or "",
            snippet=sanitize_for_postgres(msg.snippet, "snippet"),
            body_html=sanitize_for_postgres(msg.body_html, "body_html"),
            body_text=sanitize_for_postgres(msg.body_text, "body_text"),
            labels=list(msg.labels),
            is_read=msg.is_read,
            is_starred=msg.is_starred,
            in_reply_to=msg.in_reply_to,
            references=list(msg.references),
            raw_headers={k: sanitize_for_postgres(v, k) for k, v in msg.headers.items()},
            sent_at=msg.sent_at,
            received_at=msg.received_at,
        )

    def mark_deleted(self, remote_message_ids: Iterable[str]) -> int:
        """
        Tag messages deleted remotely with TRASH. Rows are never removed.

        A thread whose messages are all trashed is tagged as well.

        Returns:
            Number of local messages tagged
        """
        rows = self.repo.get_messages_by_remote_ids(remote_message_ids)
        touched_threads = set()
        for row in rows.values():
            labels = [label for label in (row.labels or []) if label != LABEL_INBOX]
            if LABEL_TRASH not in labels:
                labels.append(LABEL_TRASH)
            row.labels = labels
            touched_threads.add(row.thread_id)
        self.db.flush()

        for thread_id in touched_threads:
            thread = self.repo.get_thread(thread_id)
            messages = self.repo.list_thread_messages(thread_id)
            if thread is not None and all(LABEL_TRASH in (m.labels or []) for m in messages):
                thread.labels = [l for l in (thread.labels or []) if l != LABEL_INBOX] + (
                    [] if LABEL_TRASH in (thread.labels or []) else [LABEL_TRASH]
                )
        self.db.flush()

        if rows:
            logger.info(f"Marked {len(rows)} deleted messages as trash for account {self.account_id}")
        return len(rows)
