"""
Label actions on mirrored messages and threads.

Every action calls the provider first and only then mirrors the change
locally, so a provider failure leaves the local store untouched.
"""
import logging
from typing import List

from sqlalchemy.orm import Session

from portal_mail.core.database.models import (
    EmailMessage, EmailThread, LABEL_INBOX, LABEL_STARRED, LABEL_TRASH, LABEL_UNREAD,
)
from portal_mail.core.database.repository import MailRepository
from portal_mail.core.errors import MailError, TransportError
from portal_mail.core.mailbox.base import MailboxClient

logger = logging.getLogger(__name__)


def _with(labels: List[str], label: str) -> List[str]:
    labels = list(labels or [])
    if label not in labels:
        labels.append(label)
    return labels


def _without(labels: List[str], label: str) -> List[str]:
    return [l for l in (labels or []) if l != label]


class LabelActions:
    """Read/star/trash mutations for one account's mailbox."""

    def __init__(self, db: Session, client: MailboxClient):
        self.db = db
        self.client = client
        self.repo = MailRepository(db)

    async def _call(self, description: str, coro):
        try:
            await coro
        except TransportError:
            raise
        except Exception as e:
            raise TransportError(f"Failed to {description}: {e}") from e

    def _refresh_thread(self, thread: EmailThread):
        messages = self.repo.list_thread_messages(thread.id)
        thread.unread_count = sum(1 for m in messages if not m.is_read)
        thread.is_starred = any(m.is_starred for m in messages)

    async def set_read(self, message: EmailMessage, read: bool) -> EmailMessage:
        if read:
            await self._call("mark message read", self.client.mark_read(message.remote_message_id))
            message.labels = _without(message.labels, LABEL_UNREAD)
        else:
            await self._call("mark message unread", self.client.mark_unread(message.remote_message_id))
            message.labels = _with(message.labels, LABEL_UNREAD)
        message.is_read = read
        self.db.flush()
        self._refresh_thread(message.thread)
        self.repo.commit()
        return message

    async def set_starred(self, message: EmailMessage, starred: bool) -> EmailMessage:
        if starred:
            await self._call("star message", self.client.star(message.remote_message_id))
            message.labels = _with(message.labels, LABEL_STARRED)
        else:
            await self._call("unstar message", self.client.unstar(message.remote_message_id))
            message.labels = _without(message.labels, LABEL_STARRED)
        message.is_starred = starred
        self.db.flush()
        self._refresh_thread(message.thread)
        self.repo.commit()
        return message

    async def trash_thread(self, thread: EmailThread) -> EmailThread:
        """Move every message of the thread to trash (a label; rows stay)."""
        messages = self._remote_messages(thread)
        for message in messages:
            await self._call("trash message", self.client.trash(message.remote_message_id))
        for message in messages:
            message.labels = _with(_without(message.labels, LABEL_INBOX), LABEL_TRASH)
        thread.labels = _with(_without(thread.labels, LABEL_INBOX), LABEL_TRASH)
        self.repo.commit()
        logger.info(f"Trashed thread {thread.id} ({len(messages)} messages)")
        return thread

    async def restore_thread(self, thread: EmailThread) -> EmailThread:
        messages = self._remote_messages(thread)
        for message in messages:
            await self._call("restore message", self.client.untrash(message.remote_message_id))
        for message in messages:
            message.labels = _with(_without(message.labels, LABEL_TRASH), LABEL_INBOX)
        thread.labels = _with(_without(thread.labels, LABEL_TRASH), LABEL_INBOX)
        self.repo.commit()
        logger.info(f"Restored thread {thread.id} ({len(messages)} messages)")
        return thread

    async def set_thread_starred(self, thread: EmailThread, starred: bool) -> EmailThread:
        """Star the newest message (Gmail-style) or unstar every starred one."""
        messages = self._remote_messages(thread)
        if starred:
            latest = messages[-1]
            await self._call("star message", self.client.star(latest.remote_message_id))
            latest.is_starred = True
            latest.labels = _with(latest.labels, LABEL_STARRED)
        else:
            starred_messages = [m for m in messages if m.is_starred]
            for message in starred_messages:
                await self._call("unstar message", self.client.unstar(message.remote_message_id))
            for message in starred_messages:
                message.is_starred = False
                message.labels = _without(message.labels, LABEL_STARRED)
        thread.is_starred = starred
        self.repo.commit()
        return thread

    def _remote_messages(self, thread: EmailThread) -> List[EmailMessage]:
        messages = [
            m for m in self.repo.list_thread_messages(thread.id)
            if not m.remote_message_id.startswith("local:")
        ]
        if not messages:
            raise MailError(f"Thread {thread.id} has no messages known to the provider")
        return messages
