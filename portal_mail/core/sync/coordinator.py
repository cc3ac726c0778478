"""
Sync Coordinator

Pulls remote mailbox state for one account into the local mirror.

Strategy:
- Full sync when forced or when no watermark (history id) is stored
- Incremental sync from the stored watermark otherwise
- Any incremental failure (expired watermark included) rolls back and
  falls back to a full sync; the caller only sees the final outcome
- A message that vanished or arrives malformed is skipped on its own

Only one sync runs per account at a time: the coordinator claims a lease on
the account's sync state row before doing any work and releases it when
the pass finishes, successfully or not.
"""
import asyncio
import logging
import os
import socket
import time
import uuid
from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple

from pydantic import ValidationError
from sqlalchemy.orm import Session

from portal_mail.core.config import Settings, get_settings
from portal_mail.core.database.repository import MailRepository
from portal_mail.core.errors import AccountNotFoundError, MessageNotFoundError, sanitize_error_message
from portal_mail.core.mailbox.base import MailboxClient, RemoteMessage
from portal_mail.core.sync.reconciler import MessageReconciler

logger = logging.getLogger(__name__)

FULL = "full"
INCREMENTAL = "incremental"

SYNC_IN_PROGRESS = "Sync already in progress"


@dataclass
class SyncOptions:
    force_full_sync: bool = False
    max_results: Optional[int] = None
    label_ids: Optional[List[str]] = None


@dataclass
class SyncResult:
    success: bool
    account_id: str
    sync_type: str
    threads_processed: int = 0
    messages_processed: int = 0
    duration_ms: int = 0
    error: Optional[str] = None
    skipped: bool = False


def _as_number(value: Optional[str]) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def later_watermark(current: Optional[str], candidate: Optional[str]) -> Optional[str]:
    """
    The watermark to keep after a successful pass.

    Numeric history ids are compared as numbers and never move backwards.
    Opaque (non-numeric) ids cannot be ordered, so the newer value wins.
    """
    if not candidate:
        return current
    if not current:
        return candidate
    current_num, candidate_num = _as_number(current), _as_number(candidate)
    if current_num is not None and candidate_num is not None:
        return candidate if candidate_num > current_num else current
    return candidate


def highest_history_id(messages: Iterable[RemoteMessage]) -> Optional[str]:
    best = None
    for msg in messages:
        best = later_watermark(best, msg.history_id)
    return best


def make_lease_owner() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class SyncCoordinator:
    """
    Runs sync passes for one account.

    Args:
        db: Session used for the whole pass
        account_id: Account to sync
        client: Mailbox client for that account
    """

    def __init__(
        self,
        db: Session,
        account_id,
        client: MailboxClient,
        settings: Optional[Settings] = None,
        lease_owner: Optional[str] = None,
    ):
        self.db = db
        self.account_id = account_id
        self.client = client
        self.settings = settings or get_settings()
        self.lease_owner = lease_owner or make_lease_owner()
        self.repo = MailRepository(db)
        self.reconciler = MessageReconciler(db, account_id)

    async def sync(self, options: Optional[SyncOptions] = None) -> SyncResult:
        """
        Run one sync pass.

        Returns:
            SyncResult; success=False with skipped=True when another worker
            holds the lease, success=False with error on failure

        Raises:
            AccountNotFoundError: Unknown account
        """
        options = options or SyncOptions()
        started = time.monotonic()
        account_key = str(self.account_id)

        if self.repo.get_account(self.account_id) is None:
            raise AccountNotFoundError(f"Email account {self.account_id} not found")

        self.repo.ensure_sync_state(self.account_id)
        if not self.repo.acquire_sync_lease(self.account_id, self.lease_owner, self.settings.sync_lease_seconds):
            return SyncResult(
                success=False,
                account_id=account_key,
                sync_type=FULL,
                error=SYNC_IN_PROGRESS,
                skipped=True,
            )

        state = self.repo.get_sync_state(self.account_id)
        old_watermark = state.history_id
        use_full = options.force_full_sync or not old_watermark
        logger.info(
            f"Starting {'FULL' if use_full else 'INCREMENTAL'} sync for account {account_key}"
            + ("" if use_full else f" from history {old_watermark}")
        )

        try:
            if use_full:
                sync_type = FULL
                threads, messages, new_watermark = await self._full_sync(options)
            else:
                try:
                    sync_type = INCREMENTAL
                    threads, messages, new_watermark = await self._incremental_sync(old_watermark)
                except Exception as e:
                    self.repo.rollback()
                    logger.warning(
                        f"Incremental sync failed for account {account_key}, falling back to full sync: "
                        f"{sanitize_error_message(str(e))}"
                    )
                    sync_type = FULL
                    threads, messages, new_watermark = await self._full_sync(options)

            state = self.repo.get_sync_state(self.account_id)
            self.repo.complete_sync(
                state,
                history_id=later_watermark(old_watermark, new_watermark),
                full=sync_type == FULL,
                messages_synced=messages,
            )
        except Exception as e:
            self.repo.rollback()
            error = sanitize_error_message(str(e)) or type(e).__name__
            duration_ms = int((time.monotonic() - started) * 1000)
            logger.error(f"Sync failed for account {account_key} after {duration_ms}ms: {error}")
            self.repo.fail_sync(self.account_id, error)
            return SyncResult(
                success=False,
                account_id=account_key,
                sync_type=FULL,
                duration_ms=duration_ms,
                error=error,
            )

        duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            f"Sync completed for account {account_key}: type={sync_type}, "
            f"threads={threads}, messages={messages}, duration={duration_ms}ms"
        )
        return SyncResult(
            success=True,
            account_id=account_key,
            sync_type=sync_type,
            threads_processed=threads,
            messages_processed=messages,
            duration_ms=duration_ms,
        )

    async def _full_sync(self, options: SyncOptions) -> Tuple[int, int, Optional[str]]:
        max_results = options.max_results or self.settings.sync_default_max_results
        messages = await self.client.list_messages(max_results=max_results, label_ids=options.label_ids)
        stats = self.reconciler.reconcile(messages)

        try:
            profile = await self.client.get_profile()
            watermark = profile.history_id
        except Exception as e:
            logger.warning(f"Could not read mailbox profile for account {self.account_id}: {sanitize_error_message(str(e))}")
            watermark = None
        if not watermark:
            watermark = highest_history_id(messages)

        return stats.threads_processed, stats.messages_processed, watermark

    async def _incremental_sync(self, start_history_id: str) -> Tuple[int, int, Optional[str]]:
        page = await self.client.get_history(start_history_id, self.settings.sync_history_batch_size)
        logger.info(f"Fetched {len(page.records)} history records for account {self.account_id}")

        changed: List[str] = []
        deleted = set()
        for record in page.records:
            for message_id in record.messages_added + record.labels_changed:
                if message_id not in changed:
                    changed.append(message_id)
            deleted.update(record.messages_deleted)

        if deleted:
            self.reconciler.mark_deleted(deleted)

        to_fetch = [message_id for message_id in changed if message_id not in deleted]
        messages = await self._fetch_messages(to_fetch)
        stats = self.reconciler.reconcile(messages)

        return stats.threads_processed, stats.messages_processed, page.history_id

    async def _fetch_messages(self, message_ids: List[str]) -> List[RemoteMessage]:
        semaphore = asyncio.Semaphore(max(1, self.settings.sync_fetch_concurrency))

        async def fetch(message_id: str):
            async with semaphore:
                return await self.client.get_message(message_id)

        results = await asyncio.gather(*(fetch(m) for m in message_ids), return_exceptions=True)

        messages = []
        for message_id, result in zip(message_ids, results):
            if isinstance(result, MessageNotFoundError):
                logger.info(f"Message {message_id} vanished before it could be fetched, skipping")
            elif isinstance(result, (ValidationError, ValueError, TypeError)):
                logger.warning(f"Skipping malformed message {message_id}: {result}")
            elif isinstance(result, BaseException):
                raise result
            else:
                messages.append(result)
        return messages
