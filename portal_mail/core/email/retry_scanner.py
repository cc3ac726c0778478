"""
Retry and scheduled-send scanners

Periodic jobs over SendStatus rows:
- RetryScanner: failed sends under their retry ceiling whose backoff elapsed
- ScheduledSendScanner: scheduled sends whose time has come

Each row is claimed with a guarded conditional update before any transport
call, so overlapping scans never deliver the same row twice.
"""
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from pydantic import ValidationError
from sqlalchemy.orm import Session

from portal_mail.core.config import Settings, get_settings
from portal_mail.core.database.models import EmailAccount, SendStatus, FAILURE_STATUSES
from portal_mail.core.database.repository import MailRepository
from portal_mail.core.email.models import SendParams
from portal_mail.core.email.send_pipeline import SendPipeline, SendResult, params_from_draft, record_send_failure
from portal_mail.core.errors import (
    AccountNotFoundError, DraftNotFoundError, MailError, RetryLimitExceededError,
    SendStatusNotFoundError, TransportError,
)
from portal_mail.core.mailbox.base import MailboxClient

logger = logging.getLogger(__name__)

ClientFactory = Callable[[EmailAccount], MailboxClient]


@dataclass
class RetryScanResult:
    scanned: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0


class RetryScanner:
    """
    Re-sends failed messages with backoff.

    Args:
        db: Session for the scan
        client_factory: Builds the mailbox client of a sending account
    """

    def __init__(self, db: Session, client_factory: ClientFactory, settings: Optional[Settings] = None):
        self.db = db
        self.client_factory = client_factory
        self.settings = settings or get_settings()
        self.repo = MailRepository(db)

    def _params_for(self, status: SendStatus) -> Optional[SendParams]:
        """Send parameters from the row's draft, or from its payload for draftless sends."""
        draft = self.repo.get_draft(status.draft_id)
        if draft is not None:
            return params_from_draft(draft, draft.account)
        if status.draft_id is None and status.payload:
            return SendParams.model_validate(status.payload)
        return None

    async def run_auto_retry(self) -> RetryScanResult:
        """Retry every eligible row once."""
        statuses = self.settings.retryable_statuses_list
        candidates = self.repo.select_retry_candidates(statuses, self.settings.retry_batch_size)
        result = RetryScanResult(scanned=len(candidates))

        if not candidates:
            logger.debug("No sends ready for retry")
            return result
        logger.info(f"Found {len(candidates)} sends ready for retry")

        for status in candidates:
            try:
                params = self._params_for(status)
            except ValidationError as e:
                logger.warning(f"Send {status.id} has an unusable payload, skipping: {e}")
                self._park(status)
                result.skipped += 1
                continue
            if params is None:
                logger.warning(f"Draft {status.draft_id} for send {status.id} no longer exists, skipping")
                self._park(status)
                result.skipped += 1
                continue

            if not self.repo.claim_for_retry(status):
                logger.info(f"Send {status.id} was claimed by another worker, skipping")
                result.skipped += 1
                continue

            logger.info(f"Retrying send {status.id} (attempt {status.retry_count}/{status.max_retries})")
            if await self._attempt(status, params):
                result.succeeded += 1
            else:
                result.failed += 1

        logger.info(
            f"Email auto-retry complete: {result.succeeded} succeeded, "
            f"{result.failed} failed, {result.skipped} skipped"
        )
        return result

    async def retry_one(self, status_id) -> SendResult:
        """
        Manual retry of one failed send, ignoring its backoff time.

        Raises:
            SendStatusNotFoundError: Unknown status id
            RetryLimitExceededError: All retries used
            DraftNotFoundError: The originating draft is gone
            MailError: The row is not in a failure state or is being retried
            TransportError: The retry failed (already recorded)
        """
        status = self.repo.get_send_status(status_id)
        if status is None:
            raise SendStatusNotFoundError(f"Send status {status_id} not found")
        if status.status not in FAILURE_STATUSES:
            raise MailError(f"Send {status_id} is '{status.status}'; only failed sends can be retried")
        if status.retry_count >= status.max_retries:
            raise RetryLimitExceededError(
                f"Send {status_id} already used {status.retry_count}/{status.max_retries} retries",
                retry_count=status.retry_count,
                max_retries=status.max_retries,
            )

        try:
            params = self._params_for(status)
        except ValidationError as e:
            raise DraftNotFoundError(f"Send {status_id} has an unusable payload: {e}") from e
        if params is None:
            raise DraftNotFoundError(f"Draft {status.draft_id} for send {status_id} no longer exists")
        pipeline = self._pipeline(params)
        if not self.repo.claim_for_retry(status):
            raise MailError(f"Send {status_id} is already being retried")

        logger.info(f"Manual retry of send {status.id} (attempt {status.retry_count}/{status.max_retries})")
        return await pipeline.retry(status, params)

    def _park(self, status: SendStatus):
        # Unsendable rows leave the automatic schedule; manual retry still reports why
        status.next_retry_at = None
        self.repo.commit()

    def _pipeline(self, params: SendParams) -> SendPipeline:
        account = self.db.query(EmailAccount).filter(EmailAccount.email == params.account_email).first()
        if account is None:
            raise AccountNotFoundError(f"Email account {params.account_email} not found")
        return SendPipeline(self.db, self.client_factory(account), self.settings)

    async def _attempt(self, status: SendStatus, params: SendParams) -> bool:
        try:
            pipeline = self._pipeline(params)
            await pipeline.retry(status, params)
            return True
        except TransportError:
            return False
        except Exception as e:
            # Failures before the transport call still count as an attempt
            self.repo.rollback()
            logger.error(f"Retry of send {status.id} failed before transport: {e}")
            record_send_failure(self.db, status, e)
            return False


class ScheduledSendScanner(RetryScanner):
    """Delivers scheduled sends whose time has come."""

    async def run_due_sends(self) -> RetryScanResult:
        due = self.repo.select_due_scheduled(self.settings.retry_batch_size)
        result = RetryScanResult(scanned=len(due))
        if not due:
            return result
        logger.info(f"Found {len(due)} scheduled sends due")

        for status in due:
            if not self.repo.claim_scheduled(status):
                logger.info(f"Scheduled send {status.id} was claimed by another worker, skipping")
                result.skipped += 1
                continue

            try:
                params = SendParams.model_validate(status.payload or {})
            except ValidationError as e:
                logger.error(f"Scheduled send {status.id} has an unusable payload: {e}")
                record_send_failure(self.db, status, e)
                result.failed += 1
                continue

            if await self._attempt(status, params):
                result.succeeded += 1
            else:
                result.failed += 1

        logger.info(
            f"Scheduled sends complete: {result.succeeded} sent, "
            f"{result.failed} failed, {result.skipped} skipped"
        )
        return result
