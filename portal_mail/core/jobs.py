"""
Periodic mail jobs

Each job opens its own session, so it can run from a FastAPI background
task, an asyncio loop in the API process, or the CLI.
"""
import asyncio
import logging
from typing import Callable, List, Optional

from sqlalchemy.orm import Session

from portal_mail.core.accounts import AccountCache, AccountManager, EncryptedCredentialStore, GmailClientFactory
from portal_mail.core.config import Settings, get_settings
from portal_mail.core.email.retry_scanner import ClientFactory, RetryScanner, RetryScanResult, ScheduledSendScanner
from portal_mail.core.errors import MailError, SyncInProgressError, sanitize_error_message
from portal_mail.core.sync.coordinator import SyncCoordinator, SyncOptions, SyncResult

logger = logging.getLogger(__name__)

ClientFactoryBuilder = Callable[[Session, Settings, Optional[AccountCache]], ClientFactory]


def gmail_client_factory(db: Session, settings: Settings, cache: Optional[AccountCache]) -> ClientFactory:
    return GmailClientFactory(EncryptedCredentialStore(db), settings, cache)


class MailJobs:
    """
    Entry points for sync, retry and scheduled-send runs.

    Args:
        session_factory: Creates a new session per job run
        cache: Shared cache of built mailbox clients
        client_factory_builder: Builds the per-session mailbox client factory
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        settings: Optional[Settings] = None,
        cache: Optional[AccountCache] = None,
        client_factory_builder: ClientFactoryBuilder = gmail_client_factory,
    ):
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self.cache = cache
        self.client_factory_builder = client_factory_builder

    async def run_account_sync(
        self,
        account_id,
        options: Optional[SyncOptions] = None,
        require_lease: bool = False,
    ) -> SyncResult:
        """
        Sync one account in a fresh session.

        Raises:
            AccountNotFoundError: Unknown account
            SyncInProgressError: Another worker holds the lease (only with require_lease)
        """
        db = self.session_factory()
        try:
            account = AccountManager(db, cache=self.cache).get_account(account_id)
            client = self.client_factory_builder(db, self.settings, self.cache)(account)
            coordinator = SyncCoordinator(db, account.id, client, self.settings)
            result = await coordinator.sync(options)
            if result.skipped and require_lease:
                raise SyncInProgressError(result.error)
            return result
        finally:
            db.close()

    async def sync_all_accounts(self, options: Optional[SyncOptions] = None) -> List[SyncResult]:
        """Sync every sync-enabled account, one after another."""
        db = self.session_factory()
        try:
            account_ids = [a.id for a in AccountManager(db).list_sync_enabled()]
        finally:
            db.close()

        results = []
        for account_id in account_ids:
            try:
                results.append(await self.run_account_sync(account_id, options))
            except MailError as e:
                logger.error(f"Could not sync account {account_id}: {sanitize_error_message(str(e))}")
        synced = sum(1 for r in results if r.success)
        logger.info(f"Sync tick complete: {synced}/{len(account_ids)} accounts synced")
        return results

    async def run_retry_tick(self) -> RetryScanResult:
        db = self.session_factory()
        try:
            factory = self.client_factory_builder(db, self.settings, self.cache)
            return await RetryScanner(db, factory, self.settings).run_auto_retry()
        finally:
            db.close()

    async def run_scheduled_tick(self) -> RetryScanResult:
        db = self.session_factory()
        try:
            factory = self.client_factory_builder(db, self.settings, self.cache)
            return await ScheduledSendScanner(db, factory, self.settings).run_due_sends()
        finally:
            db.close()


class BackgroundJobs:
    """Runs the mail jobs on fixed intervals as asyncio tasks."""

    def __init__(self, jobs: MailJobs, settings: Optional[Settings] = None):
        self.jobs = jobs
        self.settings = settings or jobs.settings
        self._tasks: List[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    def start(self):
        """Start the loops. Must be called from a running event loop."""
        if self.running:
            return
        schedule = [
            ("retry", self.settings.retry_interval_seconds, self.jobs.run_retry_tick),
            ("scheduled", self.settings.scheduled_interval_seconds, self.jobs.run_scheduled_tick),
            ("sync", self.settings.sync_interval_seconds, self.jobs.sync_all_accounts),
        ]
        for name, interval, job in schedule:
            if interval and interval > 0:
                self._tasks.append(asyncio.create_task(self._loop(name, interval, job), name=f"mail-{name}"))
                logger.info(f"Started background {name} job every {interval}s")

    async def stop(self):
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        logger.info("Background mail jobs stopped")

    async def _loop(self, name: str, interval: float, job):
        while True:
            try:
                await job()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Background {name} job failed: {sanitize_error_message(str(e))}", exc_info=True)
            await asyncio.sleep(interval)
