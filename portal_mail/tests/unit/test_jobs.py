"""
Tests for the periodic mail jobs and their background loops
"""
import asyncio
import pytest
import uuid
from datetime import timedelta

from portal_mail.core.database.models import EmailThread, SendStatus, utcnow
from portal_mail.core.database.repository import MailRepository
from portal_mail.core.email import SendParams, SendPipeline
from portal_mail.core.errors import AccountNotFoundError, SyncInProgressError
from portal_mail.core.jobs import BackgroundJobs, MailJobs
from portal_mail.core.sync import SyncOptions


@pytest.fixture
def jobs(session_factory, settings, client_factory):
    return MailJobs(session_factory, settings, client_factory_builder=lambda db, s, cache: client_factory)


class TestMailJobs:

    @pytest.mark.asyncio
    async def test_account_sync(self, db, account, jobs, fake_client, make_message):
        fake_client.messages = {m.id: m for m in [make_message("m1", "t1"), make_message("m2", "t2")]}

        result = await jobs.run_account_sync(account.id)

        assert result.success is True
        assert result.sync_type == "full"
        assert result.messages_processed == 2
        assert db.query(EmailThread).count() == 2

    @pytest.mark.asyncio
    async def test_unknown_account(self, jobs):
        with pytest.raises(AccountNotFoundError):
            await jobs.run_account_sync(uuid.uuid4())

    @pytest.mark.asyncio
    async def test_held_lease(self, db, account, jobs):
        assert MailRepository(db).acquire_sync_lease(account.id, "other-worker", 600) is True

        skipped = await jobs.run_account_sync(account.id, SyncOptions())
        assert skipped.skipped is True

        with pytest.raises(SyncInProgressError):
            await jobs.run_account_sync(account.id, require_lease=True)

    @pytest.mark.asyncio
    async def test_sync_all_skips_disabled_accounts(self, db, account, jobs, fake_client, make_message):
        fake_client.messages = {"m1": make_message("m1")}
        account.sync_enabled = False
        db.commit()

        assert await jobs.sync_all_accounts() == []

        account.sync_enabled = True
        db.commit()
        results = await jobs.sync_all_accounts()
        assert [r.success for r in results] == [True]

    @pytest.mark.asyncio
    async def test_retry_and_scheduled_ticks(self, db, account, jobs, fake_client, settings):
        pipeline = SendPipeline(db, fake_client, settings)
        pipeline.schedule(
            SendParams(account_email="me@example.com", to=["a@example.org"], subject="Later", text="Hi"),
            utcnow() - timedelta(seconds=1),
        )

        assert (await jobs.run_retry_tick()).scanned == 0
        scheduled = await jobs.run_scheduled_tick()

        assert scheduled.succeeded == 1
        db.expire_all()
        assert db.query(SendStatus).one().status == "sent"


class TestBackgroundJobs:

    @pytest.mark.asyncio
    async def test_loops_run_and_stop(self, settings):
        calls = []

        class RecordingJobs:
            async def run_retry_tick(self):
                calls.append("retry")

            async def run_scheduled_tick(self):
                calls.append("scheduled")

            async def sync_all_accounts(self):
                calls.append("sync")

        settings.retry_interval_seconds = 60
        settings.scheduled_interval_seconds = 60
        settings.sync_interval_seconds = 0
        background = BackgroundJobs(RecordingJobs(), settings)

        background.start()
        await asyncio.sleep(0.05)
        assert background.running is True
        await background.stop()

        assert background.running is False
        assert sorted(calls) == ["retry", "scheduled"]

    @pytest.mark.asyncio
    async def test_failing_job_keeps_loop_alive(self, settings):
        attempts = []

        class FailingJobs:
            async def run_retry_tick(self):
                attempts.append(1)
                raise RuntimeError("database unavailable")

            async def run_scheduled_tick(self):
                pass

            async def sync_all_accounts(self):
                pass

        settings.retry_interval_seconds = 0.01
        settings.scheduled_interval_seconds = 0
        settings.sync_interval_seconds = 0
        background = BackgroundJobs(FailingJobs(), settings)

        background.start()
        await asyncio.sleep(0.1)
        await background.stop()

        assert len(attempts) >= 2
