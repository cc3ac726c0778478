"""
Unit tests for the mail repository: folders, sanitizing, retry selection
"""
import pytest
from datetime import timedelta

from portal_mail.core.database.models import SendStatus, SyncState, utcnow
from portal_mail.core.database.repository import MailRepository, sanitize_for_postgres
from portal_mail.core.sync.reconciler import MessageReconciler


@pytest.fixture
def repo(db):
    return MailRepository(db)


@pytest.fixture
def mailbox(db, account, make_message):
    MessageReconciler(db, account.id).reconcile([
        make_message("in-1", "t-inbox", minutes=1),
        make_message("in-2", "t-newer", minutes=30),
        make_message("sent-1", "t-sent", minutes=2, labels=["SENT"]),
        make_message("star-1", "t-star", minutes=3, labels=["INBOX", "STARRED"]),
        make_message("bin-1", "t-trash", minutes=4, labels=["TRASH"]),
    ])
    db.commit()


class TestSanitize:

    def test_nul_bytes_removed(self):
        assert sanitize_for_postgres("a\x00b\x00c") == "abc"

    def test_surrogates_replaced(self):
        assert sanitize_for_postgres("ok \ud800 text") == "ok ? text"

    def test_truncation_and_none(self):
        assert sanitize_for_postgres("abcdef", max_length=3) == "abc"
        assert sanitize_for_postgres(None) is None


class TestFolders:

    def _remote_ids(self, threads):
        return [t.remote_thread_id for t in threads]

    def test_inbox_newest_first(self, repo, account, mailbox):
        assert self._remote_ids(repo.list_threads(account.id, "inbox")) == ["t-newer", "t-star", "t-inbox"]

    def test_other_folders(self, repo, account, mailbox):
        assert self._remote_ids(repo.list_threads(account.id, "sent")) == ["t-sent"]
        assert self._remote_ids(repo.list_threads(account.id, "trash")) == ["t-trash"]
        assert self._remote_ids(repo.list_threads(account.id, "starred")) == ["t-star"]

    def test_pagination(self, repo, account, mailbox):
        assert self._remote_ids(repo.list_threads(account.id, "inbox", limit=1, offset=1)) == ["t-star"]

    def test_unknown_folder(self, repo, account):
        with pytest.raises(ValueError):
            repo.list_threads(account.id, "spam")


class TestSyncState:

    def test_ensure_is_idempotent(self, db, repo, account):
        first = repo.ensure_sync_state(account.id)
        second = repo.ensure_sync_state(account.id)

        assert first.id == second.id
        assert db.query(SyncState).count() == 1

    def test_fail_keeps_watermark(self, db, repo, account):
        state = repo.ensure_sync_state(account.id)
        state.history_id = "900"
        repo.commit()
        assert repo.acquire_sync_lease(account.id, "worker-a", 600) is True

        repo.fail_sync(account.id, "Gmail API error 500")

        state = repo.get_sync_state(account.id)
        assert state.status == "error"
        assert state.history_id == "900"
        assert state.lease_owner is None


class TestRetryCandidates:

    def _row(self, db, account, status="failed", retry_count=0, due_in=-1):
        row = SendStatus(
            account_id=account.id,
            status=status,
            retry_count=retry_count,
            max_retries=3,
            next_retry_at=utcnow() + timedelta(minutes=due_in),
        )
        db.add(row)
        db.commit()
        return row

    def test_selection(self, db, repo, account):
        due = self._row(db, account)
        self._row(db, account, due_in=10)
        self._row(db, account, retry_count=3)
        self._row(db, account, status="sent")

        assert [r.id for r in repo.select_retry_candidates(["failed", "soft"], limit=10)] == [due.id]

    def test_oldest_first(self, db, repo, account):
        newer = self._row(db, account, due_in=-1)
        older = self._row(db, account, due_in=-5)

        assert [r.id for r in repo.select_retry_candidates(["failed"], limit=10)] == [older.id, newer.id]
