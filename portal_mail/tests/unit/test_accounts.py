"""
Tests for connected accounts: TTL cache, credential store, client factory
"""
import os
import pytest
import uuid
from unittest.mock import patch

from portal_mail.core.accounts import (
    AccountCache, AccountManager, EncryptedCredentialStore, GmailClientFactory, OAuthTokens,
)
from portal_mail.core.database.encryption import decrypt_value, generate_encryption_key, reinitialize_cipher
from portal_mail.core.database.models import EmailAccount, SyncState
from portal_mail.core.errors import AccountNotFoundError, MailError


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class TestAccountCache:

    def test_entries_expire(self):
        clock = FakeClock()
        cache = AccountCache(ttl_seconds=60, clock=clock)
        cache.set("a", "client-a")

        assert cache.get("a") == "client-a"
        clock.now += 59
        assert cache.get("a") == "client-a"
        clock.now += 1
        assert cache.get("a") is None
        assert len(cache) == 0

    def test_per_entry_ttl(self):
        clock = FakeClock()
        cache = AccountCache(ttl_seconds=60, clock=clock)
        cache.set("short", 1, ttl_seconds=5)
        cache.set("long", 2)

        clock.now += 10

        assert cache.get("short") is None
        assert cache.get("long") == 2
        assert len(cache) == 1

    def test_invalidate_and_clear(self):
        cache = AccountCache()
        cache.set("a", 1)
        cache.set("b", 2)

        assert cache.invalidate("a") is True
        assert cache.invalidate("a") is False
        assert cache.get("a") is None

        cache.clear()
        assert len(cache) == 0


class TestCredentialStore:

    def test_tokens_are_stored_encrypted(self, db, account):
        row = db.get(EmailAccount, account.id)

        assert row.access_token != "ya29.test-access-token"
        assert decrypt_value(row.access_token) == "ya29.test-access-token"

        tokens = EncryptedCredentialStore(db).decrypt(account.id)
        assert tokens.access_token == "ya29.test-access-token"
        assert tokens.refresh_token == "1//test-refresh-token"

    def test_repr_masks_tokens(self):
        tokens = OAuthTokens(access_token="ya29.secret-value", refresh_token="1//refresh-secret")

        assert "secret" not in repr(tokens)
        assert "ya29***" in repr(tokens)

    def test_unknown_account(self, db):
        with pytest.raises(AccountNotFoundError):
            EncryptedCredentialStore(db).decrypt(uuid.uuid4())

    def test_missing_access_token(self, db, account):
        account.access_token = None
        db.commit()

        with pytest.raises(MailError):
            EncryptedCredentialStore(db).decrypt(account.id)

    def test_undecryptable_tokens(self, db, account):
        account.access_token = "gAAAAAnot-a-valid-token"
        db.commit()

        with pytest.raises(MailError, match="cannot be decrypted"):
            EncryptedCredentialStore(db).decrypt(account.id)

    def test_rotate_keys(self, db, account):
        old_key = os.environ["DB_ENCRYPTION_KEY"]
        try:
            with patch.dict(os.environ, {
                "DB_ENCRYPTION_KEY": generate_encryption_key(),
                "DB_ENCRYPTION_KEY_OLD": old_key,
            }):
                reinitialize_cipher()
                store = EncryptedCredentialStore(db)

                assert store.rotate_keys() == 2
                assert store.rotate_keys() == 0
                assert store.decrypt(account.id).access_token == "ya29.test-access-token"
        finally:
            reinitialize_cipher()


class TestAccountManager:

    def test_connect_normalizes_email_and_creates_sync_state(self, db, account):
        assert account.email == "me@example.com"
        assert account.sync_enabled is True
        assert db.query(SyncState).filter(SyncState.account_id == account.id).count() == 1

    def test_reconnect_is_idempotent(self, db, account):
        manager = AccountManager(db)

        again = manager.connect_account("user-1", "me@example.com", "ya29.new-token")

        assert again.id == account.id
        assert db.query(EmailAccount).count() == 1
        assert db.query(SyncState).count() == 1
        assert EncryptedCredentialStore(db).decrypt(account.id).access_token == "ya29.new-token"

    def test_reconnect_invalidates_cached_client(self, db, account):
        cache = AccountCache()
        cache.set(account.id, "stale-client")

        AccountManager(db, cache=cache).connect_account("user-1", "me@example.com", "ya29.rotated")

        assert cache.get(account.id) is None

    def test_lookup(self, db, account):
        manager = AccountManager(db)

        assert manager.get_by_email(" ME@example.com ").id == account.id
        assert manager.get_by_email("other@example.com") is None
        with pytest.raises(AccountNotFoundError):
            manager.get_account(uuid.uuid4())

    def test_sync_enabled_listing(self, db, account):
        manager = AccountManager(db)
        manager.connect_account("user-2", "second@example.com", "ya29.second")
        manager.set_sync_enabled(account.id, False)

        assert [a.email for a in manager.list_sync_enabled()] == ["second@example.com"]


class TestGmailClientFactory:

    def test_builds_client_from_decrypted_tokens(self, db, account, settings):
        settings.google_client_id = "client-id"
        settings.google_client_secret = "client-secret"

        with patch("portal_mail.core.accounts.manager.GmailMailboxClient.from_tokens") as from_tokens:
            from_tokens.return_value = "gmail-client"
            client = GmailClientFactory(EncryptedCredentialStore(db), settings)(account)

        assert client == "gmail-client"
        kwargs = from_tokens.call_args.kwargs
        assert kwargs["email_address"] == "me@example.com"
        assert kwargs["access_token"] == "ya29.test-access-token"
        assert kwargs["refresh_token"] == "1//test-refresh-token"
        assert kwargs["client_id"] == "client-id"

    def test_clients_are_cached_per_account(self, db, account, settings):
        cache = AccountCache()
        factory = GmailClientFactory(EncryptedCredentialStore(db), settings, cache)

        with patch("portal_mail.core.accounts.manager.GmailMailboxClient.from_tokens") as from_tokens:
            from_tokens.side_effect = lambda **kwargs: object()
            first = factory(account)
            second = factory(account)

        assert first is second
        assert from_tokens.call_count == 1
