"""
Account Manager - connected mailbox accounts

Creates and looks up EmailAccount rows, keeps the account/sync-state 1:1
pairing, and builds mailbox clients for accounts.

Usage:
    manager = AccountManager(db, EncryptedCredentialStore(db), cache)
    account = manager.connect_account(user_id, "me@example.com", access, refresh)
    client = GmailClientFactory(manager.credential_store, settings, cache)(account)
"""
from datetime import datetime
from typing import List, Optional
import logging

from sqlalchemy.orm import Session

from portal_mail.core.accounts.cache import AccountCache
from portal_mail.core.accounts.credentials import CredentialStore, EncryptedCredentialStore, OAuthTokens
from portal_mail.core.config import Settings
from portal_mail.core.database.models import EmailAccount, SyncState, SyncStatusValue
from portal_mail.core.errors import AccountNotFoundError
from portal_mail.core.mailbox.base import MailboxClient
from portal_mail.core.mailbox.gmail import GmailMailboxClient

logger = logging.getLogger(__name__)


class AccountManager:
    """
    Manages connected mailbox accounts.

    Connecting an account always leaves it with exactly one SyncState row.
    """

    def __init__(
        self,
        db: Session,
        credential_store: Optional[CredentialStore] = None,
        cache: Optional[AccountCache] = None,
    ):
        self.db = db
        self.credential_store = credential_store or EncryptedCredentialStore(db)
        self.cache = cache

    def connect_account(
        self,
        user_id: str,
        email: str,
        access_token: str,
        refresh_token: Optional[str] = None,
        token_expires_at: Optional[datetime] = None,
        provider: str = "google",
    ) -> EmailAccount:
        """
        Create or reconnect an account after the OAuth handshake.

        Returns:
            The account, with encrypted tokens and a sync state
        """
        email = email.strip().lower()
        account = self.get_by_email(email)
        if account is None:
            account = EmailAccount(user_id=user_id, email=email, provider=provider, sync_enabled=True)
            self.db.add(account)
            self.db.flush()
            logger.info(f"Connected new email account {email}")
        else:
            account.user_id = user_id
            account.sync_enabled = True
            logger.info(f"Reconnected email account {email}")

        self.credential_store.store(
            account.id,
            OAuthTokens(access_token=access_token, refresh_token=refresh_token, expires_at=token_expires_at),
        )

        state = self.db.query(SyncState).filter(SyncState.account_id == account.id).first()
        if state is None:
            self.db.add(SyncState(account_id=account.id, status=SyncStatusValue.IDLE.value))

        self.db.commit()
        if self.cache is not None:
            self.cache.invalidate(account.id)
        return account

    def get_account(self, account_id) -> EmailAccount:
        """
        Raises:
            AccountNotFoundError: No account with this id
        """
        account = self.db.get(EmailAccount, account_id)
        if account is None:
            raise AccountNotFoundError(f"Email account {account_id} not found")
        return account

    def get_by_email(self, email: str) -> Optional[EmailAccount]:
        return self.db.query(EmailAccount).filter(EmailAccount.email == email.strip().lower()).first()

    def list_sync_enabled(self) -> List[EmailAccount]:
        return self.db.query(EmailAccount).filter(
            EmailAccount.sync_enabled.is_(True)
        ).order_by(EmailAccount.created_at.asc()).all()

    def set_sync_enabled(self, account_id, enabled: bool) -> EmailAccount:
        account = self.get_account(account_id)
        account.sync_enabled = enabled
        self.db.commit()
        return account


class GmailClientFactory:
    """
    Builds (and caches) a Gmail mailbox client for an account.

    The only place plaintext OAuth tokens are handed to a provider library.
    """

    def __init__(self, credential_store: CredentialStore, settings: Settings, cache: Optional[AccountCache] = None):
        self.credential_store = credential_store
        self.settings = settings
        self.cache = cache

    def __call__(self, account: EmailAccount) -> MailboxClient:
        if self.cache is not None:
            cached = self.cache.get(account.id)
            if cached is not None:
                return cached

        tokens = self.credential_store.decrypt(account.id)
        client = GmailMailboxClient.from_tokens(
            email_address=account.email,
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            client_id=self.settings.google_client_id,
            client_secret=self.settings.google_client_secret,
            token_uri=self.settings.google_token_uri,
        )
        if self.cache is not None:
            self.cache.set(account.id, client)
        logger.debug(f"Built Gmail client for {account.email}")
        return client
