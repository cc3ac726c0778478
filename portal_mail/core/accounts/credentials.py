"""
Credential Store

OAuth tokens are kept as Fernet ciphertext on the account row. This module
is the only place they are encrypted or decrypted; plaintext tokens never
reach the logs (OAuthTokens masks them in repr).
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Optional
import logging

from cryptography.fernet import InvalidToken
from sqlalchemy.orm import Session

from portal_mail.core.database.encryption import (
    encrypt_value, decrypt_value, needs_rotation, rotate_encrypted_value,
)
from portal_mail.core.database.models import EmailAccount
from portal_mail.core.errors import AccountNotFoundError, MailError

logger = logging.getLogger(__name__)


def _mask(token: Optional[str]) -> str:
    if not token:
        return "None"
    return f"{token[:4]}***"


@dataclass(repr=False)
class OAuthTokens:
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None

    def __repr__(self):
        return (
            f"OAuthTokens(access_token={_mask(self.access_token)}, "
            f"refresh_token={_mask(self.refresh_token)}, expires_at={self.expires_at})"
        )


class CredentialStore(ABC):
    """Decrypts and stores the OAuth tokens of connected accounts."""

    @abstractmethod
    def decrypt(self, account_id) -> OAuthTokens:
        """
        Raises:
            AccountNotFoundError: Unknown account
            MailError: Tokens missing or undecryptable
        """
        pass

    @abstractmethod
    def store(self, account_id, tokens: OAuthTokens) -> None:
        pass


class EncryptedCredentialStore(CredentialStore):
    """CredentialStore over EmailAccount rows using the Fernet key ring."""

    def __init__(self, db: Session):
        self.db = db

    def _account(self, account_id) -> EmailAccount:
        account = self.db.get(EmailAccount, account_id)
        if account is None:
            raise AccountNotFoundError(f"Email account {account_id} not found")
        return account

    def decrypt(self, account_id) -> OAuthTokens:
        account = self._account(account_id)
        if not account.access_token:
            raise MailError(f"Email account {account.email} has no stored access token")
        try:
            access_token = decrypt_value(account.access_token)
            refresh_token = decrypt_value(account.refresh_token) if account.refresh_token else None
        except InvalidToken as e:
            logger.critical(f"DECRYPTION FAILURE - tokens of account {account_id} use an unknown key")
            raise MailError(f"Stored tokens for {account.email} cannot be decrypted") from e
        return OAuthTokens(access_token=access_token, refresh_token=refresh_token, expires_at=account.token_expires_at)

    def store(self, account_id, tokens: OAuthTokens) -> None:
        account = self._account(account_id)
        account.access_token = encrypt_value(tokens.access_token)
        account.refresh_token = encrypt_value(tokens.refresh_token) if tokens.refresh_token else None
        account.token_expires_at = tokens.expires_at
        self.db.flush()
        logger.info(f"Stored encrypted tokens for account {account.email}")

    def rotate_keys(self) -> int:
        """
        Re-encrypt every stored token that still uses an old key.

        Returns:
            Number of tokens re-encrypted
        """
        rotated = 0
        for account in self.db.query(EmailAccount).all():
            for column in ("access_token", "refresh_token"):
                value = getattr(account, column)
                if not value or not needs_rotation(value):
                    continue
                new_value = rotate_encrypted_value(value)
                if new_value is None:
                    logger.error(f"Could not rotate {column} of account {account.id}")
                    continue
                setattr(account, column, new_value)
                rotated += 1
        self.db.commit()
        logger.info(f"Rotated {rotated} stored tokens to the primary key")
        return rotated
