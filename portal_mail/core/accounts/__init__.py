"""Connected mailbox accounts and their credentials"""
from .cache import AccountCache
from .credentials import CredentialStore, EncryptedCredentialStore, OAuthTokens
from .manager import AccountManager, GmailClientFactory

__all__ = [
    'AccountCache',
    'CredentialStore',
    'EncryptedCredentialStore',
    'OAuthTokens',
    'AccountManager',
    'GmailClientFactory',
]
