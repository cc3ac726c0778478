"""
Shared FastAPI dependencies

Services are built per request around the request's session; the account
cache is process-wide so mailbox clients survive across requests.
"""
from fastapi import Depends
from sqlalchemy.orm import Session

from portal_mail.core.accounts import AccountCache, EncryptedCredentialStore, GmailClientFactory
from portal_mail.core.config import get_settings
from portal_mail.core.database import get_db, get_session_factory
from portal_mail.core.email.retry_scanner import ClientFactory
from portal_mail.core.jobs import MailJobs
from portal_mail.core.tracking.open_tracker import OpenTracker

account_cache = AccountCache()


def get_client_factory(db: Session = Depends(get_db)) -> ClientFactory:
    return GmailClientFactory(EncryptedCredentialStore(db), get_settings(), account_cache)


def get_mail_jobs() -> MailJobs:
    return MailJobs(get_session_factory(), get_settings(), account_cache)


def get_open_tracker() -> OpenTracker:
    return OpenTracker(get_session_factory(), get_settings())
