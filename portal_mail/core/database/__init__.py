"""Database module: models, sessions and the mail repository"""
from .models import (
    Base, EmailAccount, SyncState, EmailThread, EmailMessage, EmailDraft,
    SendStatus, EmailOpen,
)
from .connection import get_db, init_db, get_session_factory, create_tables

__all__ = [
    'Base',
    'EmailAccount',
    'SyncState',
    'EmailThread',
    'EmailMessage',
    'EmailDraft',
    'SendStatus',
    'EmailOpen',
    'get_db',
    'init_db',
    'get_session_factory',
    'create_tables',
]
