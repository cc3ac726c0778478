"""Remote mailbox capability and provider adapters"""
from .base import (
    MailboxClient, RemoteMessage, EmailAddress, HistoryPage, HistoryRecord,
    MailboxProfile, OutboundMessage, OutboundAttachment, SendReceipt,
)

__all__ = [
    'MailboxClient',
    'RemoteMessage',
    'EmailAddress',
    'HistoryPage',
    'HistoryRecord',
    'MailboxProfile',
    'OutboundMessage',
    'OutboundAttachment',
    'SendReceipt',
]
