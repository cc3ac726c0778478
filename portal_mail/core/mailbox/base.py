"""
Mailbox Client Interface

Defines the capability the sync and delivery engines need from a remote
mailbox provider. The Gmail adapter lives in gmail.py; tests use an
in-memory fake.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Dict
from pydantic import BaseModel, Field


class EmailAddress(BaseModel):
    """A mailbox participant"""
    email: str = Field(..., description="Email address")
    name: Optional[str] = Field(None, description="Display name")

    def as_dict(self) -> Dict[str, Optional[str]]:
        return {"name": self.name, "email": self.email}


class RemoteMessage(BaseModel):
    """One message as returned by the provider, already parsed."""
    id: str = Field(..., min_length=1, description="Provider message id")
    thread_id: str = Field(..., min_length=1, description="Provider thread id")
    history_id: Optional[str] = Field(None, description="Provider history id at fetch time")

    from_address: EmailAddress
    to: List[EmailAddress] = Field(default_factory=list)
    cc: List[EmailAddress] = Field(default_factory=list)
    bcc: List[EmailAddress] = Field(default_factory=list)

    subject: str = "(No Subject)"
    snippet: str = ""
    body_html: Optional[str] = None
    body_text: Optional[str] = None

    labels: List[str] = Field(default_factory=list)
    is_read: bool = True
    is_starred: bool = False

    in_reply_to: Optional[str] = None
    references: List[str] = Field(default_factory=list)
    headers: Dict[str, str] = Field(default_factory=dict)

    sent_at: datetime
    received_at: datetime


@dataclass
class HistoryRecord:
    """One entry of the provider's change log."""
    id: str
    messages_added: List[str] = field(default_factory=list)
    messages_deleted: List[str] = field(default_factory=list)
    labels_changed: List[str] = field(default_factory=list)


@dataclass
class HistoryPage:
    """Changes since a watermark plus the new watermark."""
    history_id: str
    records: List[HistoryRecord] = field(default_factory=list)


@dataclass
class MailboxProfile:
    email: str
    history_id: Optional[str] = None
    messages_total: Optional[int] = None


@dataclass
class OutboundAttachment:
    filename: str
    content: bytes
    content_type: str = "application/octet-stream"


@dataclass
class OutboundMessage:
    """A message ready for the provider's send call."""
    from_address: str
    to: List[str]
    subject: str
    html: Optional[str] = None
    text: Optional[str] = None
    cc: List[str] = field(default_factory=list)
    bcc: List[str] = field(default_factory=list)
    in_reply_to: Optional[str] = None
    references: List[str] = field(default_factory=list)
    thread_id: Optional[str] = None
    attachments: List[OutboundAttachment] = field(default_factory=list)


@dataclass
class SendReceipt:
    id: str
    thread_id: Optional[str] = None


class MailboxClient(ABC):
    """
    Capability interface over one remote mailbox.

    Errors:
        WatermarkExpiredError: get_history() with an id the provider no longer accepts
        MessageNotFoundError: get_message() for a vanished message
        TransportError: anything else the provider rejects
    """

    @abstractmethod
    async def list_messages(
        self,
        query: Optional[str] = None,
        max_results: int = 50,
        label_ids: Optional[List[str]] = None,
    ) -> List[RemoteMessage]:
        """List the newest messages, fully fetched."""
        pass

    @abstractmethod
    async def get_message(self, message_id: str) -> RemoteMessage:
        pass

    @abstractmethod
    async def get_history(self, start_history_id: str, max_results: int = 100) -> HistoryPage:
        pass

    @abstractmethod
    async def get_profile(self) -> MailboxProfile:
        pass

    @abstractmethod
    async def send(self, message: OutboundMessage) -> SendReceipt:
        pass

    @abstractmethod
    async def modify_labels(
        self,
        message_id: str,
        add: Optional[List[str]] = None,
        remove: Optional[List[str]] = None,
    ) -> None:
        pass

    @abstractmethod
    async def trash(self, message_id: str) -> None:
        pass

    @abstractmethod
    async def untrash(self, message_id: str) -> None:
        pass

    async def mark_read(self, message_id: str) -> None:
        await self.modify_labels(message_id, remove=["UNREAD"])

    async def mark_unread(self, message_id: str) -> None:
        await self.modify_labels(message_id, add=["UNREAD"])

    async def star(self, message_id: str) -> None:
        await self.modify_labels(message_id, add=["STARRED"])

    async def unstar(self, message_id: str) -> None:
        await self.modify_labels(message_id, remove=["STARRED"])
