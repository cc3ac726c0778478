"""
Pydantic schemas for FastAPI endpoints
"""
from typing import Optional, List, Dict, Any
from datetime import datetime
from pydantic import BaseModel, Field
from uuid import UUID

from portal_mail.core.email.models import SendParams


class Participant(BaseModel):
    email: str
    name: Optional[str] = None


# ============================================================
# Sync
# ============================================================

class SyncRequest(BaseModel):
    """Sync trigger"""
    account_id: UUID
    force_full_sync: bool = False
    max_results: Optional[int] = Field(None, ge=1, le=500)


class SyncAcceptedResponse(BaseModel):
    success: bool
    message: str
    account_id: UUID


class SyncRunResponse(BaseModel):
    """Result of an inline (?wait=true) sync"""
    success: bool
    account_id: str
    sync_type: str
    threads_processed: int
    messages_processed: int
    duration_ms: int


class SyncStatusResponse(BaseModel):
    """Sync state of one account"""
    account_id: UUID
    status: str
    history_id: Optional[str] = None
    last_synced_at: Optional[datetime] = None
    last_full_sync_at: Optional[datetime] = None
    last_incremental_sync_at: Optional[datetime] = None
    last_error: Optional[str] = None
    messages_synced: int = 0

    class Config:
        from_attributes = True


# ============================================================
# Send
# ============================================================

class SendRequest(SendParams):
    """Send parameters plus an optional time to send at"""
    send_at: Optional[datetime] = Field(None, description="Schedule instead of sending now")


class SendResponse(BaseModel):
    success: bool
    message_id: Optional[str] = None
    remote_message_id: Optional[str] = None
    thread_id: Optional[str] = None
    status_id: str
    tracking_pixel_id: Optional[str] = None
    scheduled: bool = False
    send_at: Optional[datetime] = None


class SendStatusResponse(BaseModel):
    """Delivery lifecycle of one outbound message"""
    id: UUID
    status: str
    retry_count: int
    max_retries: int
    error_message: Optional[str] = None
    bounce_type: Optional[str] = None
    bounce_reason: Optional[str] = None
    next_retry_at: Optional[datetime] = None
    scheduled_for: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    message_id: Optional[UUID] = None
    draft_id: Optional[UUID] = None
    remote_message_id: Optional[str] = None

    class Config:
        from_attributes = True


# ============================================================
# Threads & messages
# ============================================================

class ThreadResponse(BaseModel):
    id: UUID
    account_id: UUID
    remote_thread_id: Optional[str] = None
    subject: str
    snippet: Optional[str] = None
    participants: List[Participant] = Field(default_factory=list)
    labels: List[str] = Field(default_factory=list)
    is_starred: bool
    message_count: int
    unread_count: int
    last_message_at: datetime

    class Config:
        from_attributes = True


class MessageResponse(BaseModel):
    id: UUID
    thread_id: UUID
    remote_message_id: str
    from_address: Participant
    to_addresses: List[Participant] = Field(default_factory=list)
    cc_addresses: Optional[List[Participant]] = None
    subject: str
    snippet: Optional[str] = None
    body_html: Optional[str] = None
    body_text: Optional[str] = None
    labels: List[str] = Field(default_factory=list)
    is_read: bool
    is_starred: bool
    sent_at: datetime
    received_at: datetime
    tracking_enabled: bool
    open_count: int = 0
    first_opened_at: Optional[datetime] = None
    last_opened_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ThreadDetailResponse(ThreadResponse):
    messages: List[MessageResponse] = Field(default_factory=list)


class ThreadListResponse(BaseModel):
    count: int
    folder: str
    threads: List[ThreadResponse]


class ReadRequest(BaseModel):
    read: bool = True


class StarRequest(BaseModel):
    starred: bool = True


class OpenEvent(BaseModel):
    opened_at: str
    location: Optional[str] = None
    user_agent: Optional[str] = None


class OpensResponse(BaseModel):
    message_id: str
    tracking_enabled: bool
    open_count: int
    first_opened_at: Optional[str] = None
    last_opened_at: Optional[str] = None
    opens: List[OpenEvent] = Field(default_factory=list)


class ErrorDetail(BaseModel):
    detail: str
    extra: Optional[Dict[str, Any]] = None
