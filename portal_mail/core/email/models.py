"""
Outbound email models.

SendParams is the full parameter set of one send. It is also what a
scheduled send persists (encrypted) in SendStatus.payload.
"""
import base64
import binascii
from pydantic import BaseModel, Field, field_validator
from typing import Optional, List
from uuid import UUID


class AttachmentParams(BaseModel):
    """Attachment as carried by drafts and API requests"""
    filename: str = Field(..., min_length=1)
    content_base64: str = Field(..., description="Base64-encoded file content")
    content_type: Optional[str] = Field(None, description="MIME type, defaults to application/octet-stream")

    def decoded(self) -> bytes:
        """
        Raises:
            ValueError: content_base64 is not valid base64
        """
        try:
            return base64.b64decode(self.content_base64, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ValueError(f"Attachment '{self.filename}' is not valid base64") from e


class SendParams(BaseModel):
    """Everything needed to send one message"""
    account_email: str = Field(..., description="Connected account to send from")
    to: List[str] = Field(..., min_length=1)
    cc: List[str] = Field(default_factory=list)
    bcc: List[str] = Field(default_factory=list)
    subject: str = ""
    html: Optional[str] = None
    text: Optional[str] = None
    in_reply_to: Optional[str] = Field(None, description="Message-ID this replies to")
    references: List[str] = Field(default_factory=list)
    thread_id: Optional[str] = Field(None, description="Remote thread id to keep the conversation grouped")
    attachments: List[AttachmentParams] = Field(default_factory=list)
    tracking_enabled: bool = False
    draft_id: Optional[UUID] = Field(None, description="Draft this send was composed from")

    @field_validator("account_email")
    @classmethod
    def normalize_account_email(cls, value: str) -> str:
        return value.strip().lower()

    class Config:
        json_schema_extra = {
            "example": {
                "account_email": "me@example.com",
                "to": ["client@example.org"],
                "subject": "Your quote",
                "html": "<html><body><p>Hello</p></body></html>",
                "tracking_enabled": True,
            }
        }
