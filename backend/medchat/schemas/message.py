"""
Message-related Pydantic schemas.
"""

from pydantic import BaseModel, Field
from typing import Optional, Literal, Dict, Any
from datetime import datetime


class AttachmentDescriptor(BaseModel):
    """Reference to an uploaded file."""
    url: str
    file_name: str
    size: int = 0
    mime_type: str = "application/octet-stream"
    metadata: Optional[Dict[str, Any]] = None


class MessageContent(BaseModel):
    """Payload of a message about to be appended."""
    kind: Literal["text", "file"]
    text: Optional[str] = None  # body for text, caption for file
    attachment: Optional[AttachmentDescriptor] = None


class SendTextRequest(BaseModel):
    """Schema for sending a text message."""
    text: str = Field(..., max_length=10000)


class MessageSender(BaseModel):
    id: str
    name: str
    avatar: Optional[str] = None


class MessageResponse(BaseModel):
    """Message response schema."""
    id: str
    conversation_id: str
    seq: int
    kind: str
    text: Optional[str] = None
    sender: MessageSender
    attachment: Optional[AttachmentDescriptor] = None
    created_at: datetime

    @classmethod
    def from_model(cls, message) -> "MessageResponse":
        attachment = None
        if message.kind == "file":
            attachment = AttachmentDescriptor(
                url=message.attachment_url,
                file_name=message.attachment_name or "",
                size=message.attachment_size or 0,
                mime_type=message.attachment_mime_type or "application/octet-stream",
                metadata=message.attachment_metadata
            )
        return cls(
            id=message.id,
            conversation_id=message.conversation_id,
            seq=message.seq,
            kind=message.kind,
            text=message.text,
            sender=MessageSender(
                id=message.sender_id,
                name=message.sender_name,
                avatar=message.sender_avatar
            ),
            attachment=attachment,
            created_at=message.created_at
        )


class SendMessageResponse(BaseModel):
    message_id: str
    conversation_id: str
