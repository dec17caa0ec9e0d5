"""
Conversation-related Pydantic schemas.
"""

from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import datetime

from .participant import ParticipantSnapshot


class ResolveConversationRequest(BaseModel):
    """Schema for opening a chat with another participant."""
    participant_id: str = Field(..., min_length=1, max_length=128)


class LastMessageSummary(BaseModel):
    text: Optional[str] = None
    kind: str
    sender_id: str
    sender_name: Optional[str] = None
    created_at: datetime


class ConversationResponse(BaseModel):
    """Conversation response schema."""
    id: str
    participants: List[ParticipantSnapshot]
    last_message: Optional[LastMessageSummary] = None
    unread_count: int = 0  # for the viewer, when one is known
    message_count: int
    created_at: datetime
    updated_at: Optional[datetime] = None

    @classmethod
    def from_model(cls, conversation, viewer_id: Optional[str] = None) -> "ConversationResponse":
        participants = [
            ParticipantSnapshot(
                id=p.participant_id,
                display_name=p.display_name,
                avatar_url=p.avatar_url,
                role=p.role,
                position=p.position,
                unread_count=p.unread_count
            )
            for p in conversation.participants
        ]
        last_message = None
        if conversation.last_message_at is not None:
            last_message = LastMessageSummary(
                text=conversation.last_message_text,
                kind=conversation.last_message_kind,
                sender_id=conversation.last_message_sender_id,
                sender_name=conversation.last_message_sender_name,
                created_at=conversation.last_message_at
            )
        response = cls(
            id=conversation.id,
            participants=participants,
            last_message=last_message,
            message_count=conversation.message_count or 0,
            created_at=conversation.created_at,
            updated_at=conversation.updated_at
        )
        if viewer_id is not None:
            return response.for_viewer(viewer_id)
        return response

    def unread_for(self, participant_id: str) -> int:
        for p in self.participants:
            if p.id == participant_id:
                return p.unread_count
        return 0

    def for_viewer(self, viewer_id: str) -> "ConversationResponse":
        return self.model_copy(update={"unread_count": self.unread_for(viewer_id)})
