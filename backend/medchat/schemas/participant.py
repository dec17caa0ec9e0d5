"""
Participant identity schemas.
"""

from pydantic import BaseModel, Field
from typing import Optional


class ParticipantIdentity(BaseModel):
    """Point-in-time identity of a chat participant."""
    id: str = Field(..., min_length=1, max_length=128)
    display_name: str = Field(..., max_length=200)
    avatar_url: Optional[str] = Field(None, max_length=500)
    role: Optional[str] = Field(None, max_length=20)  # "patient", "doctor"


class ParticipantSnapshot(ParticipantIdentity):
    """Participant as stored on a conversation, with unread state."""
    position: int
    unread_count: int = 0

    class Config:
        from_attributes = True
