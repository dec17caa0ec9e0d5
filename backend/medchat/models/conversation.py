"""
Conversation and participant database models.
"""

from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Text, Index, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from ..database import Base


class Conversation(Base):
    """Two-party chat thread with its last-message summary."""

    __tablename__ = "conversations"

    # Conversation listing is ordered by recency
    __table_args__ = (
        Index('ix_conversations_updated', 'updated_at'),
    )

    # Derived from the sorted participant pair, see conversation_id_for()
    id = Column(String(64), primary_key=True)
    participant_key = Column(String(800), unique=True, nullable=False)  # JSON-encoded sorted pair

    # Last message summary
    last_message_text = Column(Text, nullable=True)
    last_message_kind = Column(String(10), nullable=True)
    last_message_sender_id = Column(String(128), nullable=True)
    last_message_sender_name = Column(String(200), nullable=True)
    last_message_at = Column(DateTime(timezone=True), nullable=True)

    # Store-assigned sequence counter; each append takes the next value
    message_count = Column(Integer, nullable=False, default=0)

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now())

    # Relationships
    participants = relationship(
        "ConversationParticipant",
        back_populates="conversation",
        cascade="all, delete-orphan",
        order_by="ConversationParticipant.position",
        lazy="selectin"
    )
    messages = relationship("Message", back_populates="conversation", cascade="all, delete-orphan")


class ConversationParticipant(Base):
    """One side of a conversation: profile snapshot plus unread state."""

    __tablename__ = "conversation_participants"

    __table_args__ = (
        UniqueConstraint('conversation_id', 'participant_id', name='uq_participant_per_conversation'),
        Index('ix_participants_participant', 'participant_id'),
    )

    id = Column(Integer, primary_key=True, index=True)
    conversation_id = Column(String(64), ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False)
    participant_id = Column(String(128), nullable=False)
    position = Column(Integer, nullable=False)  # 0 = initiator, 1 = other side

    # Snapshot captured at creation time, never live-joined
    display_name = Column(String(200), nullable=False)
    avatar_url = Column(String(500), nullable=True)
    role = Column(String(20), nullable=True)

    # Unread state
    unread_count = Column(Integer, nullable=False, default=0)
    last_read_at = Column(DateTime(timezone=True), nullable=True)

    conversation = relationship("Conversation", back_populates="participants")
