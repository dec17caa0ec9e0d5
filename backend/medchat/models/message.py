"""
Message database model.
"""

from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Text, JSON, Index, UniqueConstraint
from sqlalchemy.orm import relationship

from ..database import Base


class Message(Base):
    """Chat message, text or file reference. Immutable once stored."""

    __tablename__ = "messages"

    __table_args__ = (
        UniqueConstraint('conversation_id', 'seq', name='uq_message_seq'),
        Index('ix_messages_conversation_created', 'conversation_id', 'created_at', 'seq'),
    )

    id = Column(String(32), primary_key=True)
    conversation_id = Column(String(64), ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False)
    seq = Column(Integer, nullable=False)

    # Sender identity
    sender_id = Column(String(128), nullable=False)
    sender_name = Column(String(200), nullable=False)
    sender_avatar = Column(String(500), nullable=True)

    # Content
    kind = Column(String(10), nullable=False)  # "text", "file"
    text = Column(Text, nullable=True)  # body for text, caption for file

    # Attachment descriptor, only for kind "file"
    attachment_url = Column(String(1000), nullable=True)
    attachment_name = Column(String(255), nullable=True)
    attachment_size = Column(Integer, nullable=True)
    attachment_mime_type = Column(String(100), nullable=True)
    attachment_metadata = Column(JSON, nullable=True)  # width/height for images

    created_at = Column(DateTime(timezone=True), nullable=False)

    conversation = relationship("Conversation", back_populates="messages")
