"""
Message channel: totally ordered persistence and live delivery of the
messages of one conversation.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Callable, List, Optional

from sqlalchemy import select, update, desc
from sqlalchemy.ext.asyncio import async_sessionmaker

from ..config import settings
from ..database import AsyncSessionLocal
from ..errors import NotFoundError, ValidationError, store_errors
from ..models.conversation import Conversation, ConversationParticipant
from ..models.message import Message
from ..realtime import LiveQuery, conversation_topic
from ..schemas.message import MessageContent, MessageResponse
from ..schemas.participant import ParticipantIdentity
from .conversation_registry import ConversationRegistry

logger = logging.getLogger(__name__)


def validate_content(content: MessageContent) -> MessageContent:
    """Enforce the kind/payload invariant of a message."""
    if content.kind == "text":
        if not content.text or not content.text.strip():
            raise ValidationError("Text message requires non-empty text", operation="append")
        if content.attachment is not None:
            raise ValidationError("Text message cannot carry an attachment", operation="append")
    elif content.kind == "file":
        if content.attachment is None or not content.attachment.url.strip():
            raise ValidationError("File message requires an attachment url", operation="append")
    else:
        raise ValidationError(f"Unknown message kind: {content.kind}", operation="append")
    return content


class MessageChannel:
    """Append and subscribe for conversation messages.

    Order is the store's write order: every append takes the next value
    of the conversation's ``message_count`` under the write lock, and
    stamps ``created_at`` while holding it. Two clients racing to send
    are ordered by arrival, not by when they pressed send.
    """

    def __init__(
        self,
        registry: ConversationRegistry,
        session_factory: Optional[async_sessionmaker] = None,
        window_size: Optional[int] = None
    ):
        self.registry = registry
        self.feed = registry.feed
        self.session_factory = session_factory or registry.session_factory or AsyncSessionLocal
        self.window_size = window_size or settings.MESSAGE_WINDOW_SIZE

    async def append(
        self,
        conversation_id: str,
        author: ParticipantIdentity,
        content: MessageContent
    ) -> str:
        """Persist a message and update the conversation summary with it."""
        validate_content(content)
        if author is None or not author.id:
            raise ValidationError("Message author is required", operation="append")

        async with store_errors("append", conversation_id):
            async with self.session_factory() as db:
                # Taking the sequence number first also takes the write lock
                result = await db.execute(
                    update(Conversation)
                    .where(Conversation.id == conversation_id)
                    .values(message_count=Conversation.message_count + 1)
                    .returning(Conversation.message_count)
                    .execution_options(synchronize_session=False)
                )
                seq = result.scalar_one_or_none()
                if seq is None:
                    await db.rollback()
                    raise NotFoundError("Conversation not found")

                result = await db.execute(
                    select(ConversationParticipant.participant_id)
                    .filter(ConversationParticipant.conversation_id == conversation_id)
                )
                participants = list(result.scalars().all())
                if author.id not in participants:
                    await db.rollback()
                    raise ValidationError(f"{author.id} is not a participant")

                attachment = content.attachment
                message = Message(
                    id=uuid.uuid4().hex,
                    conversation_id=conversation_id,
                    seq=seq,
                    sender_id=author.id,
                    sender_name=author.display_name,
                    sender_avatar=author.avatar_url,
                    kind=content.kind,
                    text=content.text.strip() if content.text else None,
                    attachment_url=attachment.url if attachment else None,
                    attachment_name=attachment.file_name if attachment else None,
                    attachment_size=attachment.size if attachment else None,
                    attachment_mime_type=attachment.mime_type if attachment else None,
                    attachment_metadata=attachment.metadata if attachment else None,
                    created_at=datetime.now(timezone.utc)
                )
                db.add(message)
                await db.flush()

                await self.registry.record_new_message(conversation_id, message, db=db)
                await db.commit()

        logger.debug(f"Appended {content.kind} message {message.id} (seq {seq}) to {conversation_id}")
        self.registry.announce(conversation_id, participants, message_id=message.id)
        return message.id

    async def list_messages(
        self,
        conversation_id: str,
        limit: Optional[int] = None,
        before_seq: Optional[int] = None
    ) -> List[MessageResponse]:
        """Messages newest first, optionally only those older than ``before_seq``."""
        async with store_errors("list_messages", conversation_id):
            async with self.session_factory() as db:
                conversation = await db.get(Conversation, conversation_id)
                if conversation is None:
                    raise NotFoundError("Conversation not found")

                query = select(Message).filter(Message.conversation_id == conversation_id)
                if before_seq is not None:
                    query = query.filter(Message.seq < before_seq)
                result = await db.execute(
                    query
                    .order_by(desc(Message.created_at), desc(Message.seq))
                    .limit(limit or self.window_size)
                )
                return [MessageResponse.from_model(m) for m in result.scalars().all()]

    def subscribe(
        self,
        conversation_id: str,
        on_batch: Callable,
        on_error: Optional[Callable] = None
    ) -> LiveQuery:
        """
        Deliver the ordered message window now and after every append.

        Each batch is the complete newest-first window, so a consumer can
        replace its list or merge by message id.
        """
        return LiveQuery(
            self.feed,
            conversation_topic(conversation_id),
            lambda: self.list_messages(conversation_id),
            on_batch,
            on_error
        ).start()
