"""
Conversation registry: one conversation per participant pair, its
last-message summary and the per-participant unread counters.
"""

import hashlib
import json
import logging
from datetime import datetime, timezone
from typing import Callable, List, Optional

from sqlalchemy import select, update, desc
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import settings
from ..database import AsyncSessionLocal
from ..errors import ConflictError, NotFoundError, ValidationError, store_errors
from ..models.conversation import Conversation, ConversationParticipant
from ..models.message import Message
from ..realtime import (
    ChangeEvent,
    ChangeFeed,
    ChangeKind,
    LiveQuery,
    conversation_topic,
    participant_topic,
)
from ..schemas.conversation import ConversationResponse
from .profile_service import ProfileProvider, InMemoryProfileProvider

logger = logging.getLogger(__name__)


def participant_key(participant_a: str, participant_b: str) -> str:
    """Order-independent key for a participant pair.

    Ids may contain any character, so the pair is JSON-encoded rather
    than joined with a separator.
    """
    return json.dumps(sorted((participant_a, participant_b)), separators=(",", ":"))


def conversation_id_for(participant_a: str, participant_b: str) -> str:
    """Deterministic conversation id for a participant pair."""
    digest = hashlib.sha256(participant_key(participant_a, participant_b).encode("utf-8"))
    return f"c-{digest.hexdigest()[:24]}"


def summary_text(message: Message) -> Optional[str]:
    if message.kind == "file":
        return message.attachment_name or message.text
    return message.text


class ConversationRegistry:
    """Find-or-create conversations and keep their projections current."""

    def __init__(
        self,
        feed: ChangeFeed,
        profiles: Optional[ProfileProvider] = None,
        session_factory: Optional[async_sessionmaker] = None
    ):
        self.feed = feed
        self.profiles = profiles or InMemoryProfileProvider()
        self.session_factory = session_factory or AsyncSessionLocal

    async def resolve_conversation(self, participant_a: str, participant_b: str) -> str:
        """
        Return the conversation id for a pair, creating it on first contact.

        Concurrent callers for the same pair all get the same id: the id
        is derived from the pair, and a losing insert is collapsed onto
        the row that won.
        """
        participant_a = (participant_a or "").strip()
        participant_b = (participant_b or "").strip()
        if not participant_a or not participant_b:
            raise ValidationError("Both participants are required", operation="resolve_conversation")
        if participant_a == participant_b:
            raise ValidationError("Participants must be distinct", operation="resolve_conversation")

        key = participant_key(participant_a, participant_b)
        conversation_id = conversation_id_for(participant_a, participant_b)

        async with store_errors("resolve_conversation", conversation_id):
            existing = await self._find_by_key(key)
            if existing is not None:
                return existing

            profile_a = await self.profiles.get_profile(participant_a)
            profile_b = await self.profiles.get_profile(participant_b)

            try:
                await self._create(conversation_id, key, [profile_a, profile_b])
            except ConflictError:
                existing = await self._find_by_key(key)
                if existing is None:
                    raise
                logger.info(f"Conversation {existing} created concurrently, reusing it")
                return existing

        logger.info(f"Created conversation {conversation_id} between {participant_a} and {participant_b}")
        for participant_id in (participant_a, participant_b):
            self.feed.publish(
                participant_topic(participant_id),
                ChangeEvent(kind=ChangeKind.CONVERSATION_UPDATED, data={"conversation_id": conversation_id})
            )
        return conversation_id

    async def _find_by_key(self, key: str) -> Optional[str]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(Conversation.id).filter(Conversation.participant_key == key)
            )
            return result.scalar_one_or_none()

    async def _create(self, conversation_id: str, key: str, profiles: list):
        now = datetime.now(timezone.utc)
        async with self.session_factory() as db:
            conversation = Conversation(
                id=conversation_id,
                participant_key=key,
                message_count=0,
                created_at=now,
                updated_at=now
            )
            db.add(conversation)
            for position, profile in enumerate(profiles):
                db.add(ConversationParticipant(
                    conversation_id=conversation_id,
                    participant_id=profile.id,
                    position=position,
                    display_name=profile.display_name,
                    avatar_url=profile.avatar_url,
                    role=profile.role,
                    unread_count=0
                ))
            try:
                await db.commit()
            except IntegrityError as e:
                await db.rollback()
                raise ConflictError(
                    "Conversation already exists",
                    operation="resolve_conversation",
                    conversation_id=conversation_id
                ) from e

    async def record_new_message(
        self,
        conversation_id: str,
        message: Message,
        db: Optional[AsyncSession] = None
    ):
        """
        Update the summary and bump every other participant's unread count.

        With ``db`` the writes join the caller's transaction and the caller
        commits and announces the change.
        """
        if db is not None:
            await self._apply_new_message(db, conversation_id, message)
            return

        async with store_errors("record_new_message", conversation_id):
            async with self.session_factory() as session:
                await self._apply_new_message(session, conversation_id, message)
                await session.commit()
            participants = await self.participant_ids(conversation_id)
        self.announce(conversation_id, participants, message_id=message.id)

    async def _apply_new_message(self, db: AsyncSession, conversation_id: str, message: Message):
        result = await db.execute(
            update(Conversation)
            .where(Conversation.id == conversation_id)
            .values(
                last_message_text=summary_text(message),
                last_message_kind=message.kind,
                last_message_sender_id=message.sender_id,
                last_message_sender_name=message.sender_name,
                last_message_at=message.created_at,
                updated_at=message.created_at
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise NotFoundError("Conversation not found", conversation_id=conversation_id)

        # Atomic increment, correct under concurrent senders
        await db.execute(
            update(ConversationParticipant)
            .where(
                ConversationParticipant.conversation_id == conversation_id,
                ConversationParticipant.participant_id != message.sender_id
            )
            .values(unread_count=ConversationParticipant.unread_count + 1)
            .execution_options(synchronize_session=False)
        )

    async def mark_read(self, conversation_id: str, reader_id: str):
        """Reset the reader's unread counter. Other counters are untouched."""
        async with store_errors("mark_read", conversation_id):
            async with self.session_factory() as db:
                result = await db.execute(
                    update(ConversationParticipant)
                    .where(
                        ConversationParticipant.conversation_id == conversation_id,
                        ConversationParticipant.participant_id == reader_id
                    )
                    .values(unread_count=0, last_read_at=datetime.now(timezone.utc))
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 0:
                    await db.rollback()
                    exists = await db.get(Conversation, conversation_id)
                    if exists is None:
                        raise NotFoundError("Conversation not found")
                    raise ValidationError(f"{reader_id} is not a participant")
                await db.commit()

        self.feed.publish(
            participant_topic(reader_id),
            ChangeEvent(kind=ChangeKind.CONVERSATION_UPDATED, data={"conversation_id": conversation_id})
        )

    def announce(self, conversation_id: str, participant_ids: List[str], message_id: Optional[str] = None):
        """Tell live feeds that a conversation changed."""
        if message_id is not None:
            self.feed.publish(
                conversation_topic(conversation_id),
                ChangeEvent(
                    kind=ChangeKind.MESSAGE_APPENDED,
                    data={"conversation_id": conversation_id, "message_id": message_id}
                )
            )
        for participant_id in participant_ids:
            self.feed.publish(
                participant_topic(participant_id),
                ChangeEvent(kind=ChangeKind.CONVERSATION_UPDATED, data={"conversation_id": conversation_id})
            )

    async def participant_ids(self, conversation_id: str) -> List[str]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(ConversationParticipant.participant_id)
                .filter(ConversationParticipant.conversation_id == conversation_id)
                .order_by(ConversationParticipant.position)
            )
            return list(result.scalars().all())

    async def get_conversation(self, conversation_id: str) -> ConversationResponse:
        async with store_errors("get_conversation", conversation_id):
            async with self.session_factory() as db:
                result = await db.execute(
                    select(Conversation).filter(Conversation.id == conversation_id)
                )
                conversation = result.scalar_one_or_none()
                if conversation is None:
                    raise NotFoundError("Conversation not found")
                return ConversationResponse.from_model(conversation)

    async def list_conversations_for(
        self,
        user_id: str,
        limit: Optional[int] = None
    ) -> List[ConversationResponse]:
        """The user's conversations, most recently active first."""
        async with store_errors("list_conversations"):
            async with self.session_factory() as db:
                result = await db.execute(
                    select(Conversation)
                    .join(ConversationParticipant)
                    .filter(ConversationParticipant.participant_id == user_id)
                    .order_by(desc(Conversation.updated_at), Conversation.id)
                    .limit(limit or settings.CONVERSATION_LIST_LIMIT)
                )
                conversations = result.scalars().all()
                return [ConversationResponse.from_model(c, viewer_id=user_id) for c in conversations]

    def subscribe_conversations_for(
        self,
        user_id: str,
        on_update: Callable,
        on_error: Optional[Callable] = None
    ) -> LiveQuery:
        """Live, recency-ordered list of the user's conversations."""
        return LiveQuery(
            self.feed,
            participant_topic(user_id),
            lambda: self.list_conversations_for(user_id),
            on_update,
            on_error
        ).start()
