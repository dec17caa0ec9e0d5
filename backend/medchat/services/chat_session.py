"""
Chat session controller: the screen-level contract for one open
conversation (live message list, send text, send file, mark read).
"""

import fnmatch
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from ..config import settings
from ..errors import ChatError, ValidationError
from ..realtime import LiveQuery
from ..schemas.message import MessageContent, MessageResponse
from ..schemas.participant import ParticipantIdentity
from .attachment_uploader import AttachmentUploader, measure_size
from .conversation_registry import ConversationRegistry
from .message_channel import MessageChannel

logger = logging.getLogger(__name__)


@dataclass
class ChatSession:
    """One viewer's open conversation and its live message window."""

    conversation_id: str
    viewer: ParticipantIdentity
    subscription: Optional[LiveQuery] = None
    messages: List[MessageResponse] = field(default_factory=list)
    closed: bool = False

    def apply_batch(self, batch: List[MessageResponse]) -> List[MessageResponse]:
        """Replace the window with a delivered batch, dropping repeated ids."""
        seen: Dict[str, MessageResponse] = {}
        for message in batch:
            seen.setdefault(message.id, message)
        self.messages = list(seen.values())
        return self.messages


class ChatSessionController:
    """Composes registry, channel and uploader for an open chat screen.

    Errors are never retried here. They are re-raised with their kind
    intact and tagged with the operation and conversation id.
    """

    def __init__(
        self,
        registry: ConversationRegistry,
        channel: MessageChannel,
        uploader: AttachmentUploader,
        max_attachment_size: Optional[int] = None,
        allowed_types: Optional[List[str]] = None,
        default_caption: Optional[str] = None
    ):
        self.registry = registry
        self.channel = channel
        self.uploader = uploader
        self.max_attachment_size = max_attachment_size or settings.MAX_ATTACHMENT_SIZE
        self.allowed_types = allowed_types or settings.ALLOWED_ATTACHMENT_TYPES
        self.default_caption = default_caption or settings.DEFAULT_FILE_CAPTION

    async def open(
        self,
        conversation_id: str,
        viewer: ParticipantIdentity,
        on_batch: Optional[Callable[[List[MessageResponse]], None]] = None,
        on_error: Optional[Callable[[Exception], None]] = None
    ) -> ChatSession:
        """Mark the conversation read for the viewer and start the live window."""
        try:
            await self.registry.mark_read(conversation_id, viewer.id)
        except ChatError as e:
            raise e.with_context("open", conversation_id)

        session = ChatSession(conversation_id=conversation_id, viewer=viewer)

        def handle_batch(batch: List[MessageResponse]):
            messages = session.apply_batch(batch)
            if on_batch is not None:
                return on_batch(messages)

        def handle_error(error: Exception):
            if isinstance(error, ChatError):
                error.with_context("subscribe", conversation_id)
            if on_error is not None:
                return on_error(error)

        session.subscription = self.channel.subscribe(conversation_id, handle_batch, handle_error)
        logger.info(f"{viewer.id} opened conversation {conversation_id}")
        return session

    async def send_text(self, session: ChatSession, text: str) -> str:
        self._check_open(session, "send_text")
        text = (text or "").strip()
        if not text:
            raise ValidationError("Message text is empty", operation="send_text", conversation_id=session.conversation_id)

        try:
            return await self.channel.append(
                session.conversation_id,
                session.viewer,
                MessageContent(kind="text", text=text)
            )
        except ChatError as e:
            raise e.with_context("send_text", session.conversation_id)

    async def send_file(
        self,
        session: ChatSession,
        file,
        file_name: str,
        mime_type: str,
        size: Optional[int] = None,
        on_progress: Optional[Callable[[float], None]] = None
    ) -> str:
        """
        Upload a file and append a file message referencing it.

        Size and type policy is checked before any upload starts; when the
        size cannot be measured up front the cap is enforced while
        streaming. If the append fails after a successful upload, the object is left in
        storage without a message referencing it.
        """
        self._check_open(session, "send_file")
        conversation_id = session.conversation_id
        if not file_name:
            raise ValidationError("File name is required", operation="send_file", conversation_id=conversation_id)
        if not self.is_allowed_type(mime_type):
            raise ValidationError(
                f"Unsupported file type: {mime_type}",
                operation="send_file",
                conversation_id=conversation_id
            )
        if size is None:
            size = measure_size(file)
        if size is not None and size > self.max_attachment_size:
            raise ValidationError("file too large", operation="send_file", conversation_id=conversation_id)

        try:
            attachment = await self.uploader.upload_attachment(
                conversation_id,
                session.viewer.id,
                file,
                file_name,
                mime_type,
                on_progress=on_progress,
                size=size,
                max_size=self.max_attachment_size
            )
        except ChatError as e:
            raise e.with_context("send_file", conversation_id)

        try:
            return await self.channel.append(
                conversation_id,
                session.viewer,
                MessageContent(kind="file", text=self.default_caption, attachment=attachment)
            )
        except ChatError as e:
            logger.warning(f"Attachment {attachment.url} stored but not referenced: {e}")
            raise e.with_context("send_file", conversation_id)

    async def mark_read(self, session: ChatSession):
        self._check_open(session, "mark_read")
        try:
            await self.registry.mark_read(session.conversation_id, session.viewer.id)
        except ChatError as e:
            raise e.with_context("mark_read", session.conversation_id)

    async def close(self, session: ChatSession):
        """Stop the live window. Safe to call more than once."""
        if session.closed:
            return
        session.closed = True
        if session.subscription is not None:
            await session.subscription.aclose()
        logger.info(f"{session.viewer.id} closed conversation {session.conversation_id}")

    def is_allowed_type(self, mime_type: str) -> bool:
        return any(fnmatch.fnmatch(mime_type or "", pattern) for pattern in self.allowed_types)

    def _check_open(self, session: ChatSession, operation: str):
        if session.closed:
            raise ValidationError("Session is closed", operation=operation, conversation_id=session.conversation_id)
