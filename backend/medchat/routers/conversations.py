"""
Conversation and message routes.
"""

import asyncio
import logging
from fastapi import APIRouter, Depends, File, Form, HTTPException, Request, UploadFile, status
from typing import List, Optional

from ..config import settings
from ..dependencies import get_channel, get_controller, get_registry, http_error
from ..errors import ChatError
from ..schemas.conversation import ConversationResponse, ResolveConversationRequest
from ..schemas.message import MessageResponse, SendMessageResponse, SendTextRequest
from ..schemas.participant import ParticipantIdentity
from ..services import ChatSession, ChatSessionController, ConversationRegistry, MessageChannel
from ..sse import EventType, create_sse_response, queue_callbacks, queue_event_stream
from ..utils.security import get_current_participant

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/conversations", tags=["Conversations"])


async def get_participant_conversation(
    conversation_id: str,
    registry: ConversationRegistry,
    current: ParticipantIdentity
) -> ConversationResponse:
    """Load a conversation the current participant belongs to."""
    try:
        conversation = await registry.get_conversation(conversation_id)
    except ChatError as e:
        raise http_error(e)

    if not any(p.id == current.id for p in conversation.participants):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="You are not a participant of this conversation"
        )
    return conversation


@router.get("", response_model=List[ConversationResponse])
async def list_conversations(
    limit: int = settings.CONVERSATION_LIST_LIMIT,
    current: ParticipantIdentity = Depends(get_current_participant),
    registry: ConversationRegistry = Depends(get_registry)
):
    """List the current participant's conversations, most recent first."""
    try:
        return await registry.list_conversations_for(current.id, limit=limit)
    except ChatError as e:
        raise http_error(e)


@router.post("", response_model=ConversationResponse)
async def resolve_conversation(
    payload: ResolveConversationRequest,
    current: ParticipantIdentity = Depends(get_current_participant),
    registry: ConversationRegistry = Depends(get_registry)
):
    """Open the chat with another participant, creating it on first contact."""
    try:
        conversation_id = await registry.resolve_conversation(current.id, payload.participant_id)
        conversation = await registry.get_conversation(conversation_id)
    except ChatError as e:
        raise http_error(e)
    return conversation.for_viewer(current.id)


@router.get("/stream")
async def stream_conversations(
    request: Request,
    current: ParticipantIdentity = Depends(get_current_participant),
    registry: ConversationRegistry = Depends(get_registry)
):
    """Live conversation list as Server-Sent Events."""

    async def open_feed(queue: asyncio.Queue):
        on_update, on_error = queue_callbacks(queue, EventType.CONVERSATIONS)
        subscription = registry.subscribe_conversations_for(current.id, on_update, on_error)
        return subscription.aclose

    return create_sse_response(
        queue_event_stream(request, open_feed, participant_id=current.id)
    )


@router.get("/{conversation_id}", response_model=ConversationResponse)
async def get_conversation(
    conversation_id: str,
    current: ParticipantIdentity = Depends(get_current_participant),
    registry: ConversationRegistry = Depends(get_registry)
):
    """Get a conversation with its summary and unread state."""
    conversation = await get_participant_conversation(conversation_id, registry, current)
    return conversation.for_viewer(current.id)


@router.post("/{conversation_id}/read", status_code=status.HTTP_204_NO_CONTENT)
async def mark_read(
    conversation_id: str,
    current: ParticipantIdentity = Depends(get_current_participant),
    registry: ConversationRegistry = Depends(get_registry)
):
    """Acknowledge every message in the conversation."""
    await get_participant_conversation(conversation_id, registry, current)
    try:
        await registry.mark_read(conversation_id, current.id)
    except ChatError as e:
        raise http_error(e)


@router.get("/{conversation_id}/messages", response_model=List[MessageResponse])
async def list_messages(
    conversation_id: str,
    limit: int = 50,
    before_seq: Optional[int] = None,
    current: ParticipantIdentity = Depends(get_current_participant),
    registry: ConversationRegistry = Depends(get_registry),
    channel: MessageChannel = Depends(get_channel)
):
    """Message history, newest first. Page with ``before_seq``."""
    await get_participant_conversation(conversation_id, registry, current)
    try:
        return await channel.list_messages(conversation_id, limit=limit, before_seq=before_seq)
    except ChatError as e:
        raise http_error(e)


@router.post(
    "/{conversation_id}/messages",
    response_model=SendMessageResponse,
    status_code=status.HTTP_201_CREATED
)
async def send_text(
    conversation_id: str,
    payload: SendTextRequest,
    current: ParticipantIdentity = Depends(get_current_participant),
    registry: ConversationRegistry = Depends(get_registry),
    controller: ChatSessionController = Depends(get_controller)
):
    """Send a text message."""
    await get_participant_conversation(conversation_id, registry, current)
    session = ChatSession(conversation_id=conversation_id, viewer=current)
    try:
        message_id = await controller.send_text(session, payload.text)
    except ChatError as e:
        raise http_error(e)
    return SendMessageResponse(message_id=message_id, conversation_id=conversation_id)


@router.post(
    "/{conversation_id}/files",
    response_model=SendMessageResponse,
    status_code=status.HTTP_201_CREATED
)
async def send_file(
    conversation_id: str,
    file: UploadFile = File(...),
    file_name: Optional[str] = Form(None),
    current: ParticipantIdentity = Depends(get_current_participant),
    registry: ConversationRegistry = Depends(get_registry),
    controller: ChatSessionController = Depends(get_controller)
):
    """Upload a PDF or image and send it as a file message."""
    await get_participant_conversation(conversation_id, registry, current)
    session = ChatSession(conversation_id=conversation_id, viewer=current)
    name = file_name or file.filename or "attachment"

    def log_progress(fraction: float):
        logger.debug(f"Upload {name} for {conversation_id}: {fraction:.0%}")

    try:
        message_id = await controller.send_file(
            session,
            file,
            name,
            file.content_type or "application/octet-stream",
            size=file.size,
            on_progress=log_progress
        )
    except ChatError as e:
        raise http_error(e)
    return SendMessageResponse(message_id=message_id, conversation_id=conversation_id)


@router.get("/{conversation_id}/messages/stream")
async def stream_messages(
    conversation_id: str,
    request: Request,
    current: ParticipantIdentity = Depends(get_current_participant),
    registry: ConversationRegistry = Depends(get_registry),
    controller: ChatSessionController = Depends(get_controller)
):
    """Open the conversation and stream its message window as Server-Sent Events."""
    await get_participant_conversation(conversation_id, registry, current)

    async def open_feed(queue: asyncio.Queue):
        on_batch, on_error = queue_callbacks(queue, EventType.MESSAGES, conversation_id=conversation_id)
        session = await controller.open(conversation_id, current, on_batch=on_batch, on_error=on_error)

        async def close_session():
            await controller.close(session)

        return close_session

    return create_sse_response(
        queue_event_stream(request, open_feed, conversation_id=conversation_id)
    )
