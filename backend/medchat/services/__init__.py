"""
Services package.
"""

from .profile_service import ProfileProvider, InMemoryProfileProvider, HttpProfileProvider
from .object_store import LocalObjectStore
from .conversation_registry import ConversationRegistry
from .message_channel import MessageChannel
from .attachment_uploader import AttachmentUploader
from .chat_session import ChatSession, ChatSessionController

__all__ = [
    "ProfileProvider",
    "InMemoryProfileProvider",
    "HttpProfileProvider",
    "LocalObjectStore",
    "ConversationRegistry",
    "MessageChannel",
    "AttachmentUploader",
    "ChatSession",
    "ChatSessionController",
]
