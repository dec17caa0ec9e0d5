"""
Request dependencies for the chat services created at startup.
"""

from fastapi import HTTPException, Request, status

from .errors import ChatError, ConnectivityError, NotFoundError, QuotaError, ValidationError
from .services import ChatSessionController, ConversationRegistry, LocalObjectStore, MessageChannel


def get_registry(request: Request) -> ConversationRegistry:
    return request.app.state.registry


def get_channel(request: Request) -> MessageChannel:
    return request.app.state.channel


def get_controller(request: Request) -> ChatSessionController:
    return request.app.state.controller


def get_object_store(request: Request) -> LocalObjectStore:
    return request.app.state.object_store


def http_error(error: ChatError) -> HTTPException:
    """Map a chat error onto the HTTP status the client should act on."""
    if isinstance(error, NotFoundError):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(error, QuotaError):
        code = status.HTTP_413_REQUEST_ENTITY_TOO_LARGE
    elif isinstance(error, ConnectivityError):
        code = status.HTTP_503_SERVICE_UNAVAILABLE
    elif isinstance(error, ValidationError):
        code = status.HTTP_400_BAD_REQUEST
    else:
        code = status.HTTP_500_INTERNAL_SERVER_ERROR
    return HTTPException(status_code=code, detail=str(error))
