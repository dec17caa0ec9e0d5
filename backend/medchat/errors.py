"""
Error taxonomy for the chat core.

Every failure surfaced by the registry, channel, uploader or session
controller is a ``ChatError`` subclass, so callers can pick a
user-facing message by kind rather than by parsing text.
"""

from contextlib import asynccontextmanager
from typing import Optional

from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError


class ChatError(Exception):
    """Base class for chat core errors."""

    retryable = False

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        conversation_id: Optional[str] = None
    ):
        super().__init__(message)
        self.message = message
        self.operation = operation
        self.conversation_id = conversation_id

    def with_context(self, operation: str, conversation_id: Optional[str] = None) -> "ChatError":
        """Attach operation context without overwriting what is already set."""
        if self.operation is None:
            self.operation = operation
        if self.conversation_id is None:
            self.conversation_id = conversation_id
        return self

    def __str__(self) -> str:
        if self.operation and self.conversation_id:
            return f"{self.operation} [{self.conversation_id}]: {self.message}"
        if self.operation:
            return f"{self.operation}: {self.message}"
        return self.message


class ValidationError(ChatError):
    """Malformed input: empty text, missing participant, file without url."""


class NotFoundError(ChatError):
    """The referenced conversation does not exist."""


class ConnectivityError(ChatError):
    """Store or object store unreachable, or the request timed out."""

    retryable = True


class QuotaError(ChatError):
    """The object store rejected an upload because of size or quota."""


class ConflictError(ChatError):
    """Concurrent create detected; resolved inside the registry."""


def is_connectivity_failure(exc: BaseException) -> bool:
    """Whether a SQLAlchemy error means the store could not be reached."""
    if isinstance(exc, (OperationalError, InterfaceError)):
        return True
    return isinstance(exc, DBAPIError) and exc.connection_invalidated


@asynccontextmanager
async def store_errors(operation: str, conversation_id: Optional[str] = None):
    """Translate store driver failures into ConnectivityError."""
    try:
        yield
    except ChatError as e:
        raise e.with_context(operation, conversation_id)
    except DBAPIError as e:
        if is_connectivity_failure(e):
            raise ConnectivityError(
                f"Store unavailable: {e.orig}",
                operation=operation,
                conversation_id=conversation_id
            ) from e
        raise
    except (OSError, TimeoutError) as e:
        raise ConnectivityError(
            f"Store unavailable: {e}",
            operation=operation,
            conversation_id=conversation_id
        ) from e
