"""Server-Sent Events support for live chat feeds."""

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncGenerator, Awaitable, Callable, List, Optional

from fastapi import Request
from fastapi.responses import StreamingResponse

from .config import settings
from .errors import ChatError

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """SSE event types."""

    CONNECTED = "connected"
    MESSAGES = "messages"
    CONVERSATIONS = "conversations"
    ERROR = "error"
    HEARTBEAT = "heartbeat"


@dataclass
class SSEEvent:
    """An SSE event to send to clients."""

    event: str
    data: dict[str, Any]
    id: str = field(default_factory=lambda: str(uuid.uuid4())[:8])

    def encode(self) -> str:
        """Encode as SSE format."""
        lines = [
            f"id: {self.id}",
            f"event: {self.event.value if isinstance(self.event, Enum) else self.event}",
            f"data: {json.dumps(self.data)}",
            "",  # Empty line to end the event
        ]
        return "\n".join(lines) + "\n"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def snapshot_event(event: EventType, items: List[Any], **extra) -> SSEEvent:
    """Wrap a delivered batch of pydantic models as one event."""
    return SSEEvent(
        event=event,
        data={"items": [item.model_dump(mode="json") for item in items], **extra},
    )


def error_event(error: Exception) -> SSEEvent:
    data: dict[str, Any] = {"error": str(error), "kind": type(error).__name__}
    if isinstance(error, ChatError):
        data["retryable"] = error.retryable
    return SSEEvent(event=EventType.ERROR, data=data)


def queue_callbacks(queue: asyncio.Queue, event: EventType, **extra):
    """Callbacks for a live query that push SSE events onto a queue."""

    def on_snapshot(items):
        queue.put_nowait(snapshot_event(event, items, **extra))

    def on_error(error):
        queue.put_nowait(error_event(error))

    return on_snapshot, on_error


Closer = Callable[[], Awaitable[None]]


async def queue_event_stream(
    request: Request,
    open_feed: Callable[[asyncio.Queue], Awaitable[Closer]],
    heartbeat_interval: Optional[int] = None,
    **connected_data,
) -> AsyncGenerator[str, None]:
    """Relay queued events to the client until it disconnects.

    ``open_feed(queue)`` starts the live query that fills the queue and
    returns the coroutine function that stops it. It runs on the first
    iteration, so a response that is never sent holds no subscription.
    Sends heartbeat pings every heartbeat_interval seconds to keep the
    connection alive.
    """
    heartbeat_interval = heartbeat_interval or settings.SSE_HEARTBEAT_SECONDS
    queue: asyncio.Queue = asyncio.Queue()
    try:
        close = await open_feed(queue)
    except ChatError as e:
        yield error_event(e).encode()
        return

    try:
        yield SSEEvent(
            event=EventType.CONNECTED,
            data={**connected_data, "timestamp": _now()},
        ).encode()

        while True:
            # Check if client disconnected
            if await request.is_disconnected():
                break

            try:
                event = await asyncio.wait_for(queue.get(), timeout=heartbeat_interval)
                yield event.encode()
            except asyncio.TimeoutError:
                yield SSEEvent(
                    event=EventType.HEARTBEAT,
                    data={"timestamp": _now()},
                ).encode()
    finally:
        await close()
        logger.debug(f"Event stream closed ({connected_data})")


def create_sse_response(generator: AsyncGenerator[str, None]) -> StreamingResponse:
    """Create an SSE StreamingResponse."""
    return StreamingResponse(
        generator,
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",  # Disable nginx buffering
        },
    )
