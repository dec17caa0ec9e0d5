"""Change notification and live queries over the durable store.

Writers publish a ``ChangeEvent`` on a topic after they commit. A
``LiveQuery`` subscribes to a topic, delivers an initial snapshot, and
re-delivers the complete result every time a change is announced. The
feed is in-process; a multi-worker deployment would back it with Redis
pub/sub.
"""

import asyncio
import inspect
import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from .config import settings
from .errors import ConnectivityError

logger = logging.getLogger(__name__)


def conversation_topic(conversation_id: str) -> str:
    return f"conversation:{conversation_id}"


def participant_topic(participant_id: str) -> str:
    return f"participant:{participant_id}"


class ChangeKind(str, Enum):
    """Change event kinds."""

    MESSAGE_APPENDED = "message:appended"
    CONVERSATION_UPDATED = "conversation:updated"


@dataclass
class ChangeEvent:
    """A committed change on a topic."""

    kind: str
    data: dict[str, Any]
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:8])


class ChangeFeed:
    """In-process topic -> subscriber queues fan-out."""

    def __init__(self):
        # topic -> list of queues
        self._queues: dict[str, list[asyncio.Queue]] = defaultdict(list)

    def subscribe(self, topic: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        self._queues[topic].append(queue)
        logger.debug(f"Subscribed to {topic}")
        return queue

    def unsubscribe(self, topic: str, queue: asyncio.Queue):
        if topic in self._queues:
            try:
                self._queues[topic].remove(queue)
                if not self._queues[topic]:
                    del self._queues[topic]
            except ValueError:
                pass
        logger.debug(f"Unsubscribed from {topic}")

    def publish(self, topic: str, event: ChangeEvent):
        """Publish an event to every subscriber of a topic."""
        for queue in list(self._queues.get(topic, [])):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(f"Queue full for {topic}, dropping event {event.id}")

    def subscriber_count(self, topic: str) -> int:
        return len(self._queues.get(topic, []))


class SubscriptionState(str, Enum):
    """Lifecycle of a live query."""

    CONNECTING = "connecting"
    LIVE = "live"
    DISCONNECTED = "disconnected"
    RECONNECTING = "reconnecting"
    CANCELLED = "cancelled"


Callback = Callable[[Any], Optional[Awaitable[None]]]


class LiveQuery:
    """Snapshot-then-changes subscription with a cancellation handle.

    ``fetch`` runs the query and returns the full ordered result. It is
    called once on start and again after every batch of change events,
    so consumers always receive the complete current set; at-least-once
    delivery means they should de-duplicate by id.

    Connectivity failures move the query to DISCONNECTED, are reported
    through ``on_error``, and are retried after ``reconnect_delay``
    seconds. Any other failure is reported and ends the query.

    ``cancel()`` is synchronous: once it returns, no callback fires.
    """

    def __init__(
        self,
        feed: ChangeFeed,
        topic: str,
        fetch: Callable[[], Awaitable[Any]],
        on_snapshot: Callback,
        on_error: Optional[Callback] = None,
        reconnect_delay: Optional[float] = None,
    ):
        self.feed = feed
        self.topic = topic
        self._fetch = fetch
        self._on_snapshot = on_snapshot
        self._on_error = on_error
        self.reconnect_delay = (
            settings.RECONNECT_DELAY_SECONDS if reconnect_delay is None else reconnect_delay
        )
        self._state = SubscriptionState.CONNECTING
        self._queue: Optional[asyncio.Queue] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def state(self) -> SubscriptionState:
        return self._state

    @property
    def cancelled(self) -> bool:
        return self._state is SubscriptionState.CANCELLED

    def start(self) -> "LiveQuery":
        """Register on the feed and begin delivering. Needs a running loop."""
        if self._task is not None:
            return self
        # Register before the first fetch so no change can slip between them
        self._queue = self.feed.subscribe(self.topic)
        self._task = asyncio.get_running_loop().create_task(self._run())
        self._task.add_done_callback(self._on_done)
        return self

    def cancel(self):
        """Stop delivery. Idempotent."""
        if self._state is SubscriptionState.CANCELLED:
            return
        self._state = SubscriptionState.CANCELLED
        if self._queue is not None:
            self.feed.unsubscribe(self.topic, self._queue)
        task = self._task
        # Called from inside a callback the loop notices the state and exits
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def aclose(self):
        """Cancel and wait for the background task to finish."""
        self.cancel()
        task = self._task
        if task is None or task is asyncio.current_task():
            return
        await asyncio.wait({task})

    async def _run(self):
        while not self.cancelled:
            try:
                snapshot = await self._fetch()
            except ConnectivityError as e:
                if self.cancelled:
                    return
                logger.warning(f"Live query on {self.topic} disconnected: {e}")
                self._state = SubscriptionState.DISCONNECTED
                await self._emit(self._on_error, e)
                await asyncio.sleep(self.reconnect_delay)
                if self.cancelled:
                    return
                self._state = SubscriptionState.RECONNECTING
                continue
            except Exception as e:
                if self.cancelled:
                    return
                logger.error(f"Live query on {self.topic} failed: {e}")
                await self._emit(self._on_error, e)
                self.cancel()
                return

            if self.cancelled:
                return
            self._state = SubscriptionState.LIVE
            await self._emit(self._on_snapshot, snapshot)
            if self.cancelled:
                return
            await self._wait_for_change()

    async def _wait_for_change(self):
        await self._queue.get()
        # Coalesce a burst of changes into one refetch
        while not self._queue.empty():
            self._queue.get_nowait()

    async def _emit(self, callback: Optional[Callback], payload: Any):
        if callback is None or self.cancelled:
            return
        result = callback(payload)
        if inspect.isawaitable(result):
            await result

    def _on_done(self, task: asyncio.Task):
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Live query on {self.topic} stopped by callback error: {exc!r}")
            self._state = SubscriptionState.CANCELLED
            if self._queue is not None:
                self.feed.unsubscribe(self.topic, self._queue)
