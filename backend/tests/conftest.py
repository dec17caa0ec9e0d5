"""Shared fixtures: a throwaway SQLite store and wired chat services per test."""

import asyncio
import os

# Must be set before medchat.config is imported
os.environ.setdefault("SECRET_KEY", "test-secret-key")

import pytest
import pytest_asyncio

from medchat.database import build_engine, build_session_factory, close_db, init_db
from medchat.realtime import ChangeFeed
from medchat.schemas.participant import ParticipantIdentity
from medchat.services import (
    AttachmentUploader,
    ChatSessionController,
    ConversationRegistry,
    InMemoryProfileProvider,
    LocalObjectStore,
    MessageChannel,
)

DOCTOR = ParticipantIdentity(id="doc-1", display_name="Dr. Amal Haddad", avatar_url="https://cdn.test/doc-1.png", role="doctor")
PATIENT = ParticipantIdentity(id="pat-9", display_name="Sami Karam", role="patient")
OTHER_PATIENT = ParticipantIdentity(id="pat-2", display_name="Rana Aoun", role="patient")


class Collector:
    """Callback that records deliveries and lets a test await them."""

    def __init__(self):
        self.items = []
        self._queue: asyncio.Queue = asyncio.Queue()

    def __call__(self, item):
        self.items.append(item)
        self._queue.put_nowait(item)

    async def next(self, timeout: float = 2.0):
        return await asyncio.wait_for(self._queue.get(), timeout)

    async def until(self, predicate, timeout: float = 2.0):
        """Wait for the first delivery matching predicate."""
        async def wait():
            while True:
                item = await self._queue.get()
                if predicate(item):
                    return item
        return await asyncio.wait_for(wait(), timeout)


@pytest.fixture
def collect():
    return Collector


@pytest.fixture
def doctor():
    return DOCTOR


@pytest.fixture
def patient():
    return PATIENT


@pytest.fixture
def other_patient():
    return OTHER_PATIENT


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'chat.db'}")
    await init_db(bind=engine)
    yield engine
    await close_db(bind=engine)


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def feed():
    return ChangeFeed()


@pytest.fixture
def profiles():
    return InMemoryProfileProvider(
        {p.id: p for p in (DOCTOR, PATIENT, OTHER_PATIENT)},
        strict=True
    )


@pytest.fixture
def registry(feed, profiles, session_factory):
    return ConversationRegistry(feed, profiles=profiles, session_factory=session_factory)


@pytest.fixture
def channel(registry):
    return MessageChannel(registry)


@pytest.fixture
def object_store(tmp_path):
    return LocalObjectStore(root=str(tmp_path / "objects"), base_url="http://testserver")


@pytest.fixture
def uploader(object_store):
    return AttachmentUploader(object_store, chunk_size=1024)


@pytest.fixture
def controller(registry, channel, uploader):
    return ChatSessionController(registry, channel, uploader)


@pytest_asyncio.fixture
async def conversation_id(registry):
    return await registry.resolve_conversation(PATIENT.id, DOCTOR.id)
