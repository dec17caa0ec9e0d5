"""
MedChat - Main FastAPI Application
Real-time patient/doctor messaging with ordered delivery, attachments
and unread tracking.
"""

import logging
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from .config import settings
from .database import init_db, close_db, AsyncSessionLocal
from .realtime import ChangeFeed
from .routers import conversations_router, files_router
from .services import (
    AttachmentUploader,
    ChatSessionController,
    ConversationRegistry,
    LocalObjectStore,
    MessageChannel,
)
from .services.profile_service import build_profile_provider


logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s"
)
logger = logging.getLogger(__name__)


def build_services(app: FastAPI, session_factory=None, profiles=None, object_store=None):
    """Wire the chat core and attach it to the app state."""
    feed = ChangeFeed()
    registry = ConversationRegistry(
        feed,
        profiles=profiles or build_profile_provider(),
        session_factory=session_factory or AsyncSessionLocal
    )
    channel = MessageChannel(registry)
    store = object_store or LocalObjectStore()
    uploader = AttachmentUploader(store)

    app.state.feed = feed
    app.state.registry = registry
    app.state.channel = channel
    app.state.object_store = store
    app.state.controller = ChatSessionController(registry, channel, uploader)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup
    await init_db()
    if not hasattr(app.state, "controller"):
        build_services(app)
    logger.info(f"{settings.APP_NAME} {settings.APP_VERSION} started")

    yield

    # Shutdown
    await close_db()


# Create FastAPI app
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Real-time patient/doctor chat with attachments and unread tracking",
    lifespan=lifespan
)


# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # In production, specify exact origins
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Include routers
app.include_router(conversations_router)
app.include_router(files_router)


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "app": settings.APP_NAME,
        "version": settings.APP_VERSION
    }


@app.get("/api")
async def api_info():
    """API information endpoint."""
    return {
        "name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "endpoints": {
            "conversations": "/api/conversations",
            "files": "/api/files"
        }
    }
