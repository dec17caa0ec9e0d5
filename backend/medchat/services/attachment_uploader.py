"""
Attachment uploader: moves a local file into object storage under a
chat-scoped key and reports fractional progress.
"""

import asyncio
import inspect
import logging
import os
import re
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncIterator, Callable, Optional

import aiofiles

from ..config import settings
from ..errors import ChatError, ConnectivityError
from ..schemas.message import AttachmentDescriptor
from .object_store import LocalObjectStore

logger = logging.getLogger(__name__)

_UNSAFE_KEY_CHARS = re.compile(r"[^A-Za-z0-9_.-]")


def measure_size(file) -> Optional[int]:
    """Best-effort byte size of a path, UploadFile or seekable binary file."""
    if isinstance(file, (str, os.PathLike)):
        return os.path.getsize(file)
    size = getattr(file, "size", None)
    if isinstance(size, int):
        return size
    if hasattr(file, "seekable") and file.seekable():
        position = file.tell()
        file.seek(0, os.SEEK_END)
        end = file.tell()
        file.seek(position)
        return end - position
    return None


async def iter_chunks(file, chunk_size: int) -> AsyncIterator[bytes]:
    """Read a path or file object (sync or async ``read``) in chunks."""
    if isinstance(file, (str, os.PathLike)):
        async with aiofiles.open(file, "rb") as f:
            while True:
                chunk = await f.read(chunk_size)
                if not chunk:
                    break
                yield chunk
        return

    while True:
        chunk = file.read(chunk_size)
        if inspect.isawaitable(chunk):
            chunk = await chunk
        if not chunk:
            break
        yield chunk


class ProgressReporter:
    """Turns byte counts into non-decreasing fractions ending in one 1.0."""

    def __init__(self, callback: Optional[Callable[[float], None]]):
        self.callback = callback
        self.last = 0.0
        self.finished = False

    def bytes_transferred(self, transferred: int, total: Optional[int]):
        if not total or self.finished:
            return
        fraction = min(transferred / total, 1.0)
        # 1.0 is held back until the object is committed
        if fraction >= 1.0 or fraction <= self.last:
            return
        self.last = fraction
        if self.callback:
            self.callback(fraction)

    def complete(self):
        if self.finished:
            return
        self.finished = True
        self.last = 1.0
        if self.callback:
            self.callback(1.0)


class AttachmentUploader:
    """Service for chat attachment uploads."""

    def __init__(self, store: LocalObjectStore, chunk_size: Optional[int] = None):
        self.store = store
        self.chunk_size = chunk_size or settings.UPLOAD_CHUNK_SIZE

    @staticmethod
    def build_key(conversation_id: str, uploader_id: str, file_name: str) -> str:
        """Destination key, scoped by conversation so it can be cleaned up in bulk."""
        ext = Path(file_name or "").suffix.lstrip(".").lower() or "bin"
        timestamp = int(datetime.now(timezone.utc).timestamp() * 1000)
        uploader = _UNSAFE_KEY_CHARS.sub("_", uploader_id)
        conversation = _UNSAFE_KEY_CHARS.sub("_", conversation_id)
        return f"chat_files/{conversation}/{uploader}_{timestamp}_{uuid.uuid4().hex[:8]}.{_UNSAFE_KEY_CHARS.sub('_', ext)}"

    async def upload(
        self,
        conversation_id: str,
        uploader_id: str,
        file,
        file_name: str,
        mime_type: str,
        on_progress: Optional[Callable[[float], None]] = None,
        size: Optional[int] = None,
        max_size: Optional[int] = None
    ) -> str:
        """Upload a file and return its durable URL."""
        url, _, _ = await self._upload(
            conversation_id, uploader_id, file, file_name, mime_type, on_progress, size, max_size
        )
        return url

    async def upload_attachment(
        self,
        conversation_id: str,
        uploader_id: str,
        file,
        file_name: str,
        mime_type: str,
        on_progress: Optional[Callable[[float], None]] = None,
        size: Optional[int] = None,
        max_size: Optional[int] = None
    ) -> AttachmentDescriptor:
        """Upload a file and return the descriptor a file message carries."""
        url, key, stored = await self._upload(
            conversation_id, uploader_id, file, file_name, mime_type, on_progress, size, max_size
        )
        metadata = None
        if mime_type.startswith("image/"):
            metadata = await asyncio.to_thread(self.store.image_metadata, key)
        return AttachmentDescriptor(
            url=url,
            file_name=file_name,
            size=stored,
            mime_type=mime_type,
            metadata=metadata
        )

    async def _upload(self, conversation_id, uploader_id, file, file_name, mime_type, on_progress, size, max_size):
        key = self.build_key(conversation_id, uploader_id, file_name)
        if size is None:
            size = measure_size(file)
        progress = ProgressReporter(on_progress)

        try:
            stored = await self.store.upload_resumable(
                key,
                iter_chunks(file, self.chunk_size),
                mime_type,
                total_size=size,
                on_progress=progress.bytes_transferred,
                max_bytes=max_size
            )
        except ChatError as e:
            raise e.with_context("upload", conversation_id)
        except OSError as e:
            logger.error(f"Upload of {file_name} to {key} failed: {e}")
            raise ConnectivityError(
                f"Object store unavailable: {e}",
                operation="upload",
                conversation_id=conversation_id
            ) from e

        progress.complete()
        logger.info(f"Uploaded {file_name} ({stored} bytes) to {key}")
        return self.store.get_download_url(key), key, stored
