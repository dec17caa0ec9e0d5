"""
Object storage for chat attachments on the local filesystem.
"""

import logging
from pathlib import Path
from typing import AsyncIterator, Callable, Optional
from urllib.parse import quote, unquote

import aiofiles
import aiofiles.os
from PIL import Image, UnidentifiedImageError

from ..config import settings
from ..errors import QuotaError, ValidationError

logger = logging.getLogger(__name__)

PART_SUFFIX = ".part"


class LocalObjectStore:
    """Keyed blob store with chunked uploads and stable download URLs.

    Objects are written to ``<key>.part`` and renamed into place when the
    last chunk lands, so a reader never sees a half-written object under
    its final key. An interrupted upload leaves the ``.part`` file behind.
    """

    def __init__(
        self,
        root: Optional[str] = None,
        base_url: Optional[str] = None,
        quota_bytes: Optional[int] = None
    ):
        self.root = Path(root or settings.UPLOAD_DIR).resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self.base_url = (base_url or settings.PUBLIC_BASE_URL).rstrip("/")
        self.quota_bytes = quota_bytes if quota_bytes is not None else settings.OBJECT_QUOTA_BYTES

    def path_for(self, key: str) -> Path:
        """Filesystem path of a key, refusing keys that escape the root."""
        path = (self.root / key).resolve()
        if path == self.root or self.root not in path.parents:
            raise ValidationError(f"Invalid object key: {key}")
        return path

    def exists(self, key: str) -> bool:
        try:
            path = self.path_for(key)
        except ValidationError:
            return False
        return path.is_file()

    async def upload_resumable(
        self,
        key: str,
        chunks: AsyncIterator[bytes],
        content_type: str,
        total_size: Optional[int] = None,
        on_progress: Optional[Callable[[int, Optional[int]], None]] = None,
        max_bytes: Optional[int] = None
    ) -> int:
        """
        Write chunks under ``key`` and return the number of bytes stored.

        ``on_progress(bytes_transferred, total_size)`` is called after
        every chunk. Objects larger than the quota are rejected with
        QuotaError, objects larger than the caller's ``max_bytes`` with
        ValidationError("file too large"). Either way the partial data is
        discarded.
        """
        error = self._size_error(total_size, max_bytes)
        if error is not None:
            raise error

        path = self.path_for(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        part_path = path.with_name(path.name + PART_SUFFIX)

        transferred = 0
        async with aiofiles.open(part_path, "wb") as f:
            async for chunk in chunks:
                if not chunk:
                    continue
                error = self._size_error(transferred + len(chunk), max_bytes)
                if error is not None:
                    break
                await f.write(chunk)
                transferred += len(chunk)
                if on_progress:
                    on_progress(transferred, total_size)

        if error is not None:
            await aiofiles.os.remove(part_path)
            raise error

        await aiofiles.os.rename(part_path, path)
        logger.debug(f"Stored {key} ({content_type}, {transferred} bytes)")
        return transferred

    def _size_error(self, size: Optional[int], max_bytes: Optional[int]):
        if size is None:
            return None
        if max_bytes is not None and size > max_bytes:
            return ValidationError("file too large")
        if size > self.quota_bytes:
            return QuotaError(
                f"Object exceeds storage quota of {self.quota_bytes / (1024*1024):.1f}MB"
            )
        return None

    def get_download_url(self, key: str) -> str:
        return f"{self.base_url}/api/files/{quote(key)}"

    def key_from_url(self, url: str) -> Optional[str]:
        prefix = f"{self.base_url}/api/files/"
        if not url.startswith(prefix):
            return None
        return unquote(url[len(prefix):])

    async def delete(self, key: str) -> bool:
        """Delete an object."""
        path = self.path_for(key)
        if path.exists():
            await aiofiles.os.remove(path)
            return True
        return False

    def image_metadata(self, key: str) -> Optional[dict]:
        """Width and height of a stored image, None if it is not one."""
        try:
            with Image.open(self.path_for(key)) as img:
                return {"width": img.width, "height": img.height}
        except (UnidentifiedImageError, OSError):
            return None
