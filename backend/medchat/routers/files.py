"""
Attachment serving routes.
"""

import mimetypes
import os
from typing import Optional, Tuple
from fastapi import APIRouter, Depends, HTTPException, status, Request
from fastapi.responses import FileResponse, StreamingResponse

from ..dependencies import get_object_store
from ..errors import ValidationError
from ..services import LocalObjectStore
from ..services.object_store import PART_SUFFIX


router = APIRouter(prefix="/api/files", tags=["Files"])


def parse_range(header: str, file_size: int) -> Optional[Tuple[int, int]]:
    """
    Parse a single ``bytes=`` range into inclusive (start, end).

    Suffix ranges (``bytes=-N``) select the last N bytes. Returns None for
    headers that cannot be parsed, which serves the whole file.
    """
    unit, _, spec = header.partition("=")
    if unit.strip().lower() != "bytes" or "," in spec:
        return None
    start_text, sep, end_text = spec.strip().partition("-")
    if not sep:
        return None
    try:
        if not start_text:
            suffix = int(end_text)
            return max(file_size - suffix, 0), file_size - 1
        start = int(start_text)
        end = min(int(end_text), file_size - 1) if end_text else file_size - 1
    except ValueError:
        return None
    return start, end


@router.get("/{key:path}")
async def get_file(
    key: str,
    request: Request,
    store: LocalObjectStore = Depends(get_object_store)
):
    """Serve an attachment with Range support for large documents."""
    try:
        file_path = store.path_for(key)
    except ValidationError:
        file_path = None

    if not file_path or not file_path.is_file() or file_path.name.endswith(PART_SUFFIX):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="File not found"
        )

    content_type = mimetypes.guess_type(file_path.name)[0] or "application/octet-stream"

    # Handle Range header for partial downloads
    range_header = request.headers.get("range")
    file_size = os.path.getsize(file_path)
    byte_range = parse_range(range_header, file_size) if range_header else None
    if byte_range is not None:
        start, end = byte_range
        if start >= file_size or start > end:
            # Range not satisfiable
            raise HTTPException(
                status_code=status.HTTP_416_REQUESTED_RANGE_NOT_SATISFIABLE,
                detail="Requested range not satisfiable",
                headers={"Content-Range": f"bytes */{file_size}"}
            )

        chunk_size = end - start + 1

        def iterfile():
            with open(file_path, mode="rb") as file_like:
                file_like.seek(start)
                bytes_to_read = chunk_size
                block_size = 1024 * 64  # 64k chunks
                while bytes_to_read > 0:
                    chunk = file_like.read(min(block_size, bytes_to_read))
                    if not chunk:
                        break
                    yield chunk
                    bytes_to_read -= len(chunk)

        headers = {
            "Content-Range": f"bytes {start}-{end}/{file_size}",
            "Accept-Ranges": "bytes",
            "Content-Length": str(chunk_size),
            "Content-Type": content_type,
        }

        return StreamingResponse(
            iterfile(),
            status_code=status.HTTP_206_PARTIAL_CONTENT,
            headers=headers,
        )

    return FileResponse(file_path, media_type=content_type)
