"""Tests for attachment uploads, progress reporting and object storage."""

import io
import re

import pytest
from PIL import Image
from medchat.errors import ConnectivityError, QuotaError, ValidationError
from medchat.services import AttachmentUploader, LocalObjectStore
from medchat.services.attachment_uploader import ProgressReporter, measure_size


KEY_PATTERN = re.compile(r"^chat_files/(?P<cid>[^/]+)/(?P<uploader>[^/]+)_(?P<ms>\d+)_[0-9a-f]{8}\.(?P<ext>\w+)$")


def png_bytes(width=32, height=16):
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), color=(200, 30, 30)).save(buffer, format="PNG")
    return buffer.getvalue()


class TestBuildKey:
    """Test destination key layout."""

    def test_key_is_scoped_by_conversation(self):
        key = AttachmentUploader.build_key("c-abc", "pat-9", "Blood Test.PDF")
        match = KEY_PATTERN.match(key)
        assert match is not None
        assert match.group("cid") == "c-abc"
        assert key.split("/")[2].startswith("pat-9_")
        assert match.group("ext") == "pdf"

    def test_missing_extension_defaults_to_bin(self):
        assert AttachmentUploader.build_key("c-abc", "pat-9", "notes").endswith(".bin")

    def test_keys_are_unique(self):
        keys = {AttachmentUploader.build_key("c-abc", "pat-9", "a.pdf") for _ in range(20)}
        assert len(keys) == 20

    def test_unsafe_characters_are_replaced(self):
        key = AttachmentUploader.build_key("c-abc", "../evil id", "x.pdf")
        assert key.count("/") == 2
        assert key.split("/")[2].startswith(".._evil_id_")


class TestProgressReporter:
    """Test the progress contract."""

    def test_fractions_increase_and_end_with_single_one(self):
        seen = []
        progress = ProgressReporter(seen.append)

        for transferred in (10, 10, 50, 100):
            progress.bytes_transferred(transferred, 100)
        progress.complete()
        progress.complete()

        assert seen == [0.1, 0.5, 1.0]

    def test_unknown_total_reports_only_completion(self):
        seen = []
        progress = ProgressReporter(seen.append)
        progress.bytes_transferred(10, None)
        progress.complete()
        assert seen == [1.0]


class TestMeasureSize:
    """Test size detection of upload sources."""

    def test_path(self, tmp_path):
        path = tmp_path / "report.pdf"
        path.write_bytes(b"x" * 300)
        assert measure_size(str(path)) == 300

    def test_seekable_file_keeps_position(self):
        buffer = io.BytesIO(b"x" * 300)
        buffer.seek(100)
        assert measure_size(buffer) == 200
        assert buffer.tell() == 100


class TestUpload:
    """Test AttachmentUploader against a local object store."""

    @pytest.mark.asyncio
    async def test_upload_returns_download_url(self, uploader, object_store):
        data = b"%PDF-1.4 " + b"0" * 5000
        progress = []

        url = await uploader.upload("c-abc", "pat-9", io.BytesIO(data), "report.pdf", "application/pdf", progress.append)

        assert url.startswith("http://testserver/api/files/chat_files/c-abc/pat-9_")
        key = object_store.key_from_url(url)
        assert object_store.path_for(key).read_bytes() == data
        assert progress == sorted(progress)
        assert progress.count(1.0) == 1
        assert progress[-1] == 1.0
        assert len(progress) > 2

    @pytest.mark.asyncio
    async def test_upload_from_path(self, uploader, object_store, tmp_path):
        path = tmp_path / "xray.png"
        path.write_bytes(png_bytes(64, 48))

        attachment = await uploader.upload_attachment("c-abc", "doc-1", str(path), "xray.png", "image/png")

        assert attachment.file_name == "xray.png"
        assert attachment.size == path.stat().st_size
        assert attachment.metadata == {"width": 64, "height": 48}
        assert object_store.exists(object_store.key_from_url(attachment.url))

    @pytest.mark.asyncio
    async def test_pdf_has_no_image_metadata(self, uploader):
        attachment = await uploader.upload_attachment(
            "c-abc", "doc-1", io.BytesIO(b"%PDF-1.4"), "report.pdf", "application/pdf"
        )
        assert attachment.metadata is None
        assert attachment.mime_type == "application/pdf"

    @pytest.mark.asyncio
    async def test_quota_exceeded(self, tmp_path):
        store = LocalObjectStore(root=str(tmp_path / "small"), base_url="http://testserver", quota_bytes=1000)
        uploader = AttachmentUploader(store, chunk_size=256)
        progress = []

        with pytest.raises(QuotaError) as excinfo:
            await uploader.upload("c-abc", "pat-9", io.BytesIO(b"x" * 5000), "big.pdf", "application/pdf", progress.append)

        assert excinfo.value.operation == "upload"
        assert 1.0 not in progress
        assert list((tmp_path / "small").rglob("*.*")) == []

    @pytest.mark.asyncio
    async def test_quota_enforced_when_size_unknown(self, tmp_path):
        """Test that a stream without a known size is cut off at the quota."""
        store = LocalObjectStore(root=str(tmp_path / "small"), base_url="http://testserver", quota_bytes=1000)
        uploader = AttachmentUploader(store, chunk_size=256)

        class Stream:
            def __init__(self):
                self.remaining = 5000

            def read(self, n):
                n = min(n, self.remaining)
                self.remaining -= n
                return b"x" * n

        with pytest.raises(QuotaError):
            await uploader.upload("c-abc", "pat-9", Stream(), "big.pdf", "application/pdf")
        assert [p for p in (tmp_path / "small").rglob("*") if p.is_file()] == []

    @pytest.mark.asyncio
    async def test_caller_limit_is_validation_error(self, object_store):
        """Test that a caller-supplied cap below the quota rejects as too large."""
        uploader = AttachmentUploader(object_store, chunk_size=256)

        with pytest.raises(ValidationError, match="file too large"):
            await uploader.upload("c-abc", "pat-9", io.BytesIO(b"x" * 2000), "big.pdf", "application/pdf", max_size=1000)
        assert [p for p in object_store.root.rglob("*") if p.is_file()] == []

    @pytest.mark.asyncio
    async def test_read_failure_is_connectivity_error(self, uploader):
        class Broken:
            def read(self, n):
                raise OSError("connection reset")

        with pytest.raises(ConnectivityError) as excinfo:
            await uploader.upload("c-abc", "pat-9", Broken(), "report.pdf", "application/pdf")
        assert excinfo.value.retryable
        assert excinfo.value.conversation_id == "c-abc"


class TestLocalObjectStore:
    """Test key handling of the object store."""

    def test_key_escaping_root_is_rejected(self, object_store):
        with pytest.raises(ValidationError):
            object_store.path_for("../outside.txt")

    def test_url_round_trips_to_key(self, object_store):
        key = "chat_files/c-abc/pat-9_1_deadbeef.pdf"
        assert object_store.key_from_url(object_store.get_download_url(key)) == key
        assert object_store.key_from_url("http://elsewhere/file.pdf") is None

    @pytest.mark.asyncio
    async def test_delete(self, object_store):
        async def chunks():
            yield b"data"

        await object_store.upload_resumable("chat_files/c-abc/a.txt", chunks(), "text/plain")
        assert object_store.exists("chat_files/c-abc/a.txt")
        assert await object_store.delete("chat_files/c-abc/a.txt") is True
        assert await object_store.delete("chat_files/c-abc/a.txt") is False

    def test_image_metadata_of_non_image(self, object_store):
        path = object_store.path_for("chat_files/c-abc/notes.txt")
        path.parent.mkdir(parents=True)
        path.write_bytes(b"plain text")
        assert object_store.image_metadata("chat_files/c-abc/notes.txt") is None
