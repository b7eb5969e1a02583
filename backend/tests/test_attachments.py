"""Tests for AttachmentPipeline, LocalBlobStore and OrphanCollector."""
import asyncio

import pytest

from schoolchat.attachments.blobstore import LocalBlobStore
from schoolchat.attachments.service import OrphanCollector, normalize_mime
from schoolchat.errors import NotAParticipant, PayloadTooLarge, StoreUnavailable, UnsupportedType
from schoolchat.messages.schemas import MessageType, RoomKind

SMALL_LIMIT = 1024  # matches the chat_service fixture

PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32


@pytest.fixture
def room(store):
    return store.create_room(RoomKind.DIRECT, ["alice", "bob"])


def _stored_files(tmp_path):
    root = tmp_path / "uploads"
    return [p for p in root.rglob("*") if p.is_file()] if root.exists() else []


class TestUpload:
    @pytest.mark.asyncio
    async def test_upload_image(self, pipeline, room, tmp_path):
        ref = await pipeline.upload_attachment(room.id, "alice", PNG, "image/png", filename="Photo.PNG")
        assert ref.storage_key.startswith(f"{room.id}/")
        assert ref.storage_key.endswith(".png")
        assert ref.message_type == MessageType.IMAGE
        assert ref.size_bytes == len(PNG)
        assert len(_stored_files(tmp_path)) == 1
        record = pipeline.get_attachment(ref.storage_key)
        assert record.uploader_id == "alice"
        assert record.message_id is None

    @pytest.mark.asyncio
    async def test_extension_from_mime_when_no_filename(self, pipeline, room):
        ref = await pipeline.upload_attachment(room.id, "alice", b"data", "video/mp4")
        assert ref.storage_key.endswith(".mp4")
        assert ref.message_type == MessageType.VIDEO

    @pytest.mark.asyncio
    async def test_oversized_rejected_before_io(self, pipeline, room, tmp_path):
        with pytest.raises(PayloadTooLarge):
            await pipeline.upload_attachment(room.id, "alice", b"x" * (SMALL_LIMIT + 1), "image/png")
        assert _stored_files(tmp_path) == []

    @pytest.mark.asyncio
    async def test_declared_size_checked(self, pipeline, room, tmp_path):
        with pytest.raises(PayloadTooLarge):
            await pipeline.upload_attachment(room.id, "alice", b"x", "image/png", size_bytes=SMALL_LIMIT * 10)
        assert _stored_files(tmp_path) == []

    @pytest.mark.asyncio
    async def test_size_checked_before_type(self, pipeline, room):
        with pytest.raises(PayloadTooLarge):
            await pipeline.upload_attachment(room.id, "alice", b"x" * (SMALL_LIMIT + 1), "application/pdf")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("mime", ["application/pdf", "text/plain", "", None, "imagex/png"])
    async def test_unsupported_type(self, pipeline, room, tmp_path, mime):
        with pytest.raises(UnsupportedType):
            await pipeline.upload_attachment(room.id, "alice", b"data", mime)
        assert _stored_files(tmp_path) == []

    @pytest.mark.asyncio
    async def test_non_participant(self, pipeline, room, tmp_path):
        with pytest.raises(NotAParticipant):
            await pipeline.upload_attachment(room.id, "mallory", PNG, "image/png")
        assert _stored_files(tmp_path) == []

    @pytest.mark.asyncio
    async def test_blob_write_error_becomes_store_unavailable(self, pipeline, room, monkeypatch):
        def disk_full(storage_key, content):
            raise OSError(28, "No space left on device")

        monkeypatch.setattr(pipeline._blobs, "put", disk_full)
        with pytest.raises(StoreUnavailable):
            await pipeline.upload_attachment(room.id, "alice", PNG, "image/png")
        assert pipeline.list_orphans(0) == []

    def test_public_url_is_deterministic(self, pipeline):
        assert pipeline.get_public_url("3/abc.png") == "http://testserver/attachments/3/abc.png"
        assert pipeline.get_public_url("3/abc.png") == pipeline.get_public_url("3/abc.png")


class TestOrphans:
    @pytest.mark.asyncio
    async def test_collect_removes_unlinked_only(self, pipeline, store, room, tmp_path):
        orphan = await pipeline.upload_attachment(room.id, "alice", PNG, "image/png")
        linked = await pipeline.upload_attachment(room.id, "alice", PNG, "image/png")
        message = store.append_message(room.id, "alice", None, MessageType.IMAGE, linked.storage_key)
        pipeline.link_to_message(linked, message.id)

        assert pipeline.collect_orphans(older_than_seconds=0) == 1
        assert pipeline.get_attachment(orphan.storage_key) is None
        assert pipeline.get_attachment(linked.storage_key).message_id == message.id
        assert len(_stored_files(tmp_path)) == 1

    @pytest.mark.asyncio
    async def test_recent_orphans_are_kept(self, pipeline, room):
        await pipeline.upload_attachment(room.id, "alice", PNG, "image/png")
        assert pipeline.collect_orphans(older_than_seconds=3600) == 0

    @pytest.mark.asyncio
    async def test_collector_sweeps_in_background(self, pipeline, room):
        ref = await pipeline.upload_attachment(room.id, "alice", PNG, "image/png")
        collector = OrphanCollector(pipeline, retention_seconds=0, interval_seconds=0)
        await collector.start()
        for _ in range(50):
            if pipeline.get_attachment(ref.storage_key) is None:
                break
            await asyncio.sleep(0.01)
        await collector.stop()
        assert pipeline.get_attachment(ref.storage_key) is None


class TestLocalBlobStore:
    def test_put_and_delete(self, tmp_path):
        blobs = LocalBlobStore(str(tmp_path / "blobs"))
        blobs.put("1/a.png", b"abc")
        assert blobs.exists("1/a.png")
        assert blobs.path_for("1/a.png").read_bytes() == b"abc"
        assert blobs.delete("1/a.png") is True
        assert blobs.delete("1/a.png") is False

    def test_rejects_path_traversal(self, tmp_path):
        blobs = LocalBlobStore(str(tmp_path / "blobs"))
        with pytest.raises(ValueError):
            blobs.put("../escape.png", b"x")
        assert blobs.path_for("../../etc/passwd") is None


def test_normalize_mime():
    assert normalize_mime("Image/PNG; charset=binary") == "image/png"
    assert normalize_mime(None) == ""
