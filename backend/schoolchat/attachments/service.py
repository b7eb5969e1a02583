"""AttachmentPipeline: validate, store and track chat attachments.

Upload and message append are two separate steps. An upload that never gets
linked to a message stays an orphan: it is never shown, it is logged when an
append fails, and ``collect_orphans`` removes it after the retention period.
"""
import asyncio
import logging
import mimetypes
import uuid
from datetime import timedelta
from pathlib import Path
from typing import List, Optional, Sequence, Union

from schoolchat.attachments.blobstore import BlobStore
from schoolchat.attachments.schemas import AttachmentRecord, AttachmentRef
from schoolchat.config import DEFAULT_MAX_ATTACHMENT_BYTES
from schoolchat.database import Database, utcnow
from schoolchat.errors import NotAParticipant, PayloadTooLarge, StoreUnavailable, UnsupportedType
from schoolchat.messages.schemas import message_type_for_mime
from schoolchat.messages.service import MessageStore

logger = logging.getLogger(__name__)

_COLUMNS = [
    "storage_key", "room_id", "mime_type", "size_bytes", "original_filename",
    "uploader_id", "uploaded_at", "message_id",
]


def normalize_mime(mime_type: Optional[str]) -> str:
    """Lower-case MIME type without parameters (``image/PNG; x=y`` -> ``image/png``)."""
    return (mime_type or "").split(";", 1)[0].strip().lower()


class AttachmentPipeline:
    def __init__(
        self,
        db: Database,
        blob_store: BlobStore,
        store: MessageStore,
        max_size_bytes: int = DEFAULT_MAX_ATTACHMENT_BYTES,
        allowed_type_prefixes: Sequence[str] = ("image/", "video/"),
        public_base_url: str = "",
    ) -> None:
        self._db = db
        self._blobs = blob_store
        self._store = store
        self._max_size_bytes = max_size_bytes
        self._allowed_prefixes = tuple(allowed_type_prefixes)
        self._public_base_url = public_base_url.rstrip("/")

    @property
    def max_size_bytes(self) -> int:
        return self._max_size_bytes

    # -----------------------------------------------------------------------
    # Upload
    # -----------------------------------------------------------------------

    def validate(self, mime_type: Optional[str], size_bytes: int) -> str:
        """Check size then type; returns the normalized MIME type. No I/O."""
        if size_bytes > self._max_size_bytes:
            raise PayloadTooLarge(
                f"Attachment size ({size_bytes} bytes) exceeds limit ({self._max_size_bytes} bytes)"
            )
        mime = normalize_mime(mime_type)
        if not mime or not mime.startswith(self._allowed_prefixes):
            raise UnsupportedType(f"Attachment type {mime or 'unknown'!r} is not supported")
        return mime

    async def upload_attachment(
        self,
        room_id: int,
        uploader_id: str,
        content: bytes,
        mime_type: Optional[str],
        size_bytes: Optional[int] = None,
        filename: Optional[str] = None,
    ) -> AttachmentRef:
        """Store an attachment blob and record its metadata.

        Args:
            room_id: Room the attachment belongs to
            uploader_id: User uploading the blob; must be a participant
            content: Blob bytes
            mime_type: Declared MIME type (parameters are ignored)
            size_bytes: Declared size, checked alongside ``len(content)``
            filename: Original filename, used for the extension

        Returns:
            AttachmentRef with the storage key and derived message type

        Raises:
            PayloadTooLarge: declared or actual size exceeds the limit (no I/O)
            UnsupportedType: not an allowed type prefix (no I/O)
            NotAParticipant: uploader is not in the room
            StoreUnavailable: the blob could not be written
        """
        declared = size_bytes if size_bytes is not None else len(content)
        mime = self.validate(mime_type, max(declared, len(content)))
        self._store.require_participant(room_id, uploader_id)

        ext = Path(filename).suffix.lower() if filename else ""
        if not ext:
            ext = mimetypes.guess_extension(mime) or ""
        storage_key = f"{room_id}/{uuid.uuid4()}{ext}"

        try:
            await asyncio.to_thread(self._blobs.put, storage_key, content)
        except OSError as exc:
            logger.error("Failed to store blob %s: %s", storage_key, exc)
            raise StoreUnavailable(f"Cannot store attachment: {exc}") from exc
        try:
            self._db.execute(
                """
                INSERT INTO attachments
                  (storage_key, room_id, uploader_id, original_filename, mime_type, size_bytes, uploaded_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                [storage_key, room_id, uploader_id, filename, mime, len(content), utcnow()],
            )
        except Exception:
            self._blobs.delete(storage_key)
            raise

        logger.info(
            "Attachment uploaded: %s (%d bytes, %s) to room %s by %s",
            storage_key, len(content), mime, room_id, uploader_id,
        )
        return AttachmentRef(
            storage_key=storage_key,
            room_id=room_id,
            mime_type=mime,
            size_bytes=len(content),
            filename=filename,
            message_type=message_type_for_mime(mime),
        )

    # -----------------------------------------------------------------------
    # Lookup / linking
    # -----------------------------------------------------------------------

    def get_public_url(self, ref: Union[AttachmentRef, str]) -> str:
        storage_key = ref.storage_key if isinstance(ref, AttachmentRef) else ref
        return f"{self._public_base_url}/attachments/{storage_key}"

    def get_attachment(self, storage_key: str) -> Optional[AttachmentRecord]:
        row = self._db.fetchone(
            "SELECT " + ", ".join(_COLUMNS) + " FROM attachments WHERE storage_key = ?",
            [storage_key],
        )
        return self._row_to_record(row) if row else None

    def link_to_message(self, ref: Union[AttachmentRef, str], message_id: int) -> None:
        storage_key = ref.storage_key if isinstance(ref, AttachmentRef) else ref
        self._db.execute(
            "UPDATE attachments SET message_id = ? WHERE storage_key = ?",
            [message_id, storage_key],
        )

    def record_orphan(self, ref: AttachmentRef, reason: object = None) -> None:
        """Log an upload whose message append failed; the collector removes it later."""
        logger.warning(
            "Orphaned attachment %s in room %s (%s); left for garbage collection",
            ref.storage_key, ref.room_id, reason or "append failed",
        )

    def open_blob(self, storage_key: str) -> Optional[Path]:
        """Path of a stored blob that has metadata, else None."""
        if self.get_attachment(storage_key) is None:
            return None
        return self._blobs.path_for(storage_key)

    # -----------------------------------------------------------------------
    # Garbage collection
    # -----------------------------------------------------------------------

    def list_orphans(self, older_than_seconds: int) -> List[AttachmentRecord]:
        cutoff = utcnow() - timedelta(seconds=older_than_seconds)
        rows = self._db.fetchall(
            "SELECT " + ", ".join(_COLUMNS) + """
            FROM attachments a
            WHERE a.message_id IS NULL
              AND a.uploaded_at <= ?
              AND NOT EXISTS (SELECT 1 FROM messages m WHERE m.attachment_key = a.storage_key)
            ORDER BY a.uploaded_at
            """,
            [cutoff],
        )
        return [self._row_to_record(r) for r in rows]

    def collect_orphans(self, older_than_seconds: int) -> int:
        """Delete unlinked attachments older than the cutoff. Returns the count."""
        orphans = self.list_orphans(older_than_seconds)
        for record in orphans:
            self._blobs.delete(record.storage_key)
            self._db.execute("DELETE FROM attachments WHERE storage_key = ?", [record.storage_key])
        if orphans:
            logger.info("Collected %d orphaned attachment(s)", len(orphans))
        return len(orphans)

    @staticmethod
    def _row_to_record(row: tuple) -> AttachmentRecord:
        data = dict(zip(_COLUMNS, row))
        data["filename"] = data.pop("original_filename")
        data["message_type"] = message_type_for_mime(data["mime_type"])
        return AttachmentRecord(**data)


class OrphanCollector:
    """Background task that periodically runs ``collect_orphans``."""

    def __init__(
        self,
        pipeline: AttachmentPipeline,
        retention_seconds: int,
        interval_seconds: int,
    ) -> None:
        self._pipeline = pipeline
        self._retention = retention_seconds
        self._interval = interval_seconds
        self._sweep_task: Optional[asyncio.Task] = None  # type: ignore[type-arg]

    async def start(self) -> None:
        self._sweep_task = asyncio.create_task(self._sweep_loop())
        logger.info(
            "OrphanCollector started (retention=%ss, interval=%ss)",
            self._retention, self._interval,
        )

    async def stop(self) -> None:
        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
        logger.info("OrphanCollector stopped")

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                await self.sweep_once()
            except Exception:
                logger.exception("OrphanCollector sweep failed")

    async def sweep_once(self) -> int:
        return self._pipeline.collect_orphans(self._retention)
