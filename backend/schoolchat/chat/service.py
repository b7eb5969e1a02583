"""ChatService: server-side orchestration of the messaging core.

Composes the MessageStore, ReadCursorTracker, RoomDirectory,
AttachmentPipeline and RealtimeNotifier. Every mutation is written to the
store first and then published; a publish failure (``NotifierUnavailable``)
is logged and swallowed because clients recover through a full refetch.
"""
import logging
from typing import Any, Dict, List, Optional, Sequence, Union

from schoolchat.attachments.blobstore import BlobStore, LocalBlobStore
from schoolchat.attachments.schemas import AttachmentRef
from schoolchat.attachments.service import AttachmentPipeline, OrphanCollector
from schoolchat.config import AppSettings
from schoolchat.database import Database
from schoolchat.directory.schemas import RoomSummary
from schoolchat.directory.service import RoomDirectory
from schoolchat.errors import AttachmentNotFound, ChatError, Forbidden, NotifierUnavailable
from schoolchat.identity.service import UserDirectory
from schoolchat.messages.schemas import (
    Message,
    MessagePage,
    MessageType,
    Participant,
    Room,
    RoomDetail,
    RoomKind,
)
from schoolchat.messages.service import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE, MessageStore
from schoolchat.realtime import notifier as events
from schoolchat.realtime.notifier import RealtimeNotifier, room_topic, user_rooms_topic
from schoolchat.receipts.service import ReadCursorTracker

logger = logging.getLogger(__name__)


class ChatService:
    def __init__(
        self,
        db: Database,
        blob_store: BlobStore,
        notifier: Optional[RealtimeNotifier] = None,
        max_attachment_bytes: Optional[int] = None,
        allowed_type_prefixes: Sequence[str] = ("image/", "video/"),
        public_base_url: str = "",
    ) -> None:
        self.db = db
        self.store = MessageStore(db)
        self.tracker = ReadCursorTracker(db, self.store)
        self.users = UserDirectory(db)
        self.directory = RoomDirectory(self.store, self.tracker, self.users)
        pipeline_kwargs: Dict[str, Any] = {
            "allowed_type_prefixes": allowed_type_prefixes,
            "public_base_url": public_base_url,
        }
        if max_attachment_bytes is not None:
            pipeline_kwargs["max_size_bytes"] = max_attachment_bytes
        self.pipeline = AttachmentPipeline(db, blob_store, self.store, **pipeline_kwargs)
        self.notifier = notifier or RealtimeNotifier()

    # -----------------------------------------------------------------------
    # Rooms
    # -----------------------------------------------------------------------

    async def create_room(
        self,
        caller_id: str,
        kind: RoomKind,
        participant_ids: Sequence[str],
        name: Optional[str] = None,
    ) -> Room:
        """Create a room on behalf of ``caller_id`` (added to the list if missing).

        An existing direct room for the same pair is returned without a
        ``room_created`` event.
        """
        kind = RoomKind(kind)
        ids = list(participant_ids)
        if caller_id not in ids:
            ids.insert(0, caller_id)

        if kind == RoomKind.DIRECT and len(ids) == 2:
            existing = self.store.find_direct_room(ids[0], ids[1])
            if existing is not None:
                return existing

        room = self.store.create_room(kind, ids, name=name, creator_id=caller_id)
        data = {"room": room.model_dump(mode="json")}
        for participant in self.store.list_participants(room.id):
            await self._publish(user_rooms_topic(participant.user_id), events.ROOM_CREATED, data)
        return room

    async def get_room_detail(self, room_id: int, caller_id: str) -> RoomDetail:
        self.store.require_participant(room_id, caller_id)
        return RoomDetail(
            room=self.store.require_room(room_id),
            participants=self.store.list_participants(room_id),
        )

    async def add_participants(self, room_id: int, caller_id: str, user_ids: Sequence[str]) -> List[Participant]:
        added = self.store.add_participants(room_id, caller_id, user_ids)
        if added:
            room = self.store.require_room(room_id)
            data = {"room": room.model_dump(mode="json")}
            for participant in added:
                await self._publish(user_rooms_topic(participant.user_id), events.ROOM_CREATED, data)
            await self._publish(room_topic(room_id), events.ROOM_UPDATED, {
                "room_id": room_id,
                "added_user_ids": [p.user_id for p in added],
            })
        return added

    async def disable_room(self, room_id: int, caller_id: str) -> Room:
        room = self.store.disable_room(room_id, caller_id)
        await self._publish(room_topic(room_id), events.ROOM_UPDATED, {"room_id": room_id, "is_disabled": True})
        await self._publish_room_updated(room_id)
        return room

    async def list_rooms(self, user_id: str) -> List[RoomSummary]:
        return self.directory.list_rooms_for_user(user_id)

    # -----------------------------------------------------------------------
    # Messages
    # -----------------------------------------------------------------------

    async def list_messages(
        self,
        room_id: int,
        caller_id: str,
        before_id: Optional[int] = None,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> MessagePage:
        self.store.require_participant(room_id, caller_id)
        limit = max(1, min(int(limit), MAX_PAGE_SIZE))
        messages = self.store.list_messages(room_id, before_id=before_id, limit=limit)
        has_more = bool(messages) and self.store.has_messages_before(room_id, messages[0].id)
        return MessagePage(messages=[self._decorate(m) for m in messages], has_more=has_more)

    async def send_message(
        self,
        room_id: int,
        sender_id: str,
        content: Optional[str] = None,
        attachment: Union[AttachmentRef, str, None] = None,
        reply_to_id: Optional[int] = None,
    ) -> Message:
        """Append a message (optionally referencing an uploaded attachment) and fan it out."""
        ref = self._resolve_attachment(room_id, sender_id, attachment) if attachment is not None else None
        message_type = ref.message_type if ref is not None else MessageType.TEXT
        try:
            message = self.store.append_message(
                room_id,
                sender_id,
                content=content,
                message_type=message_type,
                attachment_ref=ref.storage_key if ref is not None else None,
                reply_to_id=reply_to_id,
            )
        except ChatError as exc:
            if ref is not None:
                self.pipeline.record_orphan(ref, reason=type(exc).__name__)
            raise
        if ref is not None:
            self.pipeline.link_to_message(ref, message.id)

        message = self._decorate(message)
        await self._publish(room_topic(room_id), events.MESSAGE_CREATED, {"message": message.model_dump(mode="json")})
        await self._publish_room_updated(room_id, message)
        return message

    async def edit_message(self, message_id: int, caller_id: str, content: str) -> Message:
        message = self._decorate(self.store.edit_message(message_id, caller_id, content))
        await self._publish(room_topic(message.room_id), events.MESSAGE_EDITED, {"message": message.model_dump(mode="json")})
        await self._publish_room_updated(message.room_id)
        return message

    async def delete_message(self, message_id: int, caller_id: str) -> Message:
        message = self._decorate(self.store.soft_delete_message(message_id, caller_id))
        await self._publish(room_topic(message.room_id), events.MESSAGE_DELETED, {
            "room_id": message.room_id,
            "message_id": message.id,
        })
        await self._publish_room_updated(message.room_id)
        return message

    # -----------------------------------------------------------------------
    # Read state / typing
    # -----------------------------------------------------------------------

    async def mark_read(self, room_id: int, user_id: str, upto_message_id: int) -> int:
        cursor = self.tracker.mark_read(room_id, user_id, upto_message_id)
        unread = self.tracker.get_unread_count(room_id, user_id)
        await self._publish(user_rooms_topic(user_id), events.READ_UPDATED, {
            "room_id": room_id,
            "last_read_message_id": cursor,
            "unread_count": unread,
        })
        await self._publish(room_topic(room_id), events.READ_UPDATED, {
            "room_id": room_id,
            "user_id": user_id,
            "last_read_message_id": cursor,
        })
        return cursor

    async def unread_counts(self, user_id: str) -> Dict[int, int]:
        return self.tracker.get_unread_counts_for_user(user_id)

    async def set_typing(self, room_id: int, user_id: str, is_typing: bool) -> None:
        self.store.require_participant(room_id, user_id)
        await self._publish(room_topic(room_id), events.TYPING, {
            "room_id": room_id,
            "user_id": user_id,
            "is_typing": bool(is_typing),
        })

    # -----------------------------------------------------------------------
    # Attachments
    # -----------------------------------------------------------------------

    async def upload_attachment(
        self,
        room_id: int,
        uploader_id: str,
        content: bytes,
        mime_type: Optional[str],
        filename: Optional[str] = None,
        size_bytes: Optional[int] = None,
    ) -> AttachmentRef:
        return await self.pipeline.upload_attachment(
            room_id, uploader_id, content, mime_type, size_bytes=size_bytes, filename=filename,
        )

    def _resolve_attachment(self, room_id: int, sender_id: str, attachment: Union[AttachmentRef, str]) -> AttachmentRef:
        storage_key = attachment.storage_key if isinstance(attachment, AttachmentRef) else attachment
        record = self.pipeline.get_attachment(storage_key)
        if record is None or record.room_id != room_id:
            raise AttachmentNotFound(f"Attachment {storage_key!r} not found in room {room_id}")
        if record.uploader_id != sender_id:
            raise Forbidden("Attachment was uploaded by another user")
        if record.message_id is not None:
            raise Forbidden("Attachment is already attached to a message")
        return record

    # -----------------------------------------------------------------------
    # Internal
    # -----------------------------------------------------------------------

    def _decorate(self, message: Message) -> Message:
        if message.attachment_key and not message.attachment_url:
            return message.model_copy(update={"attachment_url": self.pipeline.get_public_url(message.attachment_key)})
        return message

    async def _publish_room_updated(self, room_id: int, message: Optional[Message] = None) -> None:
        """Tell every participant's list view that the room changed, with their unread count."""
        room = self.store.require_room(room_id)
        unread = self.tracker.get_unread_counts_for_room(room_id)
        base: Dict[str, Any] = {
            "room_id": room_id,
            "last_message_id": room.last_message_id,
            "last_message_preview": room.last_message_preview,
            "last_message_sender_id": room.last_message_sender_id,
            "last_message_type": room.last_message_type.value if room.last_message_type else None,
            "last_message_at": room.last_message_at.isoformat() if room.last_message_at else None,
            "is_disabled": room.is_disabled,
        }
        if message is not None:
            base["message"] = message.model_dump(mode="json")
        for user_id, count in unread.items():
            await self._publish(user_rooms_topic(user_id), events.ROOM_UPDATED, {**base, "unread_count": count})

    async def _publish(self, topic: str, event: str, data: Dict[str, Any]) -> bool:
        try:
            await self.notifier.publish(topic, event, data)
        except NotifierUnavailable:
            logger.warning("Notifier unavailable; dropped %s on %s", event, topic)
            return False
        return True

    def close(self) -> None:
        self.notifier.close()
        self.db.close()


# ---------------------------------------------------------------------------
# Module-level singleton (set during app startup)
# ---------------------------------------------------------------------------

_chat_service: Optional[ChatService] = None


def build_chat_service(config: AppSettings, notifier: Optional[RealtimeNotifier] = None) -> ChatService:
    att = config.attachments
    return ChatService(
        db=Database.get_instance(config.storage.db_path),
        blob_store=LocalBlobStore(att.upload_dir),
        notifier=notifier,
        max_attachment_bytes=att.max_size_bytes,
        allowed_type_prefixes=att.allowed_type_prefixes,
        public_base_url=att.public_base_url,
    )


def build_orphan_collector(service: ChatService, config: AppSettings) -> OrphanCollector:
    return OrphanCollector(
        service.pipeline,
        retention_seconds=config.attachments.orphan_retention_seconds,
        interval_seconds=config.attachments.orphan_sweep_interval_seconds,
    )


def get_chat_service() -> Optional[ChatService]:
    """Return the current ChatService (None before startup)."""
    return _chat_service


def set_chat_service(service: Optional[ChatService]) -> None:
    """Replace the ChatService (called during startup and in tests)."""
    global _chat_service
    _chat_service = service
