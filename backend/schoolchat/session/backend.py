"""Backend access for chat view controllers.

Controllers only talk to a :class:`ChatBackend`. :class:`LocalChatBackend`
binds it to the in-process ChatService and notifier; a remote client
(HTTP + WebSocket) can implement the same protocol.
"""
from typing import List, Optional, Protocol

from schoolchat.attachments.schemas import AttachmentRef
from schoolchat.chat.service import ChatService
from schoolchat.directory.schemas import RoomSummary
from schoolchat.messages.schemas import Message, MessagePage
from schoolchat.realtime.notifier import Handler, Subscription


class ChatBackend(Protocol):
    async def list_rooms(self, user_id: str) -> List[RoomSummary]: ...

    async def list_messages(
        self, room_id: int, user_id: str, before_id: Optional[int] = None, limit: int = 50,
    ) -> MessagePage: ...

    async def upload_attachment(
        self, room_id: int, user_id: str, content: bytes, mime_type: str, filename: Optional[str] = None,
    ) -> AttachmentRef: ...

    async def send_message(
        self, room_id: int, user_id: str, content: Optional[str] = None, attachment: Optional[AttachmentRef] = None,
    ) -> Message: ...

    async def mark_read(self, room_id: int, user_id: str, upto_message_id: int) -> int: ...

    async def set_typing(self, room_id: int, user_id: str, is_typing: bool) -> None: ...

    async def subscribe(self, topic: str, handler: Handler) -> Subscription: ...

    async def unsubscribe(self, subscription: Subscription) -> None: ...


class LocalChatBackend:
    """ChatBackend over an in-process ChatService."""

    def __init__(self, service: ChatService) -> None:
        self._service = service

    async def list_rooms(self, user_id: str) -> List[RoomSummary]:
        return await self._service.list_rooms(user_id)

    async def list_messages(self, room_id, user_id, before_id=None, limit=50) -> MessagePage:
        return await self._service.list_messages(room_id, user_id, before_id=before_id, limit=limit)

    async def upload_attachment(self, room_id, user_id, content, mime_type, filename=None) -> AttachmentRef:
        return await self._service.upload_attachment(room_id, user_id, content, mime_type, filename=filename)

    async def send_message(self, room_id, user_id, content=None, attachment=None) -> Message:
        return await self._service.send_message(room_id, user_id, content=content, attachment=attachment)

    async def mark_read(self, room_id, user_id, upto_message_id) -> int:
        return await self._service.mark_read(room_id, user_id, upto_message_id)

    async def set_typing(self, room_id, user_id, is_typing) -> None:
        await self._service.set_typing(room_id, user_id, is_typing)

    async def subscribe(self, topic: str, handler: Handler) -> Subscription:
        return self._service.notifier.subscribe(topic, handler)

    async def unsubscribe(self, subscription: Subscription) -> None:
        self._service.notifier.unsubscribe(subscription.topic, subscription.id)
