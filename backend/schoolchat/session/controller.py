"""View-model controllers for the chat list and an open chat room.

ChatSessionController state machine (one open room view):

    IDLE -> LOADING_HISTORY -> READY -> SENDING -> READY

SENDING is re-entered while several sends overlap; errors always return the
view to READY and add a toast. Messages only enter ``messages`` through the
history load or the realtime echo, never optimistically. The input is
cleared optimistically when a send starts and restored if the text send
fails.

Idempotent reads (history, room list) are retried with exponential backoff
on ``StoreUnavailable``; sends are never retried automatically.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Set, Tuple, TypeVar

from pydantic import ValidationError

from schoolchat.config import AppSettings, get_config
from schoolchat.directory.schemas import LastMessagePreview, RoomSummary
from schoolchat.directory.service import filter_rooms
from schoolchat.errors import ChatError, EmptyMessage, NotifierUnavailable, StoreUnavailable
from schoolchat.messages.schemas import Message, RoomKind
from schoolchat.realtime import notifier as events
from schoolchat.realtime.notifier import Subscription, room_topic, user_rooms_topic
from schoolchat.session.backend import ChatBackend

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def retry_read(
    fn: Callable[..., Awaitable[T]],
    *args: Any,
    attempts: int = 3,
    base_delay: float = 0.2,
) -> T:
    """Call an idempotent read, retrying ``StoreUnavailable`` with exponential backoff."""
    attempts = max(1, attempts)
    for attempt in range(attempts - 1):
        try:
            return await fn(*args)
        except StoreUnavailable as exc:
            delay = base_delay * (2 ** attempt)
            logger.warning(
                "Read failed (attempt %d/%d): %s; retrying in %.2fs",
                attempt + 1, attempts, exc, delay,
            )
            await asyncio.sleep(delay)
    return await fn(*args)


class SessionState(str, Enum):
    IDLE = "idle"
    LOADING_HISTORY = "loading_history"
    READY = "ready"
    SENDING = "sending"


@dataclass
class PendingAttachment:
    filename: str
    content: bytes
    mime_type: str


@dataclass
class AttachmentStatus:
    filename: str
    ok: bool
    message_id: Optional[int] = None
    error: Optional[str] = None
    error_type: Optional[str] = None


@dataclass
class SendResult:
    messages: List[Message] = field(default_factory=list)
    attachments: List[AttachmentStatus] = field(default_factory=list)
    text_error: Optional[str] = None
    duplicate: bool = False

    @property
    def ok(self) -> bool:
        return not self.duplicate and self.text_error is None and all(a.ok for a in self.attachments)

    @property
    def can_retry(self) -> bool:
        """A failed send offers a manual retry; it is never retried automatically."""
        return not self.ok and not self.duplicate


class ChatSessionController:
    """View model of one open chat room for one user."""

    def __init__(
        self,
        backend: ChatBackend,
        user_id: str,
        page_size: int = 50,
        read_retry_attempts: int = 3,
        read_retry_base_delay: float = 0.2,
    ) -> None:
        self._backend = backend
        self.user_id = user_id
        self.page_size = page_size
        self._retry_attempts = read_retry_attempts
        self._retry_base_delay = read_retry_base_delay

        self.state = SessionState.IDLE
        self.room_id: Optional[int] = None
        self.messages: List[Message] = []
        self.has_more = False
        self.load_failed = False
        self.live = False
        self.input_text = ""
        self.toasts: List[str] = []
        self.typing_user_ids: Set[str] = set()

        self._subscription: Optional[Subscription] = None
        self._pending: Set[Tuple] = set()
        self._sends_in_flight = 0
        self._generation = 0

    # -----------------------------------------------------------------------
    # Room lifecycle
    # -----------------------------------------------------------------------

    async def open_room(self, room_id: int) -> None:
        if self.room_id is not None:
            await self.close_room()
        self._generation += 1
        generation = self._generation
        self.room_id = room_id
        self.messages = []
        self.has_more = False
        self.load_failed = False
        self.typing_user_ids = set()
        self.state = SessionState.LOADING_HISTORY

        try:
            page = await self._read(self._backend.list_messages, room_id, self.user_id, None, self.page_size)
        except ChatError as exc:
            if generation == self._generation:
                self.load_failed = True
                self.state = SessionState.READY
                self._toast(f"Could not load messages: {exc.message}")
            return
        if generation != self._generation:
            return
        self.messages = list(page.messages)
        self.has_more = page.has_more

        await self._subscribe(room_id, generation)
        if self.messages:
            await self._mark_read(self.messages[-1].id)
        self.state = SessionState.READY

    async def close_room(self) -> None:
        """Leave the room view. In-flight sends finish; their results are ignored."""
        subscription, self._subscription = self._subscription, None
        self._generation += 1
        self.room_id = None
        self.state = SessionState.IDLE
        self.live = False
        self.typing_user_ids = set()
        if subscription is not None:
            try:
                await self._backend.unsubscribe(subscription)
            except ChatError as exc:
                logger.debug("Unsubscribe failed: %s", exc)

    async def refresh(self) -> None:
        """Full refetch of the newest page; fallback when an event cannot be applied."""
        if self.room_id is None:
            return
        generation = self._generation
        try:
            page = await self._read(self._backend.list_messages, self.room_id, self.user_id, None, self.page_size)
        except ChatError as exc:
            if generation == self._generation:
                self.load_failed = True
                self._toast(f"Could not refresh messages: {exc.message}")
            return
        if generation != self._generation:
            return
        self.load_failed = False
        self.messages = list(page.messages)
        self.has_more = page.has_more

    async def load_older(self) -> int:
        """Prepend the page before the oldest loaded message. Returns how many were added."""
        if self.room_id is None or not self.messages or not self.has_more:
            return 0
        generation = self._generation
        try:
            page = await self._read(
                self._backend.list_messages, self.room_id, self.user_id, self.messages[0].id, self.page_size,
            )
        except ChatError as exc:
            if generation == self._generation:
                self._toast(f"Could not load older messages: {exc.message}")
            return 0
        if generation != self._generation:
            return 0
        known = {m.id for m in self.messages}
        older = [m for m in page.messages if m.id not in known]
        self.messages = older + self.messages
        self.has_more = page.has_more
        return len(older)

    # -----------------------------------------------------------------------
    # Sending
    # -----------------------------------------------------------------------

    async def send(
        self,
        text: Optional[str] = None,
        attachments: Sequence[PendingAttachment] = (),
    ) -> SendResult:
        """Send text and/or attachments; each attachment becomes its own message.

        Raises:
            EmptyMessage: nothing to send (checked before any I/O).
            RuntimeError: no room is open.
        """
        if self.room_id is None:
            raise RuntimeError("No room is open")
        if text is None:
            text = self.input_text
        text = text.strip() if text else ""
        attachments = list(attachments)
        if not text and not attachments:
            raise EmptyMessage()

        key = (self.room_id, text, tuple((a.filename, len(a.content)) for a in attachments))
        if key in self._pending:
            logger.info("Ignoring duplicate submission in room %s", self.room_id)
            return SendResult(duplicate=True)

        room_id = self.room_id
        generation = self._generation
        self._pending.add(key)
        self.input_text = ""
        self._sends_in_flight += 1
        self.state = SessionState.SENDING
        result = SendResult()
        try:
            for attachment in attachments:
                result.attachments.append(await self._send_attachment(room_id, attachment, result))
            if text:
                try:
                    result.messages.append(await self._backend.send_message(room_id, self.user_id, content=text))
                except ChatError as exc:
                    logger.warning("Text send failed in room %s: %s", room_id, exc)
                    result.text_error = exc.message
                    if generation == self._generation and not self.input_text:
                        self.input_text = text
        finally:
            self._pending.discard(key)
            self._sends_in_flight -= 1
            if generation == self._generation and self._sends_in_flight == 0:
                self.state = SessionState.READY

        if generation == self._generation and not result.ok:
            failed = [a.filename for a in result.attachments if not a.ok]
            if failed:
                self._toast(f"Failed to send: {', '.join(failed)}")
            if result.text_error:
                self._toast(f"Message not sent: {result.text_error}")
        return result

    async def _send_attachment(self, room_id: int, attachment: PendingAttachment, result: SendResult) -> AttachmentStatus:
        try:
            ref = await self._backend.upload_attachment(
                room_id, self.user_id, attachment.content, attachment.mime_type, attachment.filename,
            )
            message = await self._backend.send_message(room_id, self.user_id, attachment=ref)
        except ChatError as exc:
            logger.warning("Attachment %s failed in room %s: %s", attachment.filename, room_id, exc)
            return AttachmentStatus(
                filename=attachment.filename, ok=False, error=exc.message, error_type=type(exc).__name__,
            )
        result.messages.append(message)
        return AttachmentStatus(filename=attachment.filename, ok=True, message_id=message.id)

    async def set_typing(self, is_typing: bool) -> None:
        if self.room_id is None:
            return
        try:
            await self._backend.set_typing(self.room_id, self.user_id, is_typing)
        except ChatError as exc:
            logger.debug("Typing update dropped: %s", exc)

    # -----------------------------------------------------------------------
    # Realtime
    # -----------------------------------------------------------------------

    async def _subscribe(self, room_id: int, generation: int) -> None:
        async def handler(payload: Dict[str, Any]) -> None:
            if generation != self._generation:
                return
            await self._on_event(payload)

        try:
            self._subscription = await self._backend.subscribe(room_topic(room_id), handler)
            self.live = True
        except NotifierUnavailable:
            self.live = False
            logger.warning("Realtime unavailable for room %s; use refresh()", room_id)

    async def _on_event(self, payload: Dict[str, Any]) -> None:
        event = payload.get("event")
        data = payload.get("data") or {}
        try:
            if event == events.MESSAGE_CREATED:
                message = Message.model_validate(data["message"])
                if message.room_id != self.room_id:
                    return
                self._upsert(message)
                if message.sender_id != self.user_id:
                    await self._mark_read(message.id)
            elif event == events.MESSAGE_EDITED:
                message = Message.model_validate(data["message"])
                if message.room_id == self.room_id:
                    # Edits outside the loaded window are picked up when that page loads.
                    self._replace(message)
            elif event == events.MESSAGE_DELETED:
                message_id = int(data["message_id"])
                self.messages = [m for m in self.messages if m.id != message_id]
            elif event == events.TYPING:
                user_id = str(data["user_id"])
                if user_id == self.user_id:
                    return
                if data.get("is_typing"):
                    self.typing_user_ids.add(user_id)
                else:
                    self.typing_user_ids.discard(user_id)
        except (KeyError, TypeError, ValueError, ValidationError) as exc:
            logger.warning("Malformed %s event (%s); refetching", event, exc)
            await self.refresh()

    def _replace(self, message: Message) -> bool:
        for i, existing in enumerate(self.messages):
            if existing.id == message.id:
                self.messages[i] = message
                return True
        return False

    def _upsert(self, message: Message) -> None:
        if self._replace(message):
            return
        self.messages.append(message)
        if len(self.messages) > 1 and self.messages[-2].id > message.id:
            self.messages.sort(key=lambda m: m.id)

    # -----------------------------------------------------------------------
    # Internal
    # -----------------------------------------------------------------------

    async def _read(self, fn: Callable[..., Awaitable[T]], *args: Any) -> T:
        return await retry_read(fn, *args, attempts=self._retry_attempts, base_delay=self._retry_base_delay)

    async def _mark_read(self, message_id: int) -> None:
        if self.room_id is None:
            return
        try:
            await self._backend.mark_read(self.room_id, self.user_id, message_id)
        except ChatError as exc:
            logger.warning("mark_read failed for room %s: %s", self.room_id, exc)

    def _toast(self, text: str) -> None:
        self.toasts.append(text)


class ChatListController:
    """View model of a user's chat list, kept current from ``user:{id}:rooms`` events."""

    def __init__(
        self,
        backend: ChatBackend,
        user_id: str,
        read_retry_attempts: int = 3,
        read_retry_base_delay: float = 0.2,
    ) -> None:
        self._backend = backend
        self.user_id = user_id
        self._retry_attempts = read_retry_attempts
        self._retry_base_delay = read_retry_base_delay
        self.rooms: List[RoomSummary] = []
        self.loading = False
        self.load_failed = False
        self.live = False
        self.toasts: List[str] = []
        self._subscription: Optional[Subscription] = None

    async def start(self) -> None:
        await self.load()
        try:
            self._subscription = await self._backend.subscribe(user_rooms_topic(self.user_id), self._on_event)
            self.live = True
        except NotifierUnavailable:
            self.live = False
            logger.warning("Realtime unavailable for %s's chat list", self.user_id)

    async def stop(self) -> None:
        subscription, self._subscription = self._subscription, None
        self.live = False
        if subscription is not None:
            await self._backend.unsubscribe(subscription)

    async def load(self) -> None:
        """Full refetch. An empty list is a valid state, distinct from ``load_failed``."""
        self.loading = True
        try:
            rooms = await retry_read(
                self._backend.list_rooms, self.user_id,
                attempts=self._retry_attempts, base_delay=self._retry_base_delay,
            )
        except ChatError as exc:
            self.load_failed = True
            self.toasts.append(f"Could not load chats: {exc.message}")
            return
        finally:
            self.loading = False
        self.load_failed = False
        self.rooms = list(rooms)

    def visible(
        self,
        search: Optional[str] = None,
        unread_only: bool = False,
        kind: Optional[RoomKind] = None,
    ) -> List[RoomSummary]:
        return filter_rooms(self.rooms, search=search, unread_only=unread_only, kind=kind)

    @property
    def total_unread(self) -> int:
        return sum(r.unread_count for r in self.rooms)

    async def _on_event(self, payload: Dict[str, Any]) -> None:
        event = payload.get("event")
        data = payload.get("data") or {}
        try:
            if event == events.ROOM_CREATED:
                await self.load()
            elif event == events.ROOM_UPDATED:
                if not self._apply_room_update(data):
                    await self.load()
            elif event == events.READ_UPDATED:
                summary = self._find(int(data["room_id"]))
                if summary is None:
                    await self.load()
                else:
                    summary.unread_count = int(data["unread_count"])
        except (KeyError, TypeError, ValueError, ValidationError) as exc:
            logger.warning("Malformed %s event (%s); refetching chat list", event, exc)
            await self.load()

    def _apply_room_update(self, data: Dict[str, Any]) -> bool:
        summary = self._find(int(data["room_id"]))
        if summary is None:
            return False
        summary.unread_count = int(data["unread_count"])
        summary.is_disabled = bool(data.get("is_disabled", summary.is_disabled))
        if data.get("last_message_id") is not None:
            summary.last_message = LastMessagePreview(
                message_id=data["last_message_id"],
                content=data.get("last_message_preview") or "",
                sender_id=data.get("last_message_sender_id") or "",
                sent_at=data["last_message_at"],
                type=data.get("last_message_type") or "text",
            )
            summary.last_activity_at = summary.last_message.sent_at
        else:
            summary.last_message = None
        self.rooms.sort(key=lambda s: (s.last_activity_at, s.room_id), reverse=True)
        return True

    def _find(self, room_id: int) -> Optional[RoomSummary]:
        for summary in self.rooms:
            if summary.room_id == room_id:
                return summary
        return None


def build_session_controller(backend: ChatBackend, user_id: str, config: Optional[AppSettings] = None) -> ChatSessionController:
    """ChatSessionController with page size and read retries from the ``session`` settings."""
    settings = (config or get_config()).session
    return ChatSessionController(
        backend,
        user_id,
        page_size=settings.history_page_size,
        read_retry_attempts=settings.read_retry_attempts,
        read_retry_base_delay=settings.read_retry_base_delay,
    )


def build_list_controller(backend: ChatBackend, user_id: str, config: Optional[AppSettings] = None) -> ChatListController:
    settings = (config or get_config()).session
    return ChatListController(
        backend,
        user_id,
        read_retry_attempts=settings.read_retry_attempts,
        read_retry_base_delay=settings.read_retry_base_delay,
    )
