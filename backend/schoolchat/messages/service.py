"""MessageStore: durable rooms, participants and messages in DuckDB.

Message ids come from one global sequence, so they are strictly increasing
within every room and double as the read-cursor comparator. Each room carries
a denormalized summary of its newest visible message (timestamp, id, preview,
sender, type) that is updated in the same transaction as the insert. The
summary is a cache: ``refresh_room_summary`` recomputes it from the messages
table.
"""
import logging
from typing import Dict, Iterable, List, Optional, Sequence

from schoolchat.database import Database, utcnow
from schoolchat.errors import (
    EmptyMessage,
    Forbidden,
    InvalidParticipants,
    MessageNotFound,
    NotAParticipant,
    RoomNotFound,
)
from schoolchat.messages.schemas import (
    Message,
    MessageType,
    Participant,
    ParticipantRole,
    Room,
    RoomKind,
)

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100
DEFAULT_PAGE_SIZE = 50
PREVIEW_LENGTH = 120

_ROOM_COLUMNS = [
    "id", "kind", "name", "creator_id", "created_at", "last_message_at",
    "last_message_id", "last_message_preview", "last_message_sender_id",
    "last_message_type", "is_disabled",
]
_PARTICIPANT_COLUMNS = ["room_id", "user_id", "role", "joined_at", "last_read_message_id"]
_MESSAGE_COLUMNS = [
    "id", "room_id", "sender_id", "content", "type", "attachment_key",
    "reply_to_id", "created_at", "edited_at", "is_edited", "is_deleted",
]

_ROOM_SELECT = "SELECT " + ", ".join(_ROOM_COLUMNS) + " FROM rooms"
_PARTICIPANT_SELECT = "SELECT " + ", ".join(_PARTICIPANT_COLUMNS) + " FROM participants"
_MESSAGE_SELECT = "SELECT " + ", ".join(_MESSAGE_COLUMNS) + " FROM messages"


def _placeholders(values: Sequence) -> str:
    return ", ".join("?" for _ in values)


def _direct_key(user_ids: Sequence[str]) -> str:
    a, b = sorted(user_ids)
    return f"{a}|{b}"


def build_preview(content: Optional[str], message_type: MessageType) -> str:
    """Short text shown in room lists for the newest message."""
    if content and content.strip():
        text = " ".join(content.split())
        if len(text) > PREVIEW_LENGTH:
            text = text[: PREVIEW_LENGTH - 1] + "…"
        return text
    if message_type == MessageType.IMAGE:
        return "[image]"
    if message_type == MessageType.VIDEO:
        return "[video]"
    return "[attachment]"


class MessageStore:
    """Room, participant and message persistence.

    Validation errors are raised before touching the database; every DuckDB
    failure surfaces as ``StoreUnavailable`` through :class:`Database`.
    """

    def __init__(self, db: Database) -> None:
        self._db = db

    # -----------------------------------------------------------------------
    # Rooms
    # -----------------------------------------------------------------------

    def create_room(
        self,
        kind: RoomKind,
        participant_user_ids: Sequence[str],
        name: Optional[str] = None,
        creator_id: Optional[str] = None,
    ) -> Room:
        """Create a room, or return the existing direct room for the same pair.

        A direct room takes exactly two ids; ``[A, A]`` is a self-chat with a
        single participant row. A group takes at least one id; its creator
        (``creator_id`` or the first id) becomes the owner.

        Args:
            kind: Direct or group.
            participant_user_ids: Opaque user ids of the members.
            name: Display name. Ignored for direct rooms.
            creator_id: Who created the room. Added to a group if missing.

        Returns:
            The new room, or the existing direct room for the same pair.

        Raises:
            InvalidParticipants: Empty ids, or the wrong count for the kind.
            StoreUnavailable: If the database cannot be written.
        """
        kind = RoomKind(kind)
        ids = [str(uid).strip() for uid in participant_user_ids]
        if any(not uid for uid in ids):
            raise InvalidParticipants("Participant ids must not be empty")

        if kind == RoomKind.DIRECT:
            if len(ids) != 2:
                raise InvalidParticipants("A direct room needs exactly two participants")
            existing = self.find_direct_room(ids[0], ids[1])
            if existing is not None:
                return existing
            members = list(dict.fromkeys(ids))
            owner = None
            name = None
            creator_id = creator_id or ids[0]
            direct_key = _direct_key(ids)
        else:
            members = list(dict.fromkeys(ids))
            if creator_id and creator_id not in members:
                members.insert(0, creator_id)
            if not members:
                raise InvalidParticipants("A group room needs at least one participant")
            creator_id = creator_id or members[0]
            owner = creator_id
            name = name.strip() if name and name.strip() else None
            direct_key = None

        now = utcnow()
        with self._db.transaction() as db:
            row = db.fetchone(
                """
                INSERT INTO rooms (kind, name, creator_id, direct_key, created_at)
                VALUES (?, ?, ?, ?, ?)
                RETURNING id
                """,
                [kind.value, name, creator_id, direct_key, now],
            )
            room_id = row[0]
            for uid in members:
                role = ParticipantRole.OWNER if uid == owner else ParticipantRole.MEMBER
                db.execute(
                    "INSERT INTO participants (room_id, user_id, role, joined_at) VALUES (?, ?, ?, ?)",
                    [room_id, uid, role.value, now],
                )
        logger.info("[MessageStore] Created %s room %s with %d participant(s)", kind.value, room_id, len(members))
        return self.require_room(room_id)

    def find_direct_room(self, user_a: str, user_b: str) -> Optional[Room]:
        row = self._db.fetchone(
            _ROOM_SELECT + " WHERE kind = 'direct' AND direct_key = ? ORDER BY id LIMIT 1",
            [_direct_key([user_a, user_b])],
        )
        return self._row_to_room(row) if row else None

    def get_room(self, room_id: int) -> Optional[Room]:
        row = self._db.fetchone(_ROOM_SELECT + " WHERE id = ?", [room_id])
        return self._row_to_room(row) if row else None

    def require_room(self, room_id: int) -> Room:
        room = self.get_room(room_id)
        if room is None:
            raise RoomNotFound(f"Room {room_id} not found")
        return room

    def rooms_for_user(self, user_id: str) -> List[Room]:
        """All rooms the user participates in, newest activity first."""
        rows = self._db.fetchall(
            "SELECT " + ", ".join(f"r.{c}" for c in _ROOM_COLUMNS) + """
            FROM rooms r
            JOIN participants p ON p.room_id = r.id
            WHERE p.user_id = ?
            ORDER BY COALESCE(r.last_message_at, r.created_at) DESC, r.id DESC
            """,
            [user_id],
        )
        return [self._row_to_room(r) for r in rows]

    def room_ids_for_user(self, user_id: str) -> List[int]:
        rows = self._db.fetchall(
            "SELECT room_id FROM participants WHERE user_id = ? ORDER BY room_id", [user_id]
        )
        return [r[0] for r in rows]

    def disable_room(self, room_id: int, requester_id: str) -> Room:
        """Soft-disable a room. Groups: owners only. Direct rooms: either participant."""
        room = self.require_room(room_id)
        participant = self.get_participant(room_id, requester_id)
        if participant is None:
            raise NotAParticipant()
        if room.kind == RoomKind.GROUP and participant.role != ParticipantRole.OWNER:
            raise Forbidden("Only a room owner can disable a group")
        if not room.is_disabled:
            self._db.execute("UPDATE rooms SET is_disabled = TRUE WHERE id = ?", [room_id])
            logger.info("[MessageStore] Room %s disabled by %s", room_id, requester_id)
        return self.require_room(room_id)

    # -----------------------------------------------------------------------
    # Participants
    # -----------------------------------------------------------------------

    def list_participants(self, room_id: int) -> List[Participant]:
        rows = self._db.fetchall(
            _PARTICIPANT_SELECT + " WHERE room_id = ? ORDER BY joined_at, user_id", [room_id]
        )
        return [self._row_to_participant(r) for r in rows]

    def participants_for_rooms(self, room_ids: Sequence[int]) -> Dict[int, List[Participant]]:
        """Participants of several rooms in one query."""
        result: Dict[int, List[Participant]] = {rid: [] for rid in room_ids}
        if not room_ids:
            return result
        rows = self._db.fetchall(
            _PARTICIPANT_SELECT + f" WHERE room_id IN ({_placeholders(room_ids)}) ORDER BY room_id, joined_at, user_id",
            list(room_ids),
        )
        for row in rows:
            p = self._row_to_participant(row)
            result.setdefault(p.room_id, []).append(p)
        return result

    def get_participant(self, room_id: int, user_id: str) -> Optional[Participant]:
        row = self._db.fetchone(
            _PARTICIPANT_SELECT + " WHERE room_id = ? AND user_id = ?", [room_id, user_id]
        )
        return self._row_to_participant(row) if row else None

    def is_participant(self, room_id: int, user_id: str) -> bool:
        return self.get_participant(room_id, user_id) is not None

    def require_participant(self, room_id: int, user_id: str) -> Participant:
        self.require_room(room_id)
        participant = self.get_participant(room_id, user_id)
        if participant is None:
            raise NotAParticipant(f"User {user_id} is not a participant of room {room_id}")
        return participant

    def add_participants(self, room_id: int, requester_id: str, user_ids: Iterable[str]) -> List[Participant]:
        """Add members to a group. Returns only the newly added participants.

        Raises:
            InvalidParticipants: Empty ids, or the room is not a group.
            NotAParticipant: If the requester is not in the room.
            Forbidden: If the requester is not an owner.
        """
        ids = [str(uid).strip() for uid in user_ids]
        if not ids or any(not uid for uid in ids):
            raise InvalidParticipants("Participant ids must not be empty")
        room = self.require_room(room_id)
        if room.kind != RoomKind.GROUP:
            raise InvalidParticipants("Participants can only be added to group rooms")
        requester = self.get_participant(room_id, requester_id)
        if requester is None:
            raise NotAParticipant()
        if requester.role != ParticipantRole.OWNER:
            raise Forbidden("Only a room owner can add participants")

        existing = {p.user_id for p in self.list_participants(room_id)}
        new_ids = [uid for uid in dict.fromkeys(ids) if uid not in existing]
        if not new_ids:
            return []
        now = utcnow()
        with self._db.transaction() as db:
            for uid in new_ids:
                db.execute(
                    "INSERT INTO participants (room_id, user_id, role, joined_at) VALUES (?, ?, 'member', ?)",
                    [room_id, uid, now],
                )
        logger.info("[MessageStore] Added %d participant(s) to room %s", len(new_ids), room_id)
        return [p for p in self.list_participants(room_id) if p.user_id in new_ids]

    # -----------------------------------------------------------------------
    # Messages
    # -----------------------------------------------------------------------

    def append_message(
        self,
        room_id: int,
        sender_id: str,
        content: Optional[str] = None,
        message_type: MessageType = MessageType.TEXT,
        attachment_ref: Optional[str] = None,
        reply_to_id: Optional[int] = None,
    ) -> Message:
        """Insert a message and update the room's last-message summary atomically.

        Args:
            room_id: Target room.
            sender_id: Must be a participant of the room.
            content: Text body. Whitespace-only text counts as no text.
            message_type: Category of the message.
            attachment_ref: Storage key of an uploaded attachment, if any.
            reply_to_id: Message in the same room this one replies to.

        Returns:
            The stored message with its new id.

        Raises:
            EmptyMessage: If there is neither text nor an attachment.
            RoomNotFound: If the room does not exist.
            NotAParticipant: If the sender is not in the room.
            Forbidden: If the room is disabled.
            MessageNotFound: If the reply target is not in this room.
        """
        if content is not None and not content.strip():
            content = None
        if content is None and not attachment_ref:
            raise EmptyMessage()
        message_type = MessageType(message_type)

        room = self.require_room(room_id)
        if not self.is_participant(room_id, sender_id):
            raise NotAParticipant(f"User {sender_id} is not a participant of room {room_id}")
        if room.is_disabled:
            raise Forbidden("Room is disabled")
        if reply_to_id is not None:
            parent = self.get_message(reply_to_id)
            if parent is None or parent.room_id != room_id:
                raise MessageNotFound(f"Reply target {reply_to_id} not found in room {room_id}")

        now = utcnow()
        preview = build_preview(content, message_type)
        with self._db.transaction() as db:
            row = db.fetchone(
                """
                INSERT INTO messages
                  (room_id, sender_id, content, type, attachment_key, reply_to_id, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                RETURNING id
                """,
                [room_id, sender_id, content, message_type.value, attachment_ref, reply_to_id, now],
            )
            message_id = row[0]
            db.execute(
                """
                UPDATE rooms SET
                  last_message_at = ?, last_message_id = ?, last_message_preview = ?,
                  last_message_sender_id = ?, last_message_type = ?
                WHERE id = ?
                """,
                [now, message_id, preview, sender_id, message_type.value, room_id],
            )
        logger.debug("[MessageStore] Message %s appended to room %s", message_id, room_id)
        return self.get_message(message_id)

    def get_message(self, message_id: int) -> Optional[Message]:
        row = self._db.fetchone(_MESSAGE_SELECT + " WHERE id = ?", [message_id])
        return self._row_to_message(row) if row else None

    def require_message(self, message_id: int) -> Message:
        message = self.get_message(message_id)
        if message is None:
            raise MessageNotFound(f"Message {message_id} not found")
        return message

    def list_messages(
        self,
        room_id: int,
        before_id: Optional[int] = None,
        limit: int = DEFAULT_PAGE_SIZE,
        ascending: bool = True,
        include_deleted: bool = False,
    ) -> List[Message]:
        """Return the newest ``limit`` messages older than ``before_id``.

        Pagination is by id cursor, never by offset. ``limit`` is clamped to
        1..100. Results are ascending by id unless ``ascending`` is False.

        Args:
            room_id: Room to read.
            before_id: Exclusive upper bound on ids. None means the newest page.
            limit: Page size.
            ascending: Order of the returned page.
            include_deleted: Also return soft-deleted messages.

        Returns:
            Up to ``limit`` messages. An empty list when nothing is older.
        """
        limit = max(1, min(int(limit), MAX_PAGE_SIZE))
        clauses = ["room_id = ?"]
        params: list = [room_id]
        if before_id is not None:
            clauses.append("id < ?")
            params.append(before_id)
        if not include_deleted:
            clauses.append("NOT is_deleted")
        params.append(limit)
        rows = self._db.fetchall(
            _MESSAGE_SELECT + " WHERE " + " AND ".join(clauses) + " ORDER BY id DESC LIMIT ?",
            params,
        )
        messages = [self._row_to_message(r) for r in rows]
        if ascending:
            messages.reverse()
        return messages

    def has_messages_before(self, room_id: int, before_id: int) -> bool:
        row = self._db.fetchone(
            "SELECT 1 FROM messages WHERE room_id = ? AND id < ? AND NOT is_deleted LIMIT 1",
            [room_id, before_id],
        )
        return row is not None

    def latest_messages(self, room_ids: Sequence[int]) -> Dict[int, Message]:
        """Newest visible message per room, in one query."""
        if not room_ids:
            return {}
        rows = self._db.fetchall(
            "SELECT " + ", ".join(_MESSAGE_COLUMNS) + f"""
            FROM (
                SELECT *, row_number() OVER (PARTITION BY room_id ORDER BY id DESC) AS rn
                FROM messages
                WHERE room_id IN ({_placeholders(room_ids)}) AND NOT is_deleted
            ) WHERE rn = 1
            """,
            list(room_ids),
        )
        latest = (self._row_to_message(r) for r in rows)
        return {m.room_id: m for m in latest}

    def edit_message(self, message_id: int, requester_id: str, content: str) -> Message:
        """Replace the content of a message. Sender only.

        Raises:
            EmptyMessage: If ``content`` is blank.
            MessageNotFound: If there is no such message.
            Forbidden: If the requester is not the sender, or the message is deleted.
        """
        if content is None or not content.strip():
            raise EmptyMessage()
        message = self.require_message(message_id)
        if message.sender_id != requester_id:
            raise Forbidden("Only the sender can edit a message")
        if message.is_deleted:
            raise Forbidden("Deleted messages cannot be edited")

        with self._db.transaction() as db:
            db.execute(
                "UPDATE messages SET content = ?, is_edited = TRUE, edited_at = ? WHERE id = ?",
                [content, utcnow(), message_id],
            )
            self._refresh_summary_if_last(db, message.room_id, message_id)
        return self.require_message(message_id)

    def soft_delete_message(self, message_id: int, requester_id: str) -> Message:
        """Flag a message as deleted. Sender or room owner only; idempotent."""
        message = self.require_message(message_id)
        if message.sender_id != requester_id:
            participant = self.get_participant(message.room_id, requester_id)
            if participant is None or participant.role != ParticipantRole.OWNER:
                raise Forbidden("Only the sender or a room owner can delete a message")
        if message.is_deleted:
            return message

        with self._db.transaction() as db:
            db.execute("UPDATE messages SET is_deleted = TRUE WHERE id = ?", [message_id])
            self._refresh_summary_if_last(db, message.room_id, message_id)
        logger.info("[MessageStore] Message %s deleted by %s", message_id, requester_id)
        return self.require_message(message_id)

    def newest_message_id(self, room_id: int, upto: Optional[int] = None) -> int:
        """Largest message id in the room (optionally <= ``upto``), or 0."""
        if upto is None:
            row = self._db.fetchone("SELECT max(id) FROM messages WHERE room_id = ?", [room_id])
        else:
            row = self._db.fetchone(
                "SELECT max(id) FROM messages WHERE room_id = ? AND id <= ?", [room_id, upto]
            )
        return row[0] if row and row[0] is not None else 0

    # -----------------------------------------------------------------------
    # Summary maintenance
    # -----------------------------------------------------------------------

    def refresh_room_summary(self, room_id: int) -> Room:
        """Recompute the denormalized last-message summary from stored messages."""
        self.require_room(room_id)
        with self._db.transaction() as db:
            self._write_summary(db, room_id)
        return self.require_room(room_id)

    def _refresh_summary_if_last(self, db: Database, room_id: int, message_id: int) -> None:
        row = db.fetchone("SELECT last_message_id FROM rooms WHERE id = ?", [room_id])
        if row and row[0] == message_id:
            self._write_summary(db, room_id)

    def _write_summary(self, db: Database, room_id: int) -> None:
        row = db.fetchone(
            "SELECT id, sender_id, content, type, created_at FROM messages "
            "WHERE room_id = ? AND NOT is_deleted ORDER BY id DESC LIMIT 1",
            [room_id],
        )
        if row is None:
            db.execute(
                """
                UPDATE rooms SET
                  last_message_at = NULL, last_message_id = NULL, last_message_preview = NULL,
                  last_message_sender_id = NULL, last_message_type = NULL
                WHERE id = ?
                """,
                [room_id],
            )
            return
        message_id, sender_id, content, type_, created_at = row
        db.execute(
            """
            UPDATE rooms SET
              last_message_at = ?, last_message_id = ?, last_message_preview = ?,
              last_message_sender_id = ?, last_message_type = ?
            WHERE id = ?
            """,
            [created_at, message_id, build_preview(content, MessageType(type_)), sender_id, type_, room_id],
        )

    # -----------------------------------------------------------------------
    # Internal
    # -----------------------------------------------------------------------

    @staticmethod
    def _row_to_room(row: tuple) -> Room:
        return Room(**dict(zip(_ROOM_COLUMNS, row)))

    @staticmethod
    def _row_to_participant(row: tuple) -> Participant:
        return Participant(**dict(zip(_PARTICIPANT_COLUMNS, row)))

    @staticmethod
    def _row_to_message(row: tuple) -> Message:
        return Message(**dict(zip(_MESSAGE_COLUMNS, row)))
