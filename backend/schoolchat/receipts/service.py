"""ReadCursorTracker: per-participant read cursors and unread counts.

A cursor is the id of the newest message the participant has read (0 for
none). ``mark_read`` advances it with a single ``GREATEST`` update, so
concurrent or out-of-order calls commute and the cursor never moves back.

Unread = messages in the room with id > cursor, not sent by the participant
and not soft-deleted.
"""
import logging
from typing import Dict

from schoolchat.database import Database
from schoolchat.errors import NotAParticipant
from schoolchat.messages.service import MessageStore

logger = logging.getLogger(__name__)

_UNREAD_JOIN = """
    FROM participants p
    LEFT JOIN messages m
      ON m.room_id = p.room_id
     AND m.id > p.last_read_message_id
     AND m.sender_id <> p.user_id
     AND NOT m.is_deleted
"""


class ReadCursorTracker:
    def __init__(self, db: Database, store: MessageStore) -> None:
        self._db = db
        self._store = store

    def mark_read(self, room_id: int, user_id: str, upto_message_id: int) -> int:
        """Advance the cursor to ``upto_message_id`` and return the resulting cursor.

        The target is snapped to the newest message of this room with an id
        not above ``upto_message_id``, so the cursor always names a message of
        the room (or stays 0).

        Args:
            room_id: Room being read.
            user_id: Reader. Must be a participant.
            upto_message_id: Newest message the reader has seen.

        Returns:
            The cursor after the update. Never lower than before.

        Raises:
            NotAParticipant: If the user is not in the room.
        """
        self._store.require_participant(room_id, user_id)
        target = self._store.newest_message_id(room_id, upto=max(0, int(upto_message_id)))
        row = self._db.fetchone(
            """
            UPDATE participants
               SET last_read_message_id = GREATEST(last_read_message_id, ?)
             WHERE room_id = ? AND user_id = ?
            RETURNING last_read_message_id
            """,
            [target, room_id, user_id],
        )
        if row is None:
            raise NotAParticipant()
        logger.debug("[ReadCursorTracker] room=%s user=%s cursor=%s", room_id, user_id, row[0])
        return row[0]

    def get_cursor(self, room_id: int, user_id: str) -> int:
        """Last read message id, 0 if nothing was read yet."""
        participant = self._store.get_participant(room_id, user_id)
        if participant is None:
            raise NotAParticipant()
        return participant.last_read_message_id

    def get_unread_count(self, room_id: int, user_id: str) -> int:
        """Count visible messages from others above the user's cursor.

        Raises:
            NotAParticipant: If the user is not in the room.
        """
        row = self._db.fetchone(
            "SELECT count(m.id)" + _UNREAD_JOIN + " WHERE p.room_id = ? AND p.user_id = ? GROUP BY p.user_id",
            [room_id, user_id],
        )
        if row is None:
            raise NotAParticipant(f"User {user_id} is not a participant of room {room_id}")
        return row[0]

    def get_unread_counts_for_user(self, user_id: str) -> Dict[int, int]:
        """Unread count of every room the user is in, in one aggregated query."""
        rows = self._db.fetchall(
            "SELECT p.room_id, count(m.id)" + _UNREAD_JOIN + " WHERE p.user_id = ? GROUP BY p.room_id",
            [user_id],
        )
        return {room_id: count for room_id, count in rows}

    def get_unread_counts_for_room(self, room_id: int) -> Dict[str, int]:
        """Unread count of every participant of a room, in one aggregated query."""
        rows = self._db.fetchall(
            "SELECT p.user_id, count(m.id)" + _UNREAD_JOIN + " WHERE p.room_id = ? GROUP BY p.user_id",
            [room_id],
        )
        return {user_id: count for user_id, count in rows}
