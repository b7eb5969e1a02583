"""Tests for RoomDirectory, filter_rooms and format_list_timestamp."""
from datetime import datetime, timedelta

import pytest

from schoolchat.directory.schemas import RoomSummary
from schoolchat.directory.service import (
    GROUP_FALLBACK_LABEL,
    SELF_CHAT_LABEL,
    UNKNOWN_USER_LABEL,
    filter_rooms,
    format_list_timestamp,
)
from schoolchat.messages.schemas import RoomKind


class TestListRooms:
    def test_empty_for_new_user(self, directory):
        assert directory.list_rooms_for_user("nobody") == []

    def test_direct_room_shows_other_participant(self, store, directory, profiles):
        store.create_room(RoomKind.DIRECT, ["alice", "bob"])
        [summary] = directory.list_rooms_for_user("alice")
        assert summary.display_name == "Bob Parent"
        assert summary.avatar_url == "http://img/bob.png"
        [other_side] = directory.list_rooms_for_user("bob")
        assert other_side.display_name == "Alice Teacher"

    def test_unknown_identity(self, store, directory, profiles):
        store.create_room(RoomKind.DIRECT, ["alice", "ghost"])
        [summary] = directory.list_rooms_for_user("alice")
        assert summary.display_name == UNKNOWN_USER_LABEL

    def test_self_chat_label(self, store, directory, profiles):
        store.create_room(RoomKind.DIRECT, ["alice", "alice"])
        [summary] = directory.list_rooms_for_user("alice")
        assert summary.display_name == SELF_CHAT_LABEL

    def test_group_name_and_fallback(self, store, directory):
        named = store.create_room(RoomKind.GROUP, ["alice"], name="Parents 3A")
        unnamed = store.create_room(RoomKind.GROUP, ["alice"])
        names = {s.room_id: s.display_name for s in directory.list_rooms_for_user("alice")}
        assert names == {named.id: "Parents 3A", unnamed.id: GROUP_FALLBACK_LABEL}

    def test_ordered_by_last_activity(self, store, directory, profiles):
        older = store.create_room(RoomKind.DIRECT, ["alice", "bob"])
        newer = store.create_room(RoomKind.DIRECT, ["alice", "carol"])
        assert [s.room_id for s in directory.list_rooms_for_user("alice")] == [newer.id, older.id]
        store.append_message(older.id, "bob", "ping")
        assert [s.room_id for s in directory.list_rooms_for_user("alice")] == [older.id, newer.id]

    def test_summary_includes_preview_and_unread(self, store, directory, profiles):
        room = store.create_room(RoomKind.DIRECT, ["alice", "bob"])
        store.append_message(room.id, "bob", "first")
        last = store.append_message(room.id, "bob", "second")
        [summary] = directory.list_rooms_for_user("alice")
        assert summary.unread_count == 2
        assert summary.last_message.message_id == last.id
        assert summary.last_message.content == "second"
        assert summary.last_message.sender_id == "bob"
        assert summary.last_activity_at == last.created_at

    def test_missing_summary_falls_back_to_latest_message(self, store, directory, db, profiles):
        room = store.create_room(RoomKind.DIRECT, ["alice", "bob"])
        message = store.append_message(room.id, "bob", "still here")
        db.execute(
            "UPDATE rooms SET last_message_id = NULL, last_message_at = NULL, last_message_preview = NULL "
            "WHERE id = ?",
            [room.id],
        )
        [summary] = directory.list_rooms_for_user("alice")
        assert summary.last_message.message_id == message.id
        assert summary.last_message.content == "still here"

    def test_disabled_flag(self, store, directory):
        room = store.create_room(RoomKind.GROUP, ["alice"])
        store.disable_room(room.id, "alice")
        [summary] = directory.list_rooms_for_user("alice")
        assert summary.is_disabled


def _summary(room_id, name, unread=0, kind=RoomKind.DIRECT):
    return RoomSummary(
        room_id=room_id,
        kind=kind,
        display_name=name,
        last_activity_at=datetime(2024, 1, 1),
        unread_count=unread,
    )


class TestFilterRooms:
    @pytest.fixture
    def summaries(self):
        return [
            _summary(1, "Bob Parent", unread=2),
            _summary(2, "Class 5B", kind=RoomKind.GROUP),
            _summary(3, "Carol Student", unread=1),
        ]

    def test_no_filters_keeps_everything(self, summaries):
        assert filter_rooms(summaries) == summaries

    def test_case_insensitive_search(self, summaries):
        assert [s.room_id for s in filter_rooms(summaries, search="  bOb ")] == [1]

    def test_unread_only(self, summaries):
        assert [s.room_id for s in filter_rooms(summaries, unread_only=True)] == [1, 3]

    def test_kind_filter(self, summaries):
        assert [s.room_id for s in filter_rooms(summaries, kind=RoomKind.GROUP)] == [2]

    def test_combined(self, summaries):
        assert filter_rooms(summaries, search="class", unread_only=True) == []


class TestFormatListTimestamp:
    NOW = datetime(2024, 3, 15, 18, 30)

    def test_today_shows_time(self):
        assert format_list_timestamp(datetime(2024, 3, 15, 9, 5), self.NOW) == "09:05"

    def test_yesterday(self):
        assert format_list_timestamp(self.NOW - timedelta(days=1), self.NOW) == "Yesterday"

    def test_older_shows_date(self):
        assert format_list_timestamp(datetime(2024, 2, 1, 12, 0), self.NOW) == "01/02/2024"
