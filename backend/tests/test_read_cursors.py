"""Tests for ReadCursorTracker."""
import pytest

from schoolchat.errors import NotAParticipant
from schoolchat.messages.schemas import RoomKind


@pytest.fixture
def direct_room(store):
    return store.create_room(RoomKind.DIRECT, ["alice", "bob"])


class TestMarkRead:
    def test_cursor_never_moves_backwards(self, store, tracker, direct_room):
        ids = [store.append_message(direct_room.id, "alice", f"m{i}").id for i in range(5)]
        assert tracker.mark_read(direct_room.id, "bob", ids[3]) == ids[3]
        assert tracker.mark_read(direct_room.id, "bob", ids[1]) == ids[3]
        assert tracker.get_cursor(direct_room.id, "bob") == ids[3]

    def test_cursor_clamped_to_newest_message(self, store, tracker, direct_room):
        newest = store.append_message(direct_room.id, "alice", "hi").id
        assert tracker.mark_read(direct_room.id, "bob", newest + 1000) == newest

    def test_cursor_snaps_to_message_of_this_room(self, store, tracker, direct_room):
        other = store.create_room(RoomKind.DIRECT, ["carol", "dave"])
        first = store.append_message(direct_room.id, "alice", "one").id
        foreign = store.append_message(other.id, "carol", "elsewhere").id
        store.append_message(direct_room.id, "alice", "two")
        assert tracker.mark_read(direct_room.id, "bob", foreign) == first

    def test_empty_room_stays_at_zero(self, tracker, direct_room):
        assert tracker.mark_read(direct_room.id, "bob", 10) == 0

    def test_non_participant(self, store, tracker, direct_room):
        store.append_message(direct_room.id, "alice", "hi")
        with pytest.raises(NotAParticipant):
            tracker.mark_read(direct_room.id, "mallory", 1)


class TestUnreadCounts:
    def test_own_messages_are_never_unread(self, store, tracker, direct_room):
        for i in range(3):
            store.append_message(direct_room.id, "alice", f"m{i}")
        assert tracker.get_unread_count(direct_room.id, "alice") == 0
        assert tracker.get_unread_count(direct_room.id, "bob") == 3

    def test_unread_counts_messages_after_cursor(self, store, tracker, direct_room):
        ids = [store.append_message(direct_room.id, "alice", f"m{i}").id for i in range(4)]
        store.append_message(direct_room.id, "bob", "reply")
        tracker.mark_read(direct_room.id, "bob", ids[1])
        assert tracker.get_unread_count(direct_room.id, "bob") == 2

    def test_deleted_messages_are_not_counted(self, store, tracker, direct_room):
        keep = store.append_message(direct_room.id, "alice", "keep")
        gone = store.append_message(direct_room.id, "alice", "gone")
        store.soft_delete_message(gone.id, "alice")
        assert tracker.get_unread_count(direct_room.id, "bob") == 1
        tracker.mark_read(direct_room.id, "bob", keep.id)
        assert tracker.get_unread_count(direct_room.id, "bob") == 0

    def test_unread_for_non_participant(self, tracker, direct_room):
        with pytest.raises(NotAParticipant):
            tracker.get_unread_count(direct_room.id, "mallory")

    def test_counts_for_user_cover_every_room(self, store, tracker, direct_room):
        group = store.create_room(RoomKind.GROUP, ["bob", "carol"], creator_id="alice")
        quiet = store.create_room(RoomKind.DIRECT, ["bob", "dave"])
        store.append_message(direct_room.id, "alice", "a")
        store.append_message(group.id, "alice", "b")
        store.append_message(group.id, "carol", "c")
        assert tracker.get_unread_counts_for_user("bob") == {
            direct_room.id: 1,
            group.id: 2,
            quiet.id: 0,
        }

    def test_counts_for_room_cover_every_participant(self, store, tracker):
        group = store.create_room(RoomKind.GROUP, ["bob", "carol"], creator_id="alice")
        store.append_message(group.id, "alice", "hello")
        assert tracker.get_unread_counts_for_room(group.id) == {"alice": 0, "bob": 1, "carol": 1}
