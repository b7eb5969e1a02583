"""RoomDirectory: the per-user chat list.

``list_rooms_for_user`` answers with a fixed number of queries regardless of
the number of rooms: rooms, unread counts, participants and profiles are each
fetched in one batch. Rooms whose denormalized summary is missing are
patched from one batched latest-message query.
"""
import logging
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional

from schoolchat.directory.schemas import LastMessagePreview, RoomSummary
from schoolchat.identity.schemas import UserProfile
from schoolchat.identity.service import UserDirectory
from schoolchat.messages.schemas import Message, Participant, Room, RoomKind
from schoolchat.messages.service import MessageStore, build_preview
from schoolchat.receipts.service import ReadCursorTracker

logger = logging.getLogger(__name__)

UNKNOWN_USER_LABEL = "Unknown"
SELF_CHAT_LABEL = "Note to self"
GROUP_FALLBACK_LABEL = "Group"


class RoomDirectory:
    def __init__(self, store: MessageStore, tracker: ReadCursorTracker, users: UserDirectory) -> None:
        self._store = store
        self._tracker = tracker
        self._users = users

    def list_rooms_for_user(self, user_id: str) -> List[RoomSummary]:
        rooms = self._store.rooms_for_user(user_id)
        if not rooms:
            return []
        unread = self._tracker.get_unread_counts_for_user(user_id)

        direct_ids = [r.id for r in rooms if r.kind == RoomKind.DIRECT]
        participants = self._store.participants_for_rooms(direct_ids)
        profile_ids = {p.user_id for plist in participants.values() for p in plist}
        profiles = self._users.get_users(sorted(profile_ids | {user_id}))

        stale = [r.id for r in rooms if r.last_message_id is None or r.last_message_at is None]
        fallbacks = self._store.latest_messages(stale) if stale else {}
        if fallbacks:
            logger.debug("[RoomDirectory] Summary missing for rooms %s; using latest messages", sorted(fallbacks))

        summaries = []
        for room in rooms:
            try:
                summaries.append(self._summarize(
                    room, user_id, participants.get(room.id, []), profiles,
                    unread.get(room.id, 0), fallbacks.get(room.id),
                ))
            except Exception:
                # One bad row must not take the list down.
                logger.exception("[RoomDirectory] Failed to summarize room %s", room.id)
                summaries.append(RoomSummary(
                    room_id=room.id,
                    kind=room.kind,
                    display_name=UNKNOWN_USER_LABEL,
                    last_activity_at=room.created_at,
                    unread_count=unread.get(room.id, 0),
                    is_disabled=room.is_disabled,
                ))
        summaries.sort(key=lambda s: (s.last_activity_at, s.room_id), reverse=True)
        logger.debug("[RoomDirectory] %d room(s) for user %s", len(summaries), user_id)
        return summaries

    def get_summary(self, room_id: int, user_id: str) -> Optional[RoomSummary]:
        for summary in self.list_rooms_for_user(user_id):
            if summary.room_id == room_id:
                return summary
        return None

    # -----------------------------------------------------------------------
    # Internal
    # -----------------------------------------------------------------------

    def _summarize(
        self,
        room: Room,
        viewer_id: str,
        participants: List[Participant],
        profiles: Dict[str, UserProfile],
        unread_count: int,
        fallback: Optional[Message],
    ) -> RoomSummary:
        display_name, avatar_url = resolve_display(room, viewer_id, participants, profiles)

        preview = None
        if room.last_message_id is not None and room.last_message_at is not None:
            preview = LastMessagePreview(
                message_id=room.last_message_id,
                content=room.last_message_preview or "",
                sender_id=room.last_message_sender_id or "",
                sent_at=room.last_message_at,
                type=room.last_message_type or "text",
            )
        elif fallback is not None:
            preview = LastMessagePreview(
                message_id=fallback.id,
                content=build_preview(fallback.content, fallback.type),
                sender_id=fallback.sender_id,
                sent_at=fallback.created_at,
                type=fallback.type,
            )

        return RoomSummary(
            room_id=room.id,
            kind=room.kind,
            display_name=display_name,
            avatar_url=avatar_url,
            last_message=preview,
            last_activity_at=preview.sent_at if preview else room.created_at,
            unread_count=unread_count,
            is_disabled=room.is_disabled,
        )


def resolve_display(
    room: Room,
    viewer_id: str,
    participants: List[Participant],
    profiles: Dict[str, UserProfile],
):
    """Return ``(display_name, avatar_url)`` of a room as seen by ``viewer_id``."""
    if room.kind == RoomKind.GROUP:
        return room.name or GROUP_FALLBACK_LABEL, None

    others = [p.user_id for p in participants if p.user_id != viewer_id]
    if not others:
        me = profiles.get(viewer_id)
        return SELF_CHAT_LABEL, me.avatar_url if me else None
    profile = profiles.get(others[0])
    if profile is None:
        return UNKNOWN_USER_LABEL, None
    return profile.display_name, profile.avatar_url


def filter_rooms(
    summaries: Iterable[RoomSummary],
    search: Optional[str] = None,
    unread_only: bool = False,
    kind: Optional[RoomKind] = None,
) -> List[RoomSummary]:
    """Filter a chat list by display-name substring, unread state and kind.

    Pure; keeps the input order.
    """
    needle = (search or "").strip().casefold()
    result = []
    for summary in summaries:
        if needle and needle not in summary.display_name.casefold():
            continue
        if unread_only and summary.unread_count <= 0:
            continue
        if kind is not None and summary.kind != kind:
            continue
        result.append(summary)
    return result


def format_list_timestamp(ts: datetime, now: datetime) -> str:
    """Chat-list timestamp: ``HH:MM`` today, ``Yesterday``, else ``dd/mm/yyyy``."""
    if ts.date() == now.date():
        return ts.strftime("%H:%M")
    if ts.date() == (now - timedelta(days=1)).date():
        return "Yesterday"
    return ts.strftime("%d/%m/%Y")
