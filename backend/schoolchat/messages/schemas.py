"""Pydantic schemas for rooms, participants and messages.

- Room: a direct (two-slot) or group conversation with its denormalized
  last-message summary
- Participant: a user's membership of a room, including the read cursor
- Message: one chat message; ids grow strictly within a room
- *Request models: bodies accepted by the HTTP API
"""
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class RoomKind(str, Enum):
    DIRECT = "direct"
    GROUP = "group"


class ParticipantRole(str, Enum):
    MEMBER = "member"
    OWNER = "owner"


class MessageType(str, Enum):
    """Message categories.

    TEXT messages carry content; IMAGE and VIDEO carry an attachment
    (optionally with content); OTHER is reserved for attachments of any
    other accepted type.
    """
    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"
    OTHER = "other"


def message_type_for_mime(mime_type: Optional[str]) -> MessageType:
    """Map a MIME type to the message type shown in the chat."""
    if not mime_type:
        return MessageType.OTHER
    mime_type = mime_type.lower()
    if mime_type.startswith("image/"):
        return MessageType.IMAGE
    if mime_type.startswith("video/"):
        return MessageType.VIDEO
    return MessageType.OTHER


class Room(BaseModel):
    id: int = Field(..., description="Room ID")
    kind: RoomKind = Field(..., description="direct or group")
    name: Optional[str] = Field(None, description="Display name (groups only)")
    creator_id: Optional[str] = Field(None, description="User who created the room")
    created_at: datetime = Field(..., description="Creation timestamp (UTC)")
    last_message_at: Optional[datetime] = Field(None, description="Timestamp of the newest message")
    last_message_id: Optional[int] = Field(None, description="ID of the newest visible message")
    last_message_preview: Optional[str] = Field(None, description="Preview text of the newest message")
    last_message_sender_id: Optional[str] = Field(None, description="Sender of the newest message")
    last_message_type: Optional[MessageType] = Field(None, description="Type of the newest message")
    is_disabled: bool = Field(False, description="Disabled rooms reject new messages")

    @property
    def last_activity_at(self) -> datetime:
        return self.last_message_at or self.created_at


class Participant(BaseModel):
    room_id: int
    user_id: str
    role: ParticipantRole = ParticipantRole.MEMBER
    joined_at: datetime
    last_read_message_id: int = Field(0, description="Read cursor, 0 when nothing was read")


class Message(BaseModel):
    id: int = Field(..., description="Message ID, strictly increasing within a room")
    room_id: int
    sender_id: str
    content: Optional[str] = Field(None, description="Text content, null for attachment-only messages")
    type: MessageType = MessageType.TEXT
    attachment_key: Optional[str] = Field(None, description="Storage key of the attachment")
    attachment_url: Optional[str] = Field(None, description="Public URL of the attachment")
    reply_to_id: Optional[int] = None
    created_at: datetime
    edited_at: Optional[datetime] = None
    is_edited: bool = False
    is_deleted: bool = False


class RoomDetail(BaseModel):
    room: Room
    participants: List[Participant]


class MessagePage(BaseModel):
    """One page of history in ascending id order."""
    messages: List[Message]
    has_more: bool = Field(..., description="True when older messages exist")


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------


class CreateRoomRequest(BaseModel):
    kind: RoomKind
    participant_ids: List[str] = Field(..., description="User ids; the caller is added if missing")
    name: Optional[str] = Field(None, max_length=200)


class AddParticipantsRequest(BaseModel):
    user_ids: List[str] = Field(..., min_length=1)


class SendMessageRequest(BaseModel):
    content: Optional[str] = Field(None, max_length=10000)
    attachment_key: Optional[str] = Field(None, description="Storage key returned by the upload endpoint")
    reply_to_id: Optional[int] = None


class EditMessageRequest(BaseModel):
    content: str = Field(..., max_length=10000)
