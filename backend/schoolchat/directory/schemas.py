"""Pydantic schemas for the chat-list view."""
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from schoolchat.messages.schemas import MessageType, RoomKind


class LastMessagePreview(BaseModel):
    message_id: int
    content: str = Field(..., description="Preview text")
    sender_id: str
    sent_at: datetime
    type: MessageType = MessageType.TEXT


class RoomSummary(BaseModel):
    """One row of a user's chat list."""
    room_id: int
    kind: RoomKind
    display_name: str
    avatar_url: Optional[str] = None
    last_message: Optional[LastMessagePreview] = None
    last_activity_at: datetime
    unread_count: int = 0
    is_disabled: bool = False
