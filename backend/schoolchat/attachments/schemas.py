"""Pydantic schemas for chat attachments.

Blobs live under ``{room_id}/{uuid}{ext}`` storage keys; metadata rows track
the uploader and, once a message references the blob, its message id.
Rows without a message id are orphans and get collected after a retention
period.
"""
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from schoolchat.messages.schemas import MessageType


class AttachmentRef(BaseModel):
    """Handle returned by an upload; passed to the message append."""
    storage_key: str = Field(..., description="Room-scoped storage key")
    room_id: int
    mime_type: str
    size_bytes: int
    filename: Optional[str] = Field(None, description="Original filename")
    message_type: MessageType = Field(..., description="Message type derived from the MIME type")


class AttachmentRecord(AttachmentRef):
    """Attachment metadata as stored in DuckDB."""
    uploader_id: str
    uploaded_at: datetime
    message_id: Optional[int] = Field(None, description="Owning message, null while orphaned")


class AttachmentUploadResponse(BaseModel):
    attachment: AttachmentRef
    url: str = Field(..., description="Public URL of the blob")
