"""FastAPI router for attachment upload and download.

Upload only stores the blob; the client then sends a message referencing the
returned ``storage_key`` (``POST /rooms/{room_id}/messages``).
"""
import logging

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile
from fastapi.responses import FileResponse

from schoolchat.attachments.schemas import AttachmentUploadResponse
from schoolchat.chat.service import ChatService
from schoolchat.deps import get_caller_id, get_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/attachments", tags=["attachments"])


@router.post("/{room_id}", response_model=AttachmentUploadResponse, status_code=201)
async def upload_attachment(
    room_id: int,
    file: UploadFile = File(...),
    caller_id: str = Depends(get_caller_id),
    service: ChatService = Depends(get_service),
):
    """Upload an image or video to a room.

    Raises:
        413: larger than the configured limit (default 5 MB)
        415: not image/* or video/*
        403: caller is not a participant
    """
    pipeline = service.pipeline
    mime_type = file.content_type or "application/octet-stream"
    if file.size is not None:
        pipeline.validate(mime_type, file.size)

    # Read at most one byte past the limit; that is enough to reject.
    content = await file.read(pipeline.max_size_bytes + 1)
    ref = await service.upload_attachment(
        room_id,
        caller_id,
        content,
        mime_type,
        filename=file.filename,
        size_bytes=file.size,
    )
    return AttachmentUploadResponse(attachment=ref, url=pipeline.get_public_url(ref))


@router.get("/{room_id}/{name}")
async def download_attachment(
    room_id: int,
    name: str,
    service: ChatService = Depends(get_service),
):
    storage_key = f"{room_id}/{name}"
    record = service.pipeline.get_attachment(storage_key)
    path = service.pipeline.open_blob(storage_key) if record else None
    if record is None or path is None:
        raise HTTPException(status_code=404, detail="Attachment not found")
    return FileResponse(
        path=path,
        filename=record.filename or name,
        media_type=record.mime_type,
    )
