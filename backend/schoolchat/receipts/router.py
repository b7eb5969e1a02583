"""FastAPI router for read cursors and unread counts."""
import logging
from typing import Dict

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from schoolchat.chat.service import ChatService
from schoolchat.deps import get_caller_id, get_service

logger = logging.getLogger(__name__)

router = APIRouter(tags=["receipts"])


class MarkReadRequest(BaseModel):
    upto_message_id: int = Field(..., ge=0, description="Newest message id the user has seen")


class MarkReadResponse(BaseModel):
    room_id: int
    last_read_message_id: int
    unread_count: int


class UnreadCountsResponse(BaseModel):
    counts: Dict[int, int] = Field(..., description="room_id -> unread count")
    total: int


@router.post("/rooms/{room_id}/read", response_model=MarkReadResponse)
async def mark_read(
    room_id: int,
    body: MarkReadRequest,
    caller_id: str = Depends(get_caller_id),
    service: ChatService = Depends(get_service),
):
    cursor = await service.mark_read(room_id, caller_id, body.upto_message_id)
    return MarkReadResponse(
        room_id=room_id,
        last_read_message_id=cursor,
        unread_count=service.tracker.get_unread_count(room_id, caller_id),
    )


@router.get("/unread", response_model=UnreadCountsResponse)
async def unread_counts(
    caller_id: str = Depends(get_caller_id),
    service: ChatService = Depends(get_service),
):
    counts = await service.unread_counts(caller_id)
    return UnreadCountsResponse(counts=counts, total=sum(counts.values()))
