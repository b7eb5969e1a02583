"""FastAPI router for the chat list."""
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from schoolchat.chat.service import ChatService
from schoolchat.deps import get_caller_id, get_service
from schoolchat.directory.schemas import RoomSummary
from schoolchat.directory.service import filter_rooms
from schoolchat.messages.schemas import RoomKind

logger = logging.getLogger(__name__)

router = APIRouter(tags=["directory"])


@router.get("/rooms", response_model=List[RoomSummary])
async def list_rooms(
    search: Optional[str] = Query(None, description="Case-insensitive display-name filter"),
    unread_only: bool = Query(False),
    kind: Optional[RoomKind] = Query(None, description="Restrict to direct or group rooms"),
    caller_id: str = Depends(get_caller_id),
    service: ChatService = Depends(get_service),
):
    """The caller's rooms, most recent activity first."""
    summaries = await service.list_rooms(caller_id)
    return filter_rooms(summaries, search=search, unread_only=unread_only, kind=kind)
