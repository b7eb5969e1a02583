"""FastAPI router for rooms and messages.

Endpoints:
    - POST   /rooms                          create a room (direct rooms are deduplicated)
    - GET    /rooms/{room_id}                room detail with participants
    - POST   /rooms/{room_id}/participants   add group members (owner only)
    - POST   /rooms/{room_id}/disable        soft-disable a room
    - GET    /rooms/{room_id}/messages       history page (``before`` cursor, ``limit``)
    - POST   /rooms/{room_id}/messages       send a message
    - PATCH  /messages/{message_id}          edit (sender only)
    - DELETE /messages/{message_id}          soft delete (sender or owner)

The caller is identified by the ``X-User-Id`` header.
"""
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from schoolchat.chat.service import ChatService
from schoolchat.deps import get_caller_id, get_service
from schoolchat.messages.schemas import (
    AddParticipantsRequest,
    CreateRoomRequest,
    EditMessageRequest,
    Message,
    MessagePage,
    Participant,
    Room,
    RoomDetail,
    SendMessageRequest,
)
from schoolchat.messages.service import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE

logger = logging.getLogger(__name__)

router = APIRouter(tags=["messages"])


@router.post("/rooms", response_model=Room, status_code=201)
async def create_room(
    body: CreateRoomRequest,
    caller_id: str = Depends(get_caller_id),
    service: ChatService = Depends(get_service),
):
    room = await service.create_room(caller_id, body.kind, body.participant_ids, name=body.name)
    logger.info("Room %s (%s) requested by %s", room.id, room.kind.value, caller_id)
    return room


@router.get("/rooms/{room_id}", response_model=RoomDetail)
async def get_room(
    room_id: int,
    caller_id: str = Depends(get_caller_id),
    service: ChatService = Depends(get_service),
):
    return await service.get_room_detail(room_id, caller_id)


@router.post("/rooms/{room_id}/participants", response_model=List[Participant])
async def add_participants(
    room_id: int,
    body: AddParticipantsRequest,
    caller_id: str = Depends(get_caller_id),
    service: ChatService = Depends(get_service),
):
    return await service.add_participants(room_id, caller_id, body.user_ids)


@router.post("/rooms/{room_id}/disable", response_model=Room)
async def disable_room(
    room_id: int,
    caller_id: str = Depends(get_caller_id),
    service: ChatService = Depends(get_service),
):
    return await service.disable_room(room_id, caller_id)


@router.get("/rooms/{room_id}/messages", response_model=MessagePage)
async def list_messages(
    room_id: int,
    before: Optional[int] = Query(None, ge=1, description="Return messages with id < before"),
    limit: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    caller_id: str = Depends(get_caller_id),
    service: ChatService = Depends(get_service),
):
    """Paginated history in ascending id order; page backwards with ``before``."""
    return await service.list_messages(room_id, caller_id, before_id=before, limit=limit)


@router.post("/rooms/{room_id}/messages", response_model=Message, status_code=201)
async def send_message(
    room_id: int,
    body: SendMessageRequest,
    caller_id: str = Depends(get_caller_id),
    service: ChatService = Depends(get_service),
):
    return await service.send_message(
        room_id,
        caller_id,
        content=body.content,
        attachment=body.attachment_key,
        reply_to_id=body.reply_to_id,
    )


@router.patch("/messages/{message_id}", response_model=Message)
async def edit_message(
    message_id: int,
    body: EditMessageRequest,
    caller_id: str = Depends(get_caller_id),
    service: ChatService = Depends(get_service),
):
    return await service.edit_message(message_id, caller_id, body.content)


@router.delete("/messages/{message_id}", response_model=Message)
async def delete_message(
    message_id: int,
    caller_id: str = Depends(get_caller_id),
    service: ChatService = Depends(get_service),
):
    return await service.delete_message(message_id, caller_id)
