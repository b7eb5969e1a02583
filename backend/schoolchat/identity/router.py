"""FastAPI router for the profile cache (fed by the identity system)."""
import logging

from fastapi import APIRouter, Depends, HTTPException

from schoolchat.chat.service import ChatService
from schoolchat.deps import get_service, require_gateway
from schoolchat.identity.schemas import UserProfile, UserProfileIn

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/users", tags=["users"], dependencies=[Depends(require_gateway)])


@router.put("/{user_id}", response_model=UserProfile)
async def upsert_user(
    user_id: str,
    body: UserProfileIn,
    service: ChatService = Depends(get_service),
):
    profile = service.users.upsert_user(user_id, body)
    logger.info("Profile cached for user %s", user_id)
    return profile


@router.get("/{user_id}", response_model=UserProfile)
async def get_user(user_id: str, service: ChatService = Depends(get_service)):
    profile = service.users.get_user(user_id)
    if profile is None:
        raise HTTPException(status_code=404, detail="User not found")
    return profile
