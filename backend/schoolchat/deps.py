"""FastAPI dependencies shared by the routers."""
import logging
import secrets
from typing import Optional

from fastapi import Header, HTTPException

from schoolchat.chat.service import ChatService, build_chat_service, get_chat_service, set_chat_service
from schoolchat.config import get_config

logger = logging.getLogger(__name__)


def get_service() -> ChatService:
    """Return the ChatService, building it from config if startup has not run."""
    service = get_chat_service()
    if service is None:
        service = build_chat_service(get_config())
        set_chat_service(service)
    return service


def verify_gateway_token(token: Optional[str]) -> bool:
    expected = get_config().secrets.gateway.shared_token
    if not expected:
        return True
    return token is not None and secrets.compare_digest(token, expected)


def get_caller_id(
    x_user_id: Optional[str] = Header(None),
    x_gateway_token: Optional[str] = Header(None),
) -> str:
    """Caller identity, pre-authenticated by the gateway."""
    if not verify_gateway_token(x_gateway_token):
        logger.warning("Rejected request with an invalid gateway token")
        raise HTTPException(status_code=401, detail="Invalid gateway token")
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return x_user_id.strip()


def require_gateway(x_gateway_token: Optional[str] = Header(None)) -> None:
    """Guard for endpoints called by the identity system itself."""
    if not verify_gateway_token(x_gateway_token):
        raise HTTPException(status_code=401, detail="Invalid gateway token")
