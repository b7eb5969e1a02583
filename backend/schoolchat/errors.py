"""Error taxonomy shared by every SchoolChat component.

Each error carries the HTTP status it maps to; ``chat_error_handler`` renders
them as ``{"error": message, "type": ClassName}``.
"""
import logging

from fastapi import Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class ChatError(Exception):
    """Base exception for the messaging core."""

    status_code: int = 500
    default_message: str = "Chat error"

    def __init__(self, message: str = ""):
        self.message = message or self.default_message
        super().__init__(self.message)


class NotAParticipant(ChatError):
    status_code = 403
    default_message = "User is not a participant of this room"


class InvalidParticipants(ChatError):
    status_code = 422
    default_message = "Invalid participant list"


class EmptyMessage(ChatError):
    status_code = 422
    default_message = "Message must have content or an attachment"


class Forbidden(ChatError):
    status_code = 403
    default_message = "Operation not permitted"


class PayloadTooLarge(ChatError):
    status_code = 413
    default_message = "Attachment exceeds the size limit"


class UnsupportedType(ChatError):
    status_code = 415
    default_message = "Attachment type is not supported"


class StoreUnavailable(ChatError):
    status_code = 503
    default_message = "Message store is unavailable"


class NotifierUnavailable(ChatError):
    status_code = 503
    default_message = "Realtime notifier is unavailable"


class RoomNotFound(ChatError):
    status_code = 404
    default_message = "Room not found"


class MessageNotFound(ChatError):
    status_code = 404
    default_message = "Message not found"


class AttachmentNotFound(ChatError):
    status_code = 404
    default_message = "Attachment not found"


async def chat_error_handler(request: Request, exc: ChatError) -> JSONResponse:
    """Render a ChatError as JSON with its mapped status code."""
    if exc.status_code >= 500:
        logger.error("%s: %s - Path: %s", type(exc).__name__, exc.message, request.url.path)
    else:
        logger.info("%s: %s - Path: %s", type(exc).__name__, exc.message, request.url.path)
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.message, "type": type(exc).__name__},
    )
