"""SchoolChat backend application.

Real-time messaging core for the school-management app: direct and group
rooms, read cursors, the per-user chat list, image/video attachments and a
WebSocket event stream.

Modules:
    - messages: rooms, participants and message history
    - receipts: read cursors and unread counts
    - directory: the per-user chat list
    - attachments: upload, download and orphan collection
    - realtime: topic pub/sub and the WebSocket transport
    - identity: cached user profiles for display names
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from schoolchat.attachments.router import router as attachments_router
from schoolchat.chat.service import build_orphan_collector, get_chat_service, set_chat_service
from schoolchat.config import get_config
from schoolchat.database import Database
from schoolchat.deps import get_service
from schoolchat.directory.router import router as directory_router
from schoolchat.errors import ChatError, chat_error_handler
from schoolchat.identity.router import router as identity_router
from schoolchat.messages.router import router as messages_router
from schoolchat.realtime.router import router as realtime_router
from schoolchat.receipts.router import router as receipts_router

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# Silence verbose third-party loggers.
for _noisy in (
    "httpx",
    "httpcore",
    "multipart",
    "python_multipart",
    "uvicorn.access",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    # Startup
    config = get_config()

    # Apply configured log level to root logger so that
    # `logging.level: "debug"` in schoolchat.settings.yaml activates DEBUG output.
    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.logging.level.upper())

    owns_service = get_chat_service() is None
    service = get_service()
    collector = build_orphan_collector(service, config)
    await collector.start()
    logger.info(
        "SchoolChat ready on http://%s:%s (db=%s)",
        config.server.host, config.server.port, service.db.db_path,
    )

    yield  # Application runs here

    # Shutdown
    await collector.stop()
    if owns_service:
        service.close()
        set_chat_service(None)
        Database.reset_instance()
    logger.info("Application shutdown complete")


app = FastAPI(
    title="SchoolChat API",
    description="Real-time messaging core for the school-management app",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_config().server.allowed_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_exception_handler(ChatError, chat_error_handler)

# Register all routers
app.include_router(directory_router)
app.include_router(messages_router)
app.include_router(receipts_router)
app.include_router(attachments_router)
app.include_router(identity_router)
app.include_router(realtime_router)


@app.get("/health")
async def health() -> dict:
    """Health check endpoint.

    Returns:
        dict: Status object indicating the server is running and whether
        the realtime notifier accepts publishes.
    """
    service = get_chat_service()
    return {
        "status": "ok",
        "realtime": bool(service and service.notifier.is_available),
    }
