"""Shared test fixtures and configuration for backend tests."""
import pytest
from fastapi.testclient import TestClient

from schoolchat.attachments.blobstore import LocalBlobStore
from schoolchat.chat.service import ChatService, set_chat_service
from schoolchat.config import AppSettings, set_config
from schoolchat.database import Database
from schoolchat.identity.schemas import UserProfileIn, UserRole
from schoolchat.main import app

SMALL_LIMIT = 1024


@pytest.fixture(autouse=True)
def default_config():
    """Use built-in defaults instead of whatever settings file is on disk."""
    set_config(AppSettings())
    yield
    set_config(None)


@pytest.fixture
def db():
    database = Database(":memory:")
    yield database
    database.close()


@pytest.fixture
def chat_service(db, tmp_path):
    """ChatService over an in-memory database with a 1 KiB attachment limit."""
    service = ChatService(
        db=db,
        blob_store=LocalBlobStore(str(tmp_path / "uploads")),
        max_attachment_bytes=SMALL_LIMIT,
        public_base_url="http://testserver",
    )
    yield service
    service.notifier.close()


@pytest.fixture
def store(chat_service):
    return chat_service.store


@pytest.fixture
def tracker(chat_service):
    return chat_service.tracker


@pytest.fixture
def directory(chat_service):
    return chat_service.directory


@pytest.fixture
def pipeline(chat_service):
    return chat_service.pipeline


@pytest.fixture
def profiles(chat_service):
    """Seed display names for alice, bob and carol."""
    users = chat_service.users
    users.upsert_user("alice", UserProfileIn(display_name="Alice Teacher", role=UserRole.TEACHER))
    users.upsert_user("bob", UserProfileIn(display_name="Bob Parent", role=UserRole.PARENT,
                                           avatar_url="http://img/bob.png"))
    users.upsert_user("carol", UserProfileIn(display_name="Carol Student"))
    return users


@pytest.fixture
def api_client(chat_service):
    """TestClient bound to the test ChatService.

    Used as a context manager so HTTP requests and WebSocket sessions share
    one event loop; realtime events published by a request reach open sockets.
    """
    set_chat_service(chat_service)
    with TestClient(app) as client:
        yield client
    set_chat_service(None)


def as_user(user_id: str) -> dict:
    return {"X-User-Id": user_id}
