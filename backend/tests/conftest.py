"""Shared test fixtures and configuration for backend tests."""
import asyncio
import os

# settings are cached on first use, so the environment must be set before
# anything from pairchat is imported
os.environ.setdefault("ENV", "testing")
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("BCRYPT_ROUNDS", "4")

import pytest
from fastapi.testclient import TestClient
from mongomock_motor import AsyncMongoMockClient

from pairchat.database.connection import mongo_db_dependency
from pairchat.exceptions import UploadFailed
from pairchat.main import app
from pairchat.realtime.hub import RealtimeHub
from pairchat.realtime.presence import PresenceRegistry
from pairchat.repositories.conversation_repository import ConversationRepository
from pairchat.repositories.user_repository import UserRepository
from pairchat.services.image_store import get_image_store
from pairchat.utils.security import create_access_token


def run_sync(coro):
    """Run a coroutine on a private loop without touching the current one."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


class FakeImageStore:
    """Records uploads instead of talking to Cloudinary."""

    def __init__(self):
        self.uploads = []
        self.fail_with = None

    async def upload(self, payload, folder):
        if self.fail_with is not None:
            raise UploadFailed(self.fail_with)
        self.uploads.append((payload, folder))
        return f"https://images.test/{folder}/{len(self.uploads)}.jpg"


class FakeConnection:
    """Stands in for a WebSocket inside the hub and registry."""

    def __init__(self, broken=False):
        self.sent = []
        self.broken = broken

    async def send_json(self, message):
        if self.broken:
            raise RuntimeError("socket closed")
        self.sent.append(message)

    def events(self, event_type=None):
        return [m for m in self.sent if event_type is None or m["type"] == event_type]


@pytest.fixture
def db():
    database = AsyncMongoMockClient()["pairchat_test"]
    run_sync(UserRepository(database).ensure_indexes())
    run_sync(ConversationRepository(database).ensure_indexes())
    return database


@pytest.fixture
def image_store():
    return FakeImageStore()


@pytest.fixture
def hub():
    return RealtimeHub(PresenceRegistry())


@pytest.fixture
def make_user(db):
    """Insert a user and return ``(user_id, token)``."""

    def _make_user(full_name="Alice", email=None):
        email = email or f"{full_name.lower().replace(' ', '.')}@example.com"
        user_id = run_sync(UserRepository(db).create_user(email=email, hashed_password="", full_name=full_name))
        return user_id, create_access_token(user_id)

    return _make_user


@pytest.fixture
def create_user(db):
    """Async ``make_user`` for tests that already run inside an event loop."""

    async def _create_user(full_name="Alice", email=None):
        email = email or f"{full_name.lower().replace(' ', '.')}@example.com"
        user_id = await UserRepository(db).create_user(email=email, hashed_password="", full_name=full_name)
        return user_id, create_access_token(user_id)

    return _create_user


@pytest.fixture
def api_client(db, image_store):
    """TestClient over the app with storage and uploads swapped for fakes.

    Used without a ``with`` block so the lifespan (real MongoDB) never runs.
    """
    app.dependency_overrides[mongo_db_dependency] = lambda: db
    app.dependency_overrides[get_image_store] = lambda: image_store
    app.state.hub = RealtimeHub(PresenceRegistry())
    yield TestClient(app)
    app.dependency_overrides.clear()


def auth_headers(token):
    return {"Authorization": f"Bearer {token}"}
