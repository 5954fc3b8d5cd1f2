"""Shared test fixtures and configuration for backend tests."""
import pytest
from fastapi.testclient import TestClient

from chatroom.config import AppConfig, reset_config, set_config
from chatroom.room.persistence import SnapshotStore
from chatroom.room.schemas import AdminSettings, MediaMessage, TextMessage
from chatroom.room.state import Outbox, RoomState
from chatroom.room.store import MessageStore

ADMIN_PASSWORD = "test-secret"


@pytest.fixture(autouse=True)
def test_config():
    """Install an in-memory configuration for every test.

    Persistence is disabled so no test touches a snapshot file; tests that
    exercise snapshots build their own in-memory ``SnapshotStore``.
    """
    config = AppConfig(
        persistence={"enabled": False},
        secrets={"admin": {"password": ADMIN_PASSWORD}},
    )
    set_config(config)
    yield config
    reset_config()
    SnapshotStore.reset_instance()


@pytest.fixture
def api_client():
    """TestClient for the main app, with lifespan (one event loop for all sockets)."""
    from chatroom.main import app

    with TestClient(app) as client:
        yield client


@pytest.fixture
def state():
    """A bare room state with default settings."""
    return RoomState(
        room_id="test-room",
        admin_password=ADMIN_PASSWORD,
        settings=AdminSettings(),
        store=MessageStore(max_history=100),
    )


@pytest.fixture
def outbox():
    return Outbox(origin="conn-origin")


@pytest.fixture
def add_text(state):
    """Factory appending a text message owned by ``user_id``."""
    def _add(text="hello", user_id="alice", **fields):
        message = TextMessage(sender=user_id, userId=user_id, text=text, **fields)
        return state.store.append(message)
    return _add


@pytest.fixture
def add_media(state):
    def _add(url="https://blobs.example/cat.png", user_id="alice", **fields):
        message = MediaMessage(sender=user_id, userId=user_id, mediaType="image", url=url, **fields)
        return state.store.append(message)
    return _add


class FakeWebSocket:
    """Records frames sent by the room; can be switched to fail like a dead socket."""

    def __init__(self):
        self.sent = []
        self.dead = False
        self.accepted = False

    async def accept(self):
        self.accepted = True

    async def send_json(self, payload):
        if self.dead:
            raise RuntimeError("connection closed")
        self.sent.append(payload)

    def actions(self):
        return [frame.get("action", frame["type"]) for frame in self.sent]

    def clear(self):
        self.sent.clear()


@pytest.fixture
def fake_websocket():
    return FakeWebSocket
