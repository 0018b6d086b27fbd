"""Shared test fixtures and configuration for backend tests."""
import itertools

import pytest
from fastapi.testclient import TestClient

from chatpulse.config import AppSettings, set_config
from chatpulse.main import app
from chatpulse.runtime import set_runtime
from chatpulse.store.database import Database
from chatpulse.store.directory import UserDirectory
from chatpulse.store.groups import GroupStore
from chatpulse.store.messages import MessageStore
from chatpulse.store.schemas import User

_session_ids = itertools.count(1)


class FakeSession:
    """Stands in for ChatSession wherever only the presence/relay surface is used."""

    def __init__(self, user_id: int, username: str = "", active: bool = True):
        self.user = User(id=user_id, username=username or f"user{user_id}")
        self.user_id = user_id
        self.session_id = f"fake-{next(_session_ids)}"
        self.is_active = active
        self.received = []
        self.evicted_with = None

    async def notify(self, notification) -> bool:
        if not self.is_active:
            return False
        self.received.append(notification)
        return True

    async def evict(self, reason: str) -> None:
        self.evicted_with = reason
        self.is_active = False

    def types(self):
        return [notification.type for notification in self.received]


@pytest.fixture
def fake_session():
    """Factory for FakeSession instances."""
    return FakeSession


# =============================================================================
# Stores
# =============================================================================

@pytest.fixture
def database():
    db = Database(":memory:")
    yield db
    db.close()


@pytest.fixture
def directory(database):
    return UserDirectory(database)


@pytest.fixture
def message_store(database):
    return MessageStore(database)


@pytest.fixture
def group_store(database):
    return GroupStore(database)


# =============================================================================
# Application
# =============================================================================

@pytest.fixture
def grace_seconds():
    """Override with ``@pytest.mark.parametrize("grace_seconds", [...])``."""
    return 0.0


@pytest.fixture
def settings(tmp_path, grace_seconds):
    return AppSettings(
        database={"path": ":memory:"},
        presence={"grace_seconds": grace_seconds, "snapshot_interval_seconds": 3600},
        uploads={"upload_dir": str(tmp_path / "uploads"), "max_size_bytes": 1024},
        secrets={"jwt": {"secret_key": "test-secret"}},
    )


@pytest.fixture
def api_client(settings):
    """TestClient with lifespan running, so websocket sessions, REST calls
    and presence timers share one event loop and one runtime."""
    set_config(settings)
    with TestClient(app) as client:
        yield client
    set_runtime(None)
    set_config(None)


@pytest.fixture
def register_user(api_client):
    """Register a user over REST; returns ``(user, token)``."""
    def _register(username: str, password: str = "secret123"):
        response = api_client.post(
            "/api/auth/register",
            json={"username": username, "email": f"{username}@example.com", "password": password},
        )
        assert response.status_code == 201, response.text
        body = response.json()
        return body["user"], body["token"]

    return _register


@pytest.fixture
def auth_headers():
    def _headers(token: str) -> dict:
        return {"Authorization": f"Bearer {token}"}

    return _headers
