import json
import os
import sys
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

# Add the project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

# Set test environment variables
os.environ["REDIS_URL"] = "redis://localhost:6379/1"  # Use different DB for tests
os.environ["APP_HOST"] = "127.0.0.1"
os.environ["APP_PORT"] = "8001"  # Different port for tests

# Import after setting up environment
from chatsync.client import ChatSession  # noqa: E402
from chatsync.config import Settings  # noqa: E402
from chatsync.main import app  # noqa: E402
from chatsync.transport import Transport  # noqa: E402


class FakeTransport(Transport):
    """In-process stand-in for the broker connection."""

    def __init__(self, auto_ack: bool = True):
        super().__init__()
        self.auto_ack = auto_ack
        self.active = False
        self.fail_publish = False
        self.handlers = {}
        self.published = []
        self.calls = []

    async def activate(self):
        if self.active:
            return
        self.active = True
        self.calls.append("activate")
        if self.auto_ack:
            await self._notify_connected()

    async def deactivate(self):
        self.active = False
        self.calls.append("deactivate")
        self.handlers.clear()

    async def subscribe(self, channel, handler):
        self.handlers[channel] = handler

    async def publish(self, channel, body):
        if self.fail_publish:
            raise ConnectionError("socket is closing")
        self.calls.append(f"publish:{channel}")
        self.published.append((channel, json.loads(body)))

    # -- driven by tests --
    async def ack(self):
        await self._notify_connected()

    async def drop(self):
        self.active = False
        self.handlers.clear()
        await self._notify_disconnected()

    async def fail(self, cause):
        await self._notify_error(cause)

    def deliver(self, channel, body):
        if not isinstance(body, (str, bytes)):
            body = json.dumps(body)
        self.handlers[channel](body)

    def kinds(self, channel=None):
        return [e["type"] for c, e in self.published if channel is None or c == channel]


class FakeClock:
    def __init__(self, start: int = 1_700_000_000_000):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


@pytest.fixture
def fast_settings():
    """Settings with timers short enough to wait out in a test."""
    return Settings(
        CONNECT_TIMEOUT_MS=50,
        TYPING_DEBOUNCE_MS=20,
        TYPING_TIMEOUT_MS=100,
    )


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def session(transport, fast_settings, clock):
    return ChatSession(transport, fast_settings, clock)


@pytest.fixture
async def connected(session):
    """A session connected as alice."""
    session.set_username("alice")
    await session.connect()
    yield session
    await session.close()


def chat_event(sender, kind, text="", color=None, date=1_700_000_000_000):
    body = {"sender": sender, "text": text, "date": date, "type": kind}
    if color is not None:
        body["color"] = color
    return json.dumps(body)


async def _no_messages():
    return
    yield


@pytest.fixture
def mock_pubsub():
    mock_pubsub = AsyncMock()
    mock_pubsub.subscribe.return_value = None
    mock_pubsub.unsubscribe.return_value = None
    mock_pubsub.aclose.return_value = None
    mock_pubsub.listen = MagicMock(side_effect=lambda: _no_messages())
    return mock_pubsub


@pytest.fixture
def mock_redis(mock_pubsub):
    """Mock Redis connection for testing."""
    mock_redis = AsyncMock()
    mock_redis.ping.return_value = True
    mock_redis.publish.return_value = 1
    mock_redis.pubsub = MagicMock(return_value=mock_pubsub)
    return mock_redis


@pytest.fixture
def client(mock_redis, monkeypatch):
    """Create a test client with mocked Redis."""
    monkeypatch.setattr("chatsync.main.redis", mock_redis)

    with TestClient(app) as test_client:
        yield test_client
