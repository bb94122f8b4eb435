"""
Shared fixtures for Realtime Service tests.
"""

import json
import time
from typing import Any, Dict, List
from unittest.mock import AsyncMock

import jwt
import pytest

from service_realtime.app.auth.gate import AuthGate
from service_realtime.app.broadcast.gateway import BroadcastGateway
from service_realtime.app.cache.snapshot_cache import SnapshotCache
from service_realtime.app.subscriptions.registry import TopicRegistry
from service_realtime.app.ws.connection_manager import WebSocketConnectionManager
from shared.metrics import MetricsCollector


TEST_SECRET = "test-signing-secret-with-enough-bytes-for-hs256"


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


def make_token(
    user_id: Any = 42,
    username: str = "alice",
    secret: str = TEST_SECRET,
    expires_in: int = 3600,
    **extra
) -> str:
    """Create a signed HS256 credential."""
    now = int(time.time())
    payload = {"id": user_id, "username": username, "iat": now, "exp": now + expires_in, **extra}
    return jwt.encode(payload, secret, algorithm="HS256")


def mock_websocket() -> AsyncMock:
    """Mock WebSocket transport."""
    websocket = AsyncMock()
    websocket.send_text = AsyncMock()
    websocket.close = AsyncMock()
    return websocket


def sent_frames(websocket: AsyncMock) -> List[Dict[str, Any]]:
    """Decode every frame written to a mock transport."""
    return [json.loads(c.args[0]) for c in websocket.send_text.call_args_list]


def sent_events(websocket: AsyncMock) -> List[str]:
    return [frame["event"] for frame in sent_frames(websocket)]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def metrics():
    return MetricsCollector("realtime")


@pytest.fixture
def registry():
    return TopicRegistry()


@pytest.fixture
def snapshots(clock, metrics):
    return SnapshotCache(default_ttl=300, clock=clock, metrics=metrics)


@pytest.fixture
def auth_gate(metrics):
    return AuthGate(TEST_SECRET, metrics=metrics)


@pytest.fixture
def ws_manager(registry, snapshots, auth_gate, clock, metrics):
    return WebSocketConnectionManager(
        registry=registry,
        snapshots=snapshots,
        auth_gate=auth_gate,
        max_connections=10,
        delivery_timeout=1.0,
        clock=clock,
        metrics=metrics
    )


@pytest.fixture
def gateway(registry, snapshots, ws_manager, metrics):
    return BroadcastGateway(
        registry=registry,
        snapshots=snapshots,
        connections=ws_manager,
        metrics=metrics
    )


@pytest.fixture
def token():
    return make_token()
