"""pytest configuration for relay hub tests."""

from __future__ import annotations

import pytest
from starlette.websockets import WebSocketState

from lamphub.config import RelaySettings
from lamphub.db import get_db, init_db, set_db_path
from lamphub.hub.connections import Connection
from lamphub.hub.manager import RelayHub
from lamphub.store import DeviceStore


# Configure asyncio mode for pytest-asyncio
def pytest_configure(config):
    config.addinivalue_line(
        "markers", "asyncio: mark test as async"
    )


class FakeWebSocket:
    """Minimal stand-in for a server-side starlette WebSocket."""

    def __init__(self, incoming: list | None = None, fail_sends: bool = False):
        self._incoming = list(incoming or [])
        self.fail_sends = fail_sends
        self.sent: list[dict] = []
        self.closed = False
        self.close_code: int | None = None
        self.client = None
        self.client_state = WebSocketState.CONNECTED
        self.application_state = WebSocketState.CONNECTED

    async def receive(self) -> dict:
        if self._incoming:
            item = self._incoming.pop(0)
            if isinstance(item, bytes):
                return {"type": "websocket.receive", "bytes": item}
            return {"type": "websocket.receive", "text": item}
        self.client_state = WebSocketState.DISCONNECTED
        return {"type": "websocket.disconnect", "code": 1000}

    async def send_json(self, data: dict) -> None:
        if self.fail_sends or self.application_state != WebSocketState.CONNECTED:
            raise RuntimeError("socket is not writable")
        self.sent.append(data)

    async def close(self, code: int = 1000, reason: str | None = None) -> None:
        self.closed = True
        self.close_code = code
        self.application_state = WebSocketState.DISCONNECTED

    def drop(self) -> None:
        """Simulate the peer going away."""
        self.client_state = WebSocketState.DISCONNECTED

    def of_type(self, msg_type: str) -> list[dict]:
        return [m for m in self.sent if m.get("type") == msg_type]


@pytest.fixture
def db(tmp_path):
    """Fresh temp database for each test."""
    set_db_path(tmp_path / "test.db")
    init_db()
    return get_db()


@pytest.fixture
def store(db):
    return DeviceStore()


@pytest.fixture
def hub(store):
    return RelayHub(store=store, settings=RelaySettings(ping_interval=3600))


@pytest.fixture
def make_conn():
    def _make(incoming: list | None = None, conn_id: str | None = None, **kwargs) -> Connection:
        return Connection(FakeWebSocket(incoming, **kwargs), conn_id)
    return _make


@pytest.fixture
def lamp(store):
    return store.install(
        "aa:bb:cc:00:00:01", 48.8566, 2.3522,
        altitude=35.0, lieu_installation="Rue de Rivoli",
    )
