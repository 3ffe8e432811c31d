"""Connection handles for device and observer WebSockets."""

from __future__ import annotations

import enum
import logging
import time
import uuid
from typing import Iterable

from fastapi import WebSocket
from starlette.websockets import WebSocketState

logger = logging.getLogger(__name__)


class ConnectionState(enum.Enum):
    UNREGISTERED = "unregistered"
    REGISTERED_DEVICE = "registered_device"
    REGISTERED_OBSERVER = "registered_observer"
    CLOSED = "closed"


class Connection:
    """Wraps an accepted WebSocket with an opaque id and lifecycle state.

    The id is assigned at accept time and is the only key used to find or
    remove a connection from the registry and the observer set.
    """

    def __init__(self, websocket: WebSocket, conn_id: str | None = None) -> None:
        self.websocket = websocket
        self.conn_id = conn_id or uuid.uuid4().hex
        self.state = ConnectionState.UNREGISTERED
        self.connected_at = time.time()
        self.last_seen = time.time()
        client = getattr(websocket, "client", None)
        self.remote = f"{client.host}:{client.port}" if client else "unknown"

    def __repr__(self) -> str:
        return f"<Connection {self.conn_id[:8]} {self.state.value} {self.remote}>"

    @property
    def is_open(self) -> bool:
        if self.state is ConnectionState.CLOSED:
            return False
        return (
            self.websocket.client_state == WebSocketState.CONNECTED
            and self.websocket.application_state == WebSocketState.CONNECTED
        )

    async def receive_text(self) -> str | None:
        """Next text payload, or ``None`` once the peer has gone away.

        Binary frames are decoded as UTF-8.
        """
        message = await self.websocket.receive()
        if message["type"] == "websocket.disconnect":
            return None
        self.last_seen = time.time()
        if message.get("text") is not None:
            return message["text"]
        return (message.get("bytes") or b"").decode("utf-8", errors="replace")

    async def send(self, message: dict) -> bool:
        """Fire-and-forget JSON send. Returns ``False`` when the write failed."""
        try:
            await self.websocket.send_json(message)
            return True
        except Exception as e:
            logger.debug("Send to %s failed: %s", self, e)
            return False

    async def close(self, code: int = 1000, reason: str | None = None) -> None:
        self.state = ConnectionState.CLOSED
        if self.websocket.application_state == WebSocketState.DISCONNECTED:
            return
        try:
            await self.websocket.close(code=code, reason=reason)
        except Exception as e:
            logger.debug("Close of %s failed: %s", self, e)


async def fan_out(connections: Iterable[Connection], message: dict) -> int:
    """Best-effort fan-out.

    Writes ``message`` to every connection that is currently open and skips
    the rest.  There is no acknowledgement, retry, or ordering guarantee
    across recipients; the return value only counts writes that did not
    raise locally.
    """
    sent = 0
    for conn in list(connections):
        if not conn.is_open:
            continue
        if await conn.send(message):
            sent += 1
    return sent
